"""In-memory stand-ins for the Kubernetes ``CoreV1Api`` and ``AppsV1Api``."""

from __future__ import annotations

import json
import threading
from types import SimpleNamespace

from kubernetes.client.rest import ApiException


def api_error(status: int, message: str | None = None) -> ApiException:
    exc = ApiException(status=status, reason="Stubbed")
    if message is not None:
        exc.body = json.dumps({"message": message})
    return exc


class FakeCluster:
    """Shared object store with per-call failure injection.

    ``failures`` maps a method name to a list of exceptions; each call to that
    method pops and raises the next one. ``gate`` lets a test hold creation
    of deployments until it is set.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.pods: list[SimpleNamespace] = []
        self.nodes: list[SimpleNamespace] = [SimpleNamespace(metadata=SimpleNamespace(name="node-1"))]
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _record(self, method: str, name: str) -> None:
        with self._lock:
            self.calls.append((method, name))
            pending = self.failures.get(method)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def _create(self, method: str, kind: str, body: dict) -> dict:
        name = body["metadata"]["name"]
        self._record(method, name)
        with self._lock:
            if (kind, name) in self.objects:
                raise api_error(409, f'{kind} "{name}" already exists')
            self.objects[(kind, name)] = body
        return body

    def _delete(self, method: str, kind: str, name: str) -> SimpleNamespace:
        self._record(method, name)
        with self._lock:
            if self.objects.pop((kind, name), None) is None:
                raise api_error(404, f'{kind} "{name}" not found')
        return SimpleNamespace(status="Success")

    def has(self, kind: str, name: str) -> bool:
        return (kind, name) in self.objects

    def add_pod(self, name: str, user_id: str, phase: str = "Running", ready: bool = True) -> None:
        self.pods.append(
            SimpleNamespace(
                metadata=SimpleNamespace(name=name, labels={"user": user_id}, creation_timestamp=None),
                status=SimpleNamespace(
                    phase=phase,
                    container_statuses=[SimpleNamespace(ready=ready, restart_count=0)],
                ),
            )
        )


class FakeCoreApi:
    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster

    def create_namespaced_persistent_volume_claim(self, namespace, body):
        return self.cluster._create("create_namespaced_persistent_volume_claim", "pvc", body)

    def create_namespaced_service(self, namespace, body):
        return self.cluster._create("create_namespaced_service", "service", body)

    def delete_namespaced_service(self, name, namespace):
        return self.cluster._delete("delete_namespaced_service", "service", name)

    def delete_namespaced_persistent_volume_claim(self, name, namespace):
        return self.cluster._delete("delete_namespaced_persistent_volume_claim", "pvc", name)

    def list_namespaced_pod(self, namespace, label_selector=None):
        self.cluster._record("list_namespaced_pod", label_selector or "")
        pods = self.cluster.pods
        if label_selector:
            key, _, value = label_selector.partition("=")
            pods = [pod for pod in pods if pod.metadata.labels.get(key) == value]
        return SimpleNamespace(items=list(pods))

    def list_node(self):
        self.cluster._record("list_node", "")
        return SimpleNamespace(items=list(self.cluster.nodes))


class FakeAppsApi:
    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster

    def create_namespaced_deployment(self, namespace, body):
        if self.cluster.gate is not None:
            self.cluster.gate.wait(5.0)
        return self.cluster._create("create_namespaced_deployment", "deployment", body)

    def delete_namespaced_deployment(self, name, namespace, propagation_policy=None):
        return self.cluster._delete("delete_namespaced_deployment", "deployment", name)
