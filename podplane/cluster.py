"""Kubernetes adapter that creates, deletes and inspects per-user pods."""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import ResourceCreationError, StatusQueryError
from .models import (
    ClusterResources,
    CreationResult,
    LivePodStatus,
    PlanType,
    ResourceDeletion,
    ResourceOutcome,
    TeardownResult,
    pod_name,
    service_name,
    volume_claim_name,
)
from .retry import NO_RETRY, RetryPolicy, TransientException, call_with_retry
from .templates import ManifestRenderer, with_namespace

logger = logging.getLogger("podplane.cluster")

PlatformError = (ApiException,) + TransientException

KIND_DEPLOYMENT = "deployment"
KIND_SERVICE = "service"
KIND_VOLUME_CLAIM = "persistentvolumeclaim"


def platform_message(exc: BaseException) -> str:
    """Extract the most useful human readable text from a client error."""

    if isinstance(exc, ApiException):
        detail = None
        if exc.body:
            try:
                detail = json.loads(exc.body).get("message")
            except (ValueError, AttributeError):
                detail = None
        summary = f"{exc.status} {exc.reason}".strip()
        return f"{summary}: {detail}" if detail else summary
    return str(exc) or exc.__class__.__name__


def load_api_client(
    *,
    kubeconfig: Optional[str] = None,
    context: Optional[str] = None,
    skip_tls_verify: bool = False,
) -> client.ApiClient:
    """Build an API client from in-cluster credentials or a kubeconfig file."""

    configuration = client.Configuration()
    if kubeconfig:
        config.load_kube_config(
            config_file=kubeconfig,
            context=context,
            client_configuration=configuration,
        )
        logger.info("Loaded kubeconfig from %s", kubeconfig)
    else:
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            config.load_kube_config(context=context, client_configuration=configuration)
            logger.info("Loaded kubeconfig from the default location")

    if skip_tls_verify:
        # k3s ships self-signed API certificates
        configuration.verify_ssl = False
        logger.warning("TLS verification for the Kubernetes API server is disabled")

    logger.info("Kubernetes API server: %s", configuration.host)
    return client.ApiClient(configuration)


class ClusterDriver:
    """Owns the volume claim, Deployment and Service that make up a user pod."""

    def __init__(
        self,
        core_api: Any,
        apps_api: Any,
        renderer: ManifestRenderer,
        *,
        namespace: str,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._core = core_api
        self._apps = apps_api
        self._renderer = renderer
        self.namespace = namespace
        self._retry_policy = retry_policy
        self._sleep = sleep

    @classmethod
    def from_api_client(
        cls,
        api_client: client.ApiClient,
        renderer: ManifestRenderer,
        *,
        namespace: str,
        retry_policy: RetryPolicy = RetryPolicy(),
    ) -> "ClusterDriver":
        return cls(
            client.CoreV1Api(api_client),
            client.AppsV1Api(api_client),
            renderer,
            namespace=namespace,
            retry_policy=retry_policy,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_instance(self, user_id: str, plan_type: PlanType | str, port: int) -> CreationResult:
        """Create the volume claim, then the Deployment, then the Service.

        A claim failure aborts before anything else is attempted. A later
        failure removes whatever this call created before raising.
        """

        plan = PlanType(plan_type)
        workload_manifest, service_manifest = self._renderer.render_manifests(plan, user_id, port)
        claim_manifest = with_namespace(self._renderer.render_volume_claim(user_id), self.namespace)
        workload_manifest = with_namespace(workload_manifest, self.namespace)
        service_manifest = with_namespace(service_manifest, self.namespace)

        claim_name = volume_claim_name(user_id)
        logger.info(
            "Creating volume claim %s for user %s in namespace %s",
            claim_name,
            user_id,
            self.namespace,
        )
        claim_result, claim_created = self._create_volume_claim(claim_manifest)

        created: List[Tuple[str, str]] = []
        if claim_created:
            created.append((KIND_VOLUME_CLAIM, claim_name))

        workload_name = workload_manifest["metadata"].get("name") or pod_name(user_id, plan)
        try:
            workload_result = self._apps.create_namespaced_deployment(
                namespace=self.namespace,
                body=workload_manifest,
            )
            created.append((KIND_DEPLOYMENT, workload_name))
            logger.info("Deployment %s created, now creating service", workload_name)

            service_result = self._core.create_namespaced_service(
                namespace=self.namespace,
                body=service_manifest,
            )
        except PlatformError as exc:
            message = platform_message(exc)
            logger.error("Pod creation failed for user %s: %s", user_id, message)
            self._rollback(user_id, created)
            raise ResourceCreationError(
                f"Failed to create pod for {user_id}: {message}",
                platform_message=message,
            ) from exc
        except Exception:
            logger.exception("Unexpected error while creating pod for user %s", user_id)
            self._rollback(user_id, created)
            raise

        logger.info("Pod and service created for user %s on node port %s", user_id, port)
        return CreationResult(volume_claim=claim_result, workload=workload_result, service=service_result)

    def _create_volume_claim(self, manifest: dict) -> Tuple[Any, bool]:
        def _create() -> Any:
            return self._core.create_namespaced_persistent_volume_claim(
                namespace=self.namespace,
                body=manifest,
            )

        name = manifest["metadata"]["name"]
        try:
            result = call_with_retry(
                _create,
                policy=self._retry_policy,
                description=f"create volume claim {name}",
                sleep=self._sleep,
            )
        except ApiException as exc:
            if exc.status == 409:
                logger.info("Volume claim %s already exists; reusing it", name)
                return None, False
            message = platform_message(exc)
            raise ResourceCreationError(
                f"Failed to create volume claim {name}: {message}",
                platform_message=message,
            ) from exc
        except TransientException as exc:
            message = platform_message(exc)
            raise ResourceCreationError(
                f"Failed to create volume claim {name}: {message}",
                platform_message=message,
            ) from exc
        return result, True

    def _rollback(self, user_id: str, created: List[Tuple[str, str]]) -> None:
        for kind, name in reversed(created):
            step = self._delete_resource(kind, name, policy=NO_RETRY)
            if step.outcome is ResourceOutcome.ERROR:
                logger.error(
                    "Rollback of %s %s for user %s failed: %s",
                    kind,
                    name,
                    user_id,
                    step.message,
                )
            else:
                logger.info("Rolled back %s %s for user %s", kind, name, user_id)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    def delete_instance(self, user_id: str) -> TeardownResult:
        """Delete every resource a pod of either plan could own.

        Each step runs independently; "not found" counts as done, so repeated
        calls are harmless.
        """

        logger.info("Deleting all resources for user %s", user_id)
        result = TeardownResult(user_id=user_id)
        for plan in PlanType:
            result.steps.append(self._delete_resource(KIND_DEPLOYMENT, pod_name(user_id, plan)))
        result.steps.append(self._delete_resource(KIND_SERVICE, service_name(user_id)))
        result.steps.append(self._delete_resource(KIND_VOLUME_CLAIM, volume_claim_name(user_id)))

        logger.info(
            "Deletion results for user %s: %s",
            user_id,
            ", ".join(f"{step.name}={step.outcome.value}" for step in result.steps),
        )
        return result

    def _delete_resource(
        self,
        kind: str,
        name: str,
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> ResourceDeletion:
        try:
            call_with_retry(
                self._deleter(kind, name),
                policy=policy or self._retry_policy,
                description=f"delete {kind} {name}",
                sleep=self._sleep,
            )
        except ApiException as exc:
            if exc.status == 404:
                logger.debug("%s %s not found or already deleted", kind, name)
                return ResourceDeletion(kind=kind, name=name, outcome=ResourceOutcome.NOT_FOUND)
            message = platform_message(exc)
            logger.warning("Failed to delete %s %s: %s", kind, name, message)
            return ResourceDeletion(kind=kind, name=name, outcome=ResourceOutcome.ERROR, message=message)
        except TransientException as exc:
            message = platform_message(exc)
            logger.warning("Failed to delete %s %s: %s", kind, name, message)
            return ResourceDeletion(kind=kind, name=name, outcome=ResourceOutcome.ERROR, message=message)

        logger.info("Deleted %s %s", kind, name)
        return ResourceDeletion(kind=kind, name=name, outcome=ResourceOutcome.DELETED)

    def _deleter(self, kind: str, name: str) -> Callable[[], Any]:
        if kind == KIND_DEPLOYMENT:
            return lambda: self._apps.delete_namespaced_deployment(
                name=name,
                namespace=self.namespace,
                propagation_policy="Background",
            )
        if kind == KIND_SERVICE:
            return lambda: self._core.delete_namespaced_service(name=name, namespace=self.namespace)
        if kind == KIND_VOLUME_CLAIM:
            return lambda: self._core.delete_namespaced_persistent_volume_claim(
                name=name,
                namespace=self.namespace,
            )
        raise ValueError(f"Unsupported resource kind: {kind}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def list_instance_status(self, user_id: str) -> List[LivePodStatus]:
        try:
            pods = self._core.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=f"user={user_id}",
            )
        except PlatformError as exc:
            message = platform_message(exc)
            raise StatusQueryError(
                f"Failed to get pod status for {user_id}: {message}",
                platform_message=message,
            ) from exc

        statuses: List[LivePodStatus] = []
        for pod in pods.items or []:
            container_statuses = (pod.status.container_statuses if pod.status else None) or []
            first = container_statuses[0] if container_statuses else None
            statuses.append(
                LivePodStatus(
                    name=pod.metadata.name,
                    phase=(pod.status.phase if pod.status else None) or "Unknown",
                    ready=bool(first.ready) if first else False,
                    restart_count=int(first.restart_count or 0) if first else 0,
                    created_at=pod.metadata.creation_timestamp,
                )
            )
        return statuses

    def cluster_resources(self) -> ClusterResources:
        """Summarise nodes and pods; a failing query counts as zero."""

        degraded = False
        nodes: list = []
        pods: list = []

        try:
            nodes = self._core.list_node().items or []
        except PlatformError as exc:
            logger.warning("Failed to list nodes: %s", platform_message(exc))
            degraded = True

        try:
            pods = self._core.list_namespaced_pod(namespace=self.namespace).items or []
        except PlatformError as exc:
            logger.warning("Failed to list pods in %s: %s", self.namespace, platform_message(exc))
            degraded = True

        running = sum(1 for pod in pods if pod.status is not None and pod.status.phase == "Running")
        logger.debug(
            "Found %d nodes, %d total pods, %d running pods",
            len(nodes),
            len(pods),
            running,
        )
        return ClusterResources(
            node_count=len(nodes),
            total_pods=len(pods),
            running_pods=running,
            degraded=degraded,
        )


__all__ = ["ClusterDriver", "load_api_client", "platform_message"]
