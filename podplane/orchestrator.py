"""Provisioning workflow tying together ports, records and the cluster."""
from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from .cluster import ClusterDriver
from .database import Database
from .errors import CreationInProgressError, NotFoundError, PodplaneError, ResourceDeletionError
from .models import (
    ClusterSummary,
    InstanceView,
    LivePodStatus,
    PodRecord,
    PodStatus,
    TeardownResult,
    User,
    pod_name,
)
from .ports import PortAllocator
from .templates import DEFAULT_PUBLIC_HOST, validate_plan

logger = logging.getLogger("podplane.orchestrator")

DEFAULT_CREATION_TIMEOUT = 300.0


def generate_user_id() -> str:
    return f"user-{uuid.uuid4().hex[:8]}"


class PodOrchestrator:
    """Drives the lifecycle of user pods.

    ``provision`` only requests creation: it records the pod as ``creating``
    and hands the cluster work to a worker pool. The outcome reaches callers
    solely through the stored status, which moves from ``creating`` to
    ``running`` or ``failed`` exactly once.
    """

    def __init__(
        self,
        database: Database,
        allocator: PortAllocator,
        driver: ClusterDriver,
        *,
        public_host: str = DEFAULT_PUBLIC_HOST,
        creation_timeout: float = DEFAULT_CREATION_TIMEOUT,
        workers: int = 4,
        user_id_factory: Callable[[], str] = generate_user_id,
    ) -> None:
        self._database = database
        self._allocator = allocator
        self._driver = driver
        self.public_host = public_host
        self._creation_timeout = creation_timeout
        self._user_id_factory = user_id_factory
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pod-create")
        self._timers: Dict[int, threading.Timer] = {}
        self._pending: Dict[int, Future] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    def provision(self, plan_type: object, email: Optional[str] = None) -> InstanceView:
        plan = validate_plan(plan_type)
        user_id = self._user_id_factory()
        name = pod_name(user_id, plan)
        users: List[User] = []

        def insert(port: int) -> PodRecord:
            # The user is written only once a port has been reserved.
            if not users:
                users.append(self._database.create_user(user_id, email or ""))
            return self._database.create_pod(user_id, name, plan, port)

        record = self._allocator.claim(insert)
        logger.info(
            "Pod %s (id=%d) recorded for user %s on node port %s; creation requested",
            record.name,
            record.id,
            user_id,
            record.node_port,
        )

        self._start_creation(record)
        return self._view(record)

    def _start_creation(self, record: PodRecord) -> None:
        timer = threading.Timer(self._creation_timeout, self._expire_creation, args=(record.id,))
        timer.daemon = True
        with self._lock:
            self._timers[record.id] = timer
        timer.start()

        future = self._executor.submit(self._run_creation, record)
        with self._lock:
            self._pending[record.id] = future
        future.add_done_callback(lambda _: self._forget_pending(record.id))

    def _forget_pending(self, pod_id: int) -> None:
        with self._lock:
            self._pending.pop(pod_id, None)

    def _run_creation(self, record: PodRecord) -> None:
        try:
            self._driver.create_instance(record.user_id, record.plan_type, record.node_port)
        except PodplaneError as exc:
            logger.error("Pod creation failed for user %s: %s", record.user_id, exc)
            self._settle_creation(record, PodStatus.FAILED, str(exc))
        except Exception as exc:
            logger.exception("Unhandled exception while creating pod for user %s", record.user_id)
            self._settle_creation(record, PodStatus.FAILED, str(exc) or exc.__class__.__name__)
        else:
            self._settle_creation(record, PodStatus.RUNNING, None)

    def _settle_creation(self, record: PodRecord, status: PodStatus, detail: Optional[str]) -> None:
        with self._lock:
            timer = self._timers.pop(record.id, None)
        if timer is not None:
            timer.cancel()

        try:
            applied = self._database.update_pod_status(
                record.id,
                status,
                expected=PodStatus.CREATING,
                detail=detail,
            )
        except PodplaneError:
            logger.exception("Unable to record %s status for pod %d", status.value, record.id)
            return

        if applied:
            logger.info("Pod %s for user %s is %s", record.name, record.user_id, status.value)
            return

        try:
            forgotten = self._database.get_pod(record.id) is None
        except PodplaneError:
            logger.exception("Unable to look up pod %d after creation", record.id)
            return

        if not forgotten:
            logger.warning(
                "Ignoring late %s outcome for pod %d; status was already settled",
                status.value,
                record.id,
            )
            return

        # The record was removed while creation ran; nothing may outlive it.
        logger.warning(
            "Pod %d was deleted while being created; removing resources for user %s",
            record.id,
            record.user_id,
        )
        result = self._driver.delete_instance(record.user_id)
        if not result.complete:
            logger.error(
                "Cleanup for deleted pod %d left resources behind: %s",
                record.id,
                "; ".join(f"{step.kind} {step.name}: {step.message}" for step in result.errors),
            )

    def _expire_creation(self, pod_id: int) -> None:
        with self._lock:
            self._timers.pop(pod_id, None)
        try:
            applied = self._database.update_pod_status(
                pod_id,
                PodStatus.FAILED,
                expected=PodStatus.CREATING,
                detail=f"Creation did not finish within {self._creation_timeout:g}s",
            )
        except PodplaneError:
            logger.exception("Unable to mark pod %d as failed after timeout", pod_id)
            return
        if applied:
            logger.error(
                "Pod %d did not finish creating within %gs; marked as failed",
                pod_id,
                self._creation_timeout,
            )

    def wait_for_pending(self, timeout: Optional[float] = None) -> bool:
        """Block until in-flight creations settle. Returns ``False`` on timeout."""

        with self._lock:
            futures = list(self._pending.values())
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_for_user(self, user_id: str) -> List[InstanceView]:
        records = self._database.list_pods_for_user(user_id)

        live: List[LivePodStatus] = []
        if records:
            try:
                live = self._driver.list_instance_status(user_id)
            except PodplaneError as exc:
                logger.warning("Could not get cluster status for user %s: %s", user_id, exc)

        return [self._view(record, live_status=_match_live_status(record, live)) for record in records]

    def list_all(self) -> List[InstanceView]:
        return [self._view(record) for record in self._database.list_pods()]

    def get_instance(self, pod_id: int) -> InstanceView:
        record = self._database.get_pod(pod_id)
        if record is None:
            raise NotFoundError(f"Pod {pod_id} not found")
        return self._view(record, history=self._database.status_history(pod_id))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def terminate(self, pod_id: int) -> TeardownResult:
        """Tear down a pod's cluster resources, then forget the pod.

        The record, and with it the node port, is kept until every teardown
        step has either deleted its resource or found it already gone. A pod
        whose creation is still running is waited for, up to the creation
        timeout, so teardown sees everything creation made.
        """

        record = self._database.get_pod(pod_id)
        if record is None:
            raise NotFoundError(f"Pod {pod_id} not found")

        with self._lock:
            pending = self._pending.get(pod_id)
        if pending is not None:
            logger.info("Waiting for creation of pod %d to finish before teardown", pod_id)
            _, not_done = wait([pending], timeout=self._creation_timeout)
            if not_done:
                raise CreationInProgressError(
                    f"Pod {pod_id} is still being created; retry the deletion later"
                )

        result = self._driver.delete_instance(record.user_id)
        if not result.complete:
            failures = "; ".join(f"{step.kind} {step.name}: {step.message}" for step in result.errors)
            logger.error("Teardown of pod %d for user %s incomplete: %s", pod_id, record.user_id, failures)
            raise ResourceDeletionError(
                f"Failed to delete pod {pod_id}: {failures}",
                platform_message=failures,
            )

        self._database.delete_pod(pod_id)
        logger.info("Pod %s (id=%d) deleted; node port %s released", record.name, pod_id, record.node_port)
        return result

    def cluster_status(self) -> ClusterSummary:
        return ClusterSummary(
            cluster=self._driver.cluster_resources(),
            ports=self._allocator.port_stats(),
        )

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=wait)

    def _view(self, record: PodRecord, **extra) -> InstanceView:
        return InstanceView(record=record, host=self.public_host, **extra)


def _match_live_status(record: PodRecord, live: List[LivePodStatus]) -> Optional[LivePodStatus]:
    for status in live:
        if status.name.startswith(record.name):
            return status
    for status in live:
        if record.user_id in status.name:
            return status
    return None


__all__ = ["PodOrchestrator", "generate_user_id"]
