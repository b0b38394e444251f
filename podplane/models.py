"""Domain models for users, pods and their cluster resources."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class PlanType(str, Enum):
    """Resource tiers a pod can be provisioned with."""

    BASIC = "basic"
    PRO = "pro"


class PodStatus(str, Enum):
    """Lifecycle state stored on a pod record."""

    CREATING = "creating"
    RUNNING = "running"
    FAILED = "failed"
    DELETED = "deleted"


class ResourceOutcome(str, Enum):
    """Result of a single teardown step."""

    DELETED = "deleted"
    NOT_FOUND = "not_found"
    ERROR = "error"


APP_NAME = "n8n"


def pod_name(user_id: str, plan_type: PlanType | str) -> str:
    """Return the deterministic workload name for a user's plan."""

    return f"{user_id}-{APP_NAME}-{PlanType(plan_type).value}"


def service_name(user_id: str) -> str:
    return f"{user_id}-{APP_NAME}-service"


def volume_claim_name(user_id: str) -> str:
    return f"{user_id}-{APP_NAME}-storage"


@dataclass(frozen=True)
class User:
    """Represents a provisioning customer stored in the database."""

    user_id: str
    email: str
    created_at: datetime
    status: str = "active"

    def to_dict(self) -> Dict[str, object]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "created_at": self.created_at.isoformat(),
            "status": self.status,
        }


@dataclass(frozen=True)
class PodRecord:
    """Durable record of a workload instance."""

    id: int
    user_id: str
    name: str
    plan_type: PlanType
    node_port: int
    status: PodStatus
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "plan_type": self.plan_type.value,
            "node_port": self.node_port,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class StatusChange:
    """One entry of a pod's status history."""

    status: PodStatus
    recorded_at: datetime
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "recorded_at": self.recorded_at.isoformat(),
            "detail": self.detail,
        }


@dataclass(frozen=True)
class LivePodStatus:
    """Status of a running Kubernetes pod as reported by the platform."""

    name: str
    phase: str
    ready: bool
    restart_count: int
    created_at: Optional[datetime]

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "phase": self.phase,
            "ready": self.ready,
            "restart_count": self.restart_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class ClusterResources:
    node_count: int = 0
    total_pods: int = 0
    running_pods: int = 0
    degraded: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "node_count": self.node_count,
            "total_pods": self.total_pods,
            "running_pods": self.running_pods,
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class PortStats:
    total: int
    used: int
    available: int
    used_ports: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "used": self.used,
            "available": self.available,
            "used_ports": list(self.used_ports),
        }


@dataclass(frozen=True)
class ClusterSummary:
    cluster: ClusterResources
    ports: PortStats

    def to_dict(self) -> Dict[str, object]:
        return {"cluster": self.cluster.to_dict(), "ports": self.ports.to_dict()}


@dataclass(frozen=True)
class CreationResult:
    """Platform objects returned while creating a pod's resources."""

    volume_claim: Any
    workload: Any
    service: Any


@dataclass(frozen=True)
class ResourceDeletion:
    kind: str
    name: str
    outcome: ResourceOutcome
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind,
            "name": self.name,
            "outcome": self.outcome.value,
            "message": self.message,
        }


@dataclass
class TeardownResult:
    """Aggregated outcome of deleting a user's cluster resources."""

    user_id: str
    steps: List[ResourceDeletion] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """``True`` when a workload of either plan was actually deleted."""

        return any(
            step.kind == "deployment" and step.outcome is ResourceOutcome.DELETED
            for step in self.steps
        )

    @property
    def complete(self) -> bool:
        """``True`` when no step is left in an error state."""

        return not self.errors

    @property
    def errors(self) -> List[ResourceDeletion]:
        return [step for step in self.steps if step.outcome is ResourceOutcome.ERROR]

    def to_dict(self) -> Dict[str, object]:
        return {
            "user_id": self.user_id,
            "success": self.success,
            "complete": self.complete,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass(frozen=True)
class InstanceView:
    """A pod record decorated for presentation to API clients."""

    record: PodRecord
    host: str
    live_status: Optional[LivePodStatus] = None
    history: Optional[List[StatusChange]] = None

    @property
    def access_url(self) -> str:
        return f"http://{self.host}:{self.record.node_port}"

    def to_dict(self) -> Dict[str, object]:
        payload = self.record.to_dict()
        payload["access"] = {
            "host": self.host,
            "port": self.record.node_port,
            "url": self.access_url,
        }
        payload["live_status"] = self.live_status.to_dict() if self.live_status else None
        if self.history is not None:
            payload["history"] = [entry.to_dict() for entry in self.history]
        return payload


__all__ = [
    "APP_NAME",
    "ClusterResources",
    "ClusterSummary",
    "CreationResult",
    "InstanceView",
    "LivePodStatus",
    "PlanType",
    "PodRecord",
    "PodStatus",
    "PortStats",
    "ResourceDeletion",
    "ResourceOutcome",
    "StatusChange",
    "TeardownResult",
    "User",
    "pod_name",
    "service_name",
    "volume_claim_name",
]
