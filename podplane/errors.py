"""Exception hierarchy shared by the provisioning components."""
from __future__ import annotations


class PodplaneError(Exception):
    """Base error for the pod provisioning service.

    ``category`` is a transport-agnostic classification that the HTTP layer
    maps onto a response status.
    """

    category = "internal"


class ValidationError(PodplaneError):
    """A request was rejected before any side effect took place."""

    category = "validation"


class InvalidPlanError(ValidationError):
    """The requested plan type is not offered."""

    def __init__(self, plan_type: object) -> None:
        super().__init__(f"Invalid plan type {plan_type!r}. Must be basic or pro")
        self.plan_type = plan_type


class TemplateNotFoundError(ValidationError):
    """No manifest template exists for the plan type."""


class NotFoundError(PodplaneError):
    """The referenced pod does not exist."""

    category = "not_found"


class CreationInProgressError(PodplaneError):
    """The pod is still being created and cannot be torn down yet."""

    category = "conflict"


class AllocationError(PodplaneError):
    """A node port could not be reserved."""

    category = "allocation"


class ExhaustedRangeError(AllocationError):
    """Every port in the configured range is taken."""


class PortAllocationError(AllocationError):
    """Port selection kept losing races against concurrent writers."""


class StoreError(PodplaneError):
    """The record store rejected or failed an operation."""

    category = "store"


class DuplicateUserError(StoreError):
    """A user with the same identifier already exists."""

    category = "conflict"


class DuplicatePortError(StoreError):
    """Another live pod already holds the node port."""

    category = "conflict"

    def __init__(self, port: int) -> None:
        super().__init__(f"Node port {port} is already assigned")
        self.port = port


class ClusterError(PodplaneError):
    """The orchestration platform failed a request.

    ``platform_message`` carries the text reported by the platform client.
    """

    category = "cluster"

    def __init__(self, message: str, *, platform_message: str | None = None) -> None:
        super().__init__(message)
        self.platform_message = platform_message


class ResourceCreationError(ClusterError):
    """Creating one of the pod's cluster resources failed."""


class ResourceDeletionError(ClusterError):
    """Tearing down the pod's cluster resources did not complete."""


class StatusQueryError(ClusterError):
    """Live status could not be read from the platform."""


__all__ = [
    "PodplaneError",
    "ValidationError",
    "InvalidPlanError",
    "TemplateNotFoundError",
    "NotFoundError",
    "CreationInProgressError",
    "AllocationError",
    "ExhaustedRangeError",
    "PortAllocationError",
    "StoreError",
    "DuplicateUserError",
    "DuplicatePortError",
    "ClusterError",
    "ResourceCreationError",
    "ResourceDeletionError",
    "StatusQueryError",
]
