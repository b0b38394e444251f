"""HTTP API for provisioning and tearing down user pods."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

import anyio
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .cluster import ClusterDriver, load_api_client
from .config import Settings, load_settings
from .database import Database
from .errors import PodplaneError
from .models import InstanceView
from .orchestrator import PodOrchestrator
from .ports import PortAllocator
from .retry import RetryPolicy
from .templates import ManifestRenderer

logger = logging.getLogger("podplane.service")

API_PREFIX = "/api/v1"

_STATUS_BY_CATEGORY: Dict[str, int] = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "allocation": status.HTTP_409_CONFLICT,
    "conflict": status.HTTP_409_CONFLICT,
    "store": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "cluster": status.HTTP_502_BAD_GATEWAY,
}


class ProvisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_type: Optional[str] = Field(default=None, alias="planType", description="basic or pro")
    email: Optional[str] = Field(default=None, max_length=320)


class AccessEndpoint(BaseModel):
    host: str = Field(..., description="Hostname clients should connect to")
    port: int = Field(..., description="Node port exposed for the pod")
    url: str


class LiveStatusView(BaseModel):
    name: str
    phase: str
    ready: bool
    restart_count: int
    created_at: Optional[datetime] = None


class StatusChangeView(BaseModel):
    status: str
    recorded_at: datetime
    detail: Optional[str] = None


class PodView(BaseModel):
    id: int
    user_id: str
    name: str
    plan_type: str
    node_port: int
    status: str
    created_at: datetime
    updated_at: datetime
    access: AccessEndpoint
    live_status: Optional[LiveStatusView] = None
    history: Optional[List[StatusChangeView]] = None


class ProvisionResponse(BaseModel):
    message: str
    pod: PodView


class PodListResponse(BaseModel):
    pods: List[PodView]


class TeardownStepView(BaseModel):
    kind: str
    name: str
    outcome: str
    message: Optional[str] = None


class DeleteResponse(BaseModel):
    message: str
    user_id: str
    success: bool
    complete: bool
    steps: List[TeardownStepView]


class ClusterResourcesView(BaseModel):
    node_count: int
    total_pods: int
    running_pods: int
    degraded: bool


class PortStatsView(BaseModel):
    total: int
    used: int
    available: int
    used_ports: List[int]


class ClusterStatusResponse(BaseModel):
    cluster: ClusterResourcesView
    ports: PortStatsView


def _pod_view(view: InstanceView) -> PodView:
    return PodView(**view.to_dict())


def build_driver(settings: Settings) -> ClusterDriver:
    """Connect to the cluster described by ``settings``."""

    renderer = ManifestRenderer(
        settings.template_dir,
        namespace=settings.namespace,
        public_host=settings.public_host,
        storage_class=settings.storage_class,
        storage_size=settings.storage_size,
    )
    api_client = load_api_client(
        kubeconfig=settings.kubeconfig,
        context=settings.kube_context,
        skip_tls_verify=settings.skip_tls_verify,
    )
    return ClusterDriver.from_api_client(
        api_client,
        renderer,
        namespace=settings.namespace,
        retry_policy=RetryPolicy(
            max_attempts=settings.retry_attempts,
            backoff_seconds=settings.retry_backoff,
        ),
    )


def build_orchestrator(
    settings: Settings,
    *,
    database: Database | None = None,
    driver: ClusterDriver | None = None,
) -> PodOrchestrator:
    """Wire the store, allocator and cluster driver described by ``settings``."""

    db = database or Database(settings.db_path)
    db.initialize()

    allocator = PortAllocator(
        db,
        range_start=settings.port_range_start,
        range_end=settings.port_range_end,
        max_attempts=settings.port_claim_attempts,
    )

    return PodOrchestrator(
        db,
        allocator,
        driver or build_driver(settings),
        public_host=settings.public_host,
        creation_timeout=settings.creation_timeout,
        workers=settings.workers,
    )


def register_api_routes(app: FastAPI, orchestrator: PodOrchestrator) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application."""

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
        }

    @app.get("/")
    async def index() -> Dict[str, object]:
        return {
            "message": "podplane API server",
            "version": __version__,
            "endpoints": {
                "health": "/health",
                "createPod": f"POST {API_PREFIX}/pods",
                "getAllPods": f"GET {API_PREFIX}/pods",
                "getUserPods": f"GET {API_PREFIX}/pods/user/{{user_id}}",
                "getPod": f"GET {API_PREFIX}/pods/{{pod_id}}",
                "deletePod": f"DELETE {API_PREFIX}/pods/{{pod_id}}",
                "clusterStatus": f"GET {API_PREFIX}/cluster/status",
            },
        }

    @app.post(
        f"{API_PREFIX}/pods",
        status_code=status.HTTP_201_CREATED,
        response_model=ProvisionResponse,
    )
    async def create_pod(request: ProvisionRequest) -> ProvisionResponse:
        view = await anyio.to_thread.run_sync(orchestrator.provision, request.plan_type, request.email)
        logger.info(
            "Pod creation initiated for user %s (plan=%s, node_port=%s)",
            view.record.user_id,
            view.record.plan_type.value,
            view.record.node_port,
        )
        return ProvisionResponse(message="Pod creation initiated", pod=_pod_view(view))

    @app.get(f"{API_PREFIX}/pods", response_model=PodListResponse)
    async def list_pods() -> PodListResponse:
        views = await anyio.to_thread.run_sync(orchestrator.list_all)
        return PodListResponse(pods=[_pod_view(view) for view in views])

    @app.get(f"{API_PREFIX}/pods/user/{{user_id}}", response_model=PodListResponse)
    async def list_user_pods(user_id: str) -> PodListResponse:
        views = await anyio.to_thread.run_sync(orchestrator.list_for_user, user_id)
        return PodListResponse(pods=[_pod_view(view) for view in views])

    @app.get(f"{API_PREFIX}/pods/{{pod_id}}", response_model=PodView)
    async def get_pod(pod_id: int) -> PodView:
        view = await anyio.to_thread.run_sync(orchestrator.get_instance, pod_id)
        return _pod_view(view)

    @app.delete(f"{API_PREFIX}/pods/{{pod_id}}", response_model=DeleteResponse)
    async def delete_pod(pod_id: int) -> DeleteResponse:
        result = await anyio.to_thread.run_sync(orchestrator.terminate, pod_id)
        return DeleteResponse(message="Pod deleted successfully", **result.to_dict())

    @app.get(f"{API_PREFIX}/cluster/status", response_model=ClusterStatusResponse)
    async def cluster_status() -> ClusterStatusResponse:
        summary = await anyio.to_thread.run_sync(orchestrator.cluster_status)
        return ClusterStatusResponse(**summary.to_dict())


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    driver: ClusterDriver | None = None,
    orchestrator: PodOrchestrator | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the provisioning service."""

    if orchestrator is None:
        orchestrator = build_orchestrator(settings or load_settings(), database=database, driver=driver)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Pod provisioning service started")
        yield
        logger.info("Shutting down pod provisioning service")
        orchestrator.shutdown(wait=False)

    app = FastAPI(
        title="podplane",
        version=__version__,
        description="Provisioning and lifecycle management for per-user n8n pods.",
        lifespan=lifespan,
    )

    @app.exception_handler(PodplaneError)
    async def handle_podplane_error(request: Request, exc: PodplaneError) -> JSONResponse:
        status_code = _STATUS_BY_CATEGORY.get(exc.category, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.category, "message": str(exc)},
        )

    app.state.orchestrator = orchestrator
    register_api_routes(app, orchestrator)
    return app


__all__ = ["API_PREFIX", "build_driver", "build_orchestrator", "create_app", "register_api_routes"]
