"""Rendering of Kubernetes manifests from per-plan YAML templates."""
from __future__ import annotations

import copy
from pathlib import Path
from string import Template
from typing import Any, Dict, Optional, Tuple

import yaml

from .errors import InvalidPlanError, TemplateNotFoundError
from .models import PlanType, pod_name, service_name, volume_claim_name

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent / "manifests"
DEFAULT_NAMESPACE = "user-pods"
DEFAULT_STORAGE_CLASS = "user-pod-storage"
DEFAULT_STORAGE_SIZE = "1Gi"
DEFAULT_PUBLIC_HOST = "127.0.0.1"

Manifest = Dict[str, Any]


class ManifestRenderer:
    """Loads ``<plan>.yaml`` templates and fills in per-user values.

    A template holds two YAML documents, a ``Deployment`` followed by a
    ``Service``. Placeholders use :class:`string.Template` syntax:
    ``$user_id``, ``$node_port``, ``$plan_type``, ``$pod_name``,
    ``$service_name``, ``$claim_name``, ``$namespace`` and ``$public_host``.
    """

    def __init__(
        self,
        template_dir: Optional[Path] = None,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        public_host: str = DEFAULT_PUBLIC_HOST,
        storage_class: str = DEFAULT_STORAGE_CLASS,
        storage_size: str = DEFAULT_STORAGE_SIZE,
    ) -> None:
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
        self.namespace = namespace
        self.public_host = public_host
        self.storage_class = storage_class
        self.storage_size = storage_size

    def template_path(self, plan_type: PlanType | str) -> Path:
        try:
            plan = PlanType(plan_type)
        except ValueError as exc:
            raise TemplateNotFoundError(f"No template for plan type {plan_type!r}") from exc
        path = self.template_dir / f"{plan.value}.yaml"
        if not path.is_file():
            raise TemplateNotFoundError(f"Template file not found: {path}")
        return path

    def render_manifests(
        self,
        plan_type: PlanType | str,
        user_id: str,
        port: int,
    ) -> Tuple[Manifest, Manifest]:
        """Return the ``(deployment, service)`` manifests for a user's pod."""

        path = self.template_path(plan_type)
        plan = PlanType(plan_type)
        raw = path.read_text(encoding="utf-8")
        try:
            rendered = Template(raw).substitute(
                user_id=user_id,
                node_port=str(int(port)),
                plan_type=plan.value,
                pod_name=pod_name(user_id, plan),
                service_name=service_name(user_id),
                claim_name=volume_claim_name(user_id),
                namespace=self.namespace,
                public_host=self.public_host,
            )
        except (KeyError, ValueError) as exc:
            raise ValueError(f"Template {path.name} has an unknown placeholder: {exc}") from exc

        documents = [doc for doc in yaml.safe_load_all(rendered) if doc]
        if len(documents) != 2:
            raise ValueError(
                f"Template {path.name} must define exactly two documents, found {len(documents)}"
            )
        workload, service = documents
        if workload.get("kind") != "Deployment" or service.get("kind") != "Service":
            raise ValueError(f"Template {path.name} must define a Deployment followed by a Service")
        return workload, service

    def render_volume_claim(self, user_id: str) -> Manifest:
        return {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": volume_claim_name(user_id),
                "namespace": self.namespace,
                "labels": {"user": user_id},
            },
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "storageClassName": self.storage_class,
                "resources": {"requests": {"storage": self.storage_size}},
            },
        }


def render_manifests(
    plan_type: PlanType | str,
    user_id: str,
    port: int,
    *,
    template_dir: Optional[Path] = None,
) -> Tuple[Manifest, Manifest]:
    """Render the bundled templates with default settings."""

    return ManifestRenderer(template_dir).render_manifests(plan_type, user_id, port)


def with_namespace(manifest: Manifest, namespace: str) -> Manifest:
    """Return a copy of ``manifest`` whose metadata targets ``namespace``."""

    result = copy.deepcopy(manifest)
    metadata = result.get("metadata") or {}
    metadata["namespace"] = namespace
    result["metadata"] = metadata
    return result


def validate_plan(plan_type: object) -> PlanType:
    try:
        return PlanType(plan_type)
    except ValueError as exc:
        raise InvalidPlanError(plan_type) from exc


__all__ = [
    "DEFAULT_NAMESPACE",
    "DEFAULT_PUBLIC_HOST",
    "DEFAULT_STORAGE_CLASS",
    "DEFAULT_STORAGE_SIZE",
    "DEFAULT_TEMPLATE_DIR",
    "ManifestRenderer",
    "render_manifests",
    "validate_plan",
    "with_namespace",
]
