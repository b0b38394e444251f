"""Provisioning and lifecycle orchestration for per-user n8n pods."""

from __future__ import annotations

from typing import Any

from .database import Database, resolve_database_path

__version__ = "0.1.0"


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the provisioning API application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Database",
    "__version__",
    "create_app",
    "resolve_database_path",
]
