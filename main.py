"""Command-line interface for the podplane provisioning service."""

from __future__ import annotations
import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

import httpx

from podplane.config import Settings, load_settings
from podplane.database import Database

logger = logging.getLogger("podplane.main")

_DEFAULT_SERVICE_URL = "http://localhost:3000"


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="podplane provisioning utilities")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML configuration file (default: $PODPLANE_CONFIG or config/podplane.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the provisioning database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP provisioning service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=3000,
        help="Port for the HTTP API (default: 3000)",
    )

    status_parser = subparsers.add_parser(
        "status", help="Show cluster and port usage reported by a running service"
    )
    status_parser.add_argument(
        "--service-url",
        default=_DEFAULT_SERVICE_URL,
        help=f"Base URL of a running provisioning service (default: {_DEFAULT_SERVICE_URL})",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "status"}

    # Global options come before the sub-command.
    leading: list[str] = []
    while args_list and args_list[0] == "--config":
        leading.extend(args_list[:2])
        args_list = args_list[2:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args([*leading, *args_list])
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args([*leading, *args_list])
            args_list = ["serve", *args_list]

    return parser.parse_args([*leading, *args_list])


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.db_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.db_path)
    return database


def _serve(*, settings: Settings, database: Database, host: str, port: int) -> None:
    from podplane.service import create_app
    import uvicorn

    logger.info("Starting provisioning API on http://%s:%s", host, port)
    logger.info(
        "Namespace %s, node ports %s-%s",
        settings.namespace,
        settings.port_range_start,
        settings.port_range_end,
    )

    app = create_app(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _show_status(service_url: str) -> int:
    endpoint = service_url.rstrip("/") + "/api/v1/cluster/status"

    try:
        response = httpx.get(endpoint, timeout=10.0)
    except httpx.HTTPError as exc:
        print(f"Failed to contact provisioning service: {exc}")
        return 1

    if response.status_code != 200:
        print(f"Service responded with {response.status_code}: {response.text.strip()}")
        return 1

    try:
        payload = response.json()
    except ValueError:
        print("Service returned an unexpected response format.")
        return 1

    cluster = payload.get("cluster", {})
    ports = payload.get("ports", {})

    print(f"Nodes:        {cluster.get('node_count', 0)}")
    print(f"Pods:         {cluster.get('running_pods', 0)} running / {cluster.get('total_pods', 0)} total")
    if cluster.get("degraded"):
        print("              (cluster could not be fully queried; counts may be incomplete)")
    print(
        f"Node ports:   {ports.get('used', 0)} used / {ports.get('total', 0)} total"
        f" ({ports.get('available', 0)} available)"
    )
    used_ports = ports.get("used_ports") or []
    if used_ports:
        print("Ports in use: " + ", ".join(str(port) for port in used_ports))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)

    if args.command == "status":
        return _show_status(args.service_url)

    settings = load_settings(args.config)
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
