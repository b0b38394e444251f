"""Remove every cluster resource a user's pod may own.

Used to clean up after a crash left a user's Deployment, Service or volume
claim behind without a matching record, or to retry a teardown by hand.
"""

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from podplane.config import load_settings
from podplane.database import Database
from podplane.models import ResourceOutcome
from podplane.service import build_driver


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete the cluster resources of a podplane user")
    parser.add_argument("user_id", help="Identifier of the user, for example user-1a2b3c4d")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the YAML configuration file (defaults to PODPLANE_CONFIG or config/podplane.yaml)",
    )
    parser.add_argument(
        "--forget",
        action="store_true",
        help="Also delete the user's pod records, releasing their node ports, once teardown is complete",
    )
    return parser.parse_args()


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    args = parse_args()

    settings = load_settings(args.config)
    driver = build_driver(settings)
    result = driver.delete_instance(args.user_id)

    for step in result.steps:
        line = f"{step.kind:<24} {step.name:<40} {step.outcome.value}"
        if step.outcome is ResourceOutcome.ERROR and step.message:
            line += f" ({step.message})"
        print(line)

    if not result.complete:
        print("Teardown incomplete; re-run this script once the cluster is reachable.", file=sys.stderr)
        return 1

    if args.forget:
        database = Database(settings.db_path)
        database.initialize()
        records = database.list_pods_for_user(args.user_id)
        for record in records:
            database.delete_pod(record.id)
            print(f"Forgot pod #{record.id} ({record.name}); node port {record.node_port} released")
        if not records:
            print(f"No pod records stored for {args.user_id}.")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
