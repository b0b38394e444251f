from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from podplane.database import Database, resolve_database_path
from podplane.errors import DuplicatePortError, DuplicateUserError, StoreError
from podplane.models import PlanType, PodStatus


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "podplane.sqlite3")
    db.initialize()
    return db


def test_initialize_is_idempotent(database: Database) -> None:
    database.initialize()
    assert database.list_pods() == []


def test_create_user_and_pod(database: Database) -> None:
    user = database.create_user("user-0001", " ada@example.com ")
    assert user.email == "ada@example.com"
    assert database.get_user("user-0001") == user

    pod = database.create_pod("user-0001", "user-0001-n8n-basic", PlanType.BASIC, 31000)
    assert pod.status is PodStatus.CREATING
    assert pod.created_at == pod.updated_at

    stored = database.get_pod(pod.id)
    assert stored == pod
    assert database.list_pods_for_user("user-0001") == [pod]


def test_duplicate_user_is_rejected(database: Database) -> None:
    database.create_user("user-0001", None)
    with pytest.raises(DuplicateUserError):
        database.create_user("user-0001", "other@example.com")


def test_duplicate_node_port_raises_conflict(database: Database) -> None:
    database.create_user("user-a", "")
    database.create_user("user-b", "")
    database.create_pod("user-a", "user-a-n8n-basic", "basic", 31000)

    with pytest.raises(DuplicatePortError) as excinfo:
        database.create_pod("user-b", "user-b-n8n-pro", "pro", 31000)

    assert excinfo.value.port == 31000
    assert excinfo.value.category == "conflict"
    assert len(database.list_pods()) == 1


def test_pod_requires_existing_user(database: Database) -> None:
    with pytest.raises(StoreError):
        database.create_pod("user-missing", "user-missing-n8n-basic", "basic", 31000)


def test_update_status_without_expectation_is_permissive(database: Database) -> None:
    database.create_user("user-a", "")
    pod = database.create_pod("user-a", "user-a-n8n-basic", "basic", 31000)

    assert database.update_pod_status(pod.id, PodStatus.FAILED)
    assert database.update_pod_status(pod.id, PodStatus.RUNNING)

    updated = database.get_pod(pod.id)
    assert updated.status is PodStatus.RUNNING
    assert updated.updated_at >= pod.updated_at


def test_update_status_with_expectation_applies_once(database: Database) -> None:
    database.create_user("user-a", "")
    pod = database.create_pod("user-a", "user-a-n8n-basic", "basic", 31000)

    assert database.update_pod_status(pod.id, PodStatus.RUNNING, expected=PodStatus.CREATING)
    assert not database.update_pod_status(pod.id, PodStatus.FAILED, expected=PodStatus.CREATING)
    assert database.get_pod(pod.id).status is PodStatus.RUNNING


def test_update_status_of_missing_pod_returns_false(database: Database) -> None:
    assert not database.update_pod_status(999, PodStatus.RUNNING)


def test_status_history_records_each_transition(database: Database) -> None:
    database.create_user("user-a", "")
    pod = database.create_pod("user-a", "user-a-n8n-basic", "basic", 31000)
    database.update_pod_status(pod.id, PodStatus.FAILED, detail="image pull failed")

    history = database.status_history(pod.id)
    assert [entry.status for entry in history] == [PodStatus.CREATING, PodStatus.FAILED]
    assert history[1].detail == "image pull failed"


def test_delete_pod_removes_row_and_history(database: Database) -> None:
    database.create_user("user-a", "")
    pod = database.create_pod("user-a", "user-a-n8n-basic", "basic", 31000)

    assert database.delete_pod(pod.id)
    assert database.get_pod(pod.id) is None
    assert database.status_history(pod.id) == []
    assert not database.delete_pod(pod.id)


def test_listing_is_newest_first(database: Database) -> None:
    database.create_user("user-a", "")
    first = database.create_pod("user-a", "user-a-n8n-basic", "basic", 31000)
    second = database.create_pod("user-a", "user-a-n8n-pro", "pro", 31001)

    assert [pod.id for pod in database.list_pods()] == [second.id, first.id]
    assert database.list_pods_for_user("user-unknown") == []


def test_used_ports_include_failed_pods(database: Database) -> None:
    database.create_user("user-a", "")
    database.create_user("user-b", "")
    database.create_pod("user-a", "user-a-n8n-basic", "basic", 31005)
    failed = database.create_pod("user-b", "user-b-n8n-basic", "basic", 31001)
    database.update_pod_status(failed.id, PodStatus.FAILED)

    assert database.used_ports() == [31001, 31005]


def test_schema_rejects_unknown_status(database: Database) -> None:
    database.create_user("user-a", "")
    pod = database.create_pod("user-a", "user-a-n8n-basic", "basic", 31000)
    with sqlite3.connect(database.path) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE pods SET status = 'paused' WHERE id = ?", (pod.id,))


def test_resolve_database_path_prefers_explicit_value(tmp_path: Path) -> None:
    explicit = tmp_path / "custom.sqlite3"
    assert resolve_database_path(str(explicit)) == explicit.resolve()
    assert resolve_database_path(None).name == "podplane.sqlite3"
