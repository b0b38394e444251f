"""SQLite-backed persistence for users and their pods."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import DuplicatePortError, DuplicateUserError, StoreError
from .models import PlanType, PodRecord, PodStatus, StatusChange, User


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "podplane.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


class Database:
    """Simple wrapper around SQLite for persisting users and pods.

    Every public method opens its own connection, so a single instance can be
    shared between request handlers and background workers.
    """

    def __init__(self, path: Path, *, timeout: float = 30.0) -> None:
        _ensure_directory(path)
        self._path = path
        self._timeout = timeout

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=self._timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to open database at {self._path}: {exc}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StoreError(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT UNIQUE NOT NULL,
                    email TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active'
                );

                CREATE TABLE IF NOT EXISTS pods (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL REFERENCES users(user_id),
                    pod_name TEXT NOT NULL,
                    plan_type TEXT NOT NULL CHECK(plan_type IN ('basic', 'pro')),
                    node_port INTEGER UNIQUE NOT NULL,
                    status TEXT NOT NULL DEFAULT 'creating'
                        CHECK(status IN ('creating', 'running', 'failed', 'deleted')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS pod_status_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pod_id INTEGER NOT NULL REFERENCES pods(id) ON DELETE CASCADE,
                    status TEXT NOT NULL,
                    detail TEXT,
                    recorded_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_pods_user_id ON pods(user_id);
                CREATE INDEX IF NOT EXISTS idx_pods_created_at ON pods(created_at);
                CREATE INDEX IF NOT EXISTS idx_pod_status_history_pod_id
                    ON pod_status_history(pod_id);
                """
            )

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(self, user_id: str, email: Optional[str]) -> User:
        """Insert a new user. Raises :class:`DuplicateUserError` on reuse."""

        created_at = _current_timestamp()
        normalized_email = email.strip() if email else ""

        with self._transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO users (user_id, email, created_at) VALUES (?, ?, ?)",
                    (user_id, normalized_email, _serialize_datetime(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateUserError(f"User {user_id!r} already exists") from exc

        return User(user_id=user_id, email=normalized_email, created_at=created_at)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    # ------------------------------------------------------------------
    # Pod management
    # ------------------------------------------------------------------
    def create_pod(
        self,
        user_id: str,
        name: str,
        plan_type: PlanType | str,
        node_port: int,
    ) -> PodRecord:
        """Insert a pod in ``creating`` state holding ``node_port``.

        The ``UNIQUE`` constraint on ``node_port`` is what ultimately keeps two
        pods from sharing a port; a collision raises :class:`DuplicatePortError`.
        """

        plan = PlanType(plan_type)
        now = _current_timestamp()
        timestamp = _serialize_datetime(now)

        with self._transaction() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO pods (
                        user_id, pod_name, plan_type, node_port, status, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, name, plan.value, node_port, PodStatus.CREATING.value, timestamp, timestamp),
                )
            except sqlite3.IntegrityError as exc:
                if "node_port" in str(exc):
                    raise DuplicatePortError(node_port) from exc
                raise StoreError(f"Unable to record pod {name!r}: {exc}") from exc

            pod_id = cursor.lastrowid
            conn.execute(
                "INSERT INTO pod_status_history (pod_id, status, recorded_at) VALUES (?, ?, ?)",
                (pod_id, PodStatus.CREATING.value, timestamp),
            )

        return PodRecord(
            id=pod_id,
            user_id=user_id,
            name=name,
            plan_type=plan,
            node_port=node_port,
            status=PodStatus.CREATING,
            created_at=now,
            updated_at=now,
        )

    def update_pod_status(
        self,
        pod_id: int,
        status: PodStatus | str,
        *,
        expected: PodStatus | str | None = None,
        detail: Optional[str] = None,
    ) -> bool:
        """Set the status of a pod and refresh ``updated_at``.

        Without ``expected`` any status may be written over any other. With
        ``expected`` the write only applies while the row still holds that
        status. Returns whether a row was changed.
        """

        new_status = PodStatus(status)
        timestamp = _serialize_datetime(_current_timestamp())

        with self._transaction() as conn:
            if expected is None:
                cursor = conn.execute(
                    "UPDATE pods SET status = ?, updated_at = ? WHERE id = ?",
                    (new_status.value, timestamp, pod_id),
                )
            else:
                cursor = conn.execute(
                    "UPDATE pods SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                    (new_status.value, timestamp, pod_id, PodStatus(expected).value),
                )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                "INSERT INTO pod_status_history (pod_id, status, detail, recorded_at) VALUES (?, ?, ?, ?)",
                (pod_id, new_status.value, detail, timestamp),
            )
        return True

    def get_pod(self, pod_id: int) -> Optional[PodRecord]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM pods WHERE id = ?", (pod_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_pod(row)

    def list_pods_for_user(self, user_id: str) -> List[PodRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM pods WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_pod(row) for row in rows]

    def list_pods(self) -> List[PodRecord]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM pods ORDER BY created_at DESC, id DESC").fetchall()
        return [self._row_to_pod(row) for row in rows]

    def delete_pod(self, pod_id: int) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM pods WHERE id = ?", (pod_id,))
        return cursor.rowcount > 0

    def status_history(self, pod_id: int) -> List[StatusChange]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT status, detail, recorded_at FROM pod_status_history
                WHERE pod_id = ? ORDER BY id ASC
                """,
                (pod_id,),
            ).fetchall()
        return [
            StatusChange(
                status=PodStatus(row["status"]),
                recorded_at=_parse_datetime(row["recorded_at"]),
                detail=row["detail"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Port management
    # ------------------------------------------------------------------
    def used_ports(self) -> List[int]:
        """Return the node ports held by every stored pod, whatever its status."""

        with self._transaction() as conn:
            rows = conn.execute("SELECT node_port FROM pods ORDER BY node_port").fetchall()
        return [int(row["node_port"]) for row in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            user_id=row["user_id"],
            email=row["email"] or "",
            created_at=_parse_datetime(row["created_at"]),
            status=row["status"],
        )

    @staticmethod
    def _row_to_pod(row: sqlite3.Row) -> PodRecord:
        return PodRecord(
            id=int(row["id"]),
            user_id=row["user_id"],
            name=row["pod_name"],
            plan_type=PlanType(row["plan_type"]),
            node_port=int(row["node_port"]),
            status=PodStatus(row["status"]),
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )


__all__ = ["Database", "resolve_database_path"]
