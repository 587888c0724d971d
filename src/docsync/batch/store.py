"""SQLite store for batch run history and scan checkpoints."""

from __future__ import annotations

import json
import os
import socket
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, Iterator, List

from docsync.errors import JobAlreadyCompleteError, JobAlreadyRunningError
from docsync.models import JobRun, JobStatus, StepCounters, format_instant, utc_now

ACTIVE_STATUSES = (JobStatus.STARTING.value, JobStatus.RUNNING.value)
DEFAULT_STALE_AFTER_SECONDS = 120.0


def current_owner() -> str:
    """``host:pid`` of this process, recorded on every run it launches."""
    return f"{socket.gethostname()}:{os.getpid()}"


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _is_abandoned(owner: str | None, last_updated: datetime | None, stale_before: datetime) -> bool:
    """A run is abandoned when its owning process is gone.

    Owners on this host are checked directly; owners elsewhere are judged by
    how long ago they last touched the run.
    """
    if not owner:
        return True
    host, _, pid = owner.rpartition(":")
    if host == socket.gethostname() and pid.isdigit():
        return not _process_alive(int(pid))
    return last_updated is None or last_updated < stale_before


def _to_text(value: datetime | None) -> str | None:
    return format_instant(value) if value else None


def _from_text(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class JobRepository:
    """Persistence for :class:`JobRun` records and per-instance cursor positions.

    Several processes may share one database file; each run records the
    process that owns it so a restart only fails runs whose owner is gone.
    """

    def __init__(self, db_path: Path, owner: str | None = None) -> None:
        self.db_path = Path(db_path)
        self.owner = owner or current_owner()
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                if immediate:
                    self._conn.execute("BEGIN IMMEDIATE")
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_runs (
                    id INTEGER PRIMARY KEY,
                    instance_key TEXT NOT NULL,
                    parameters TEXT NOT NULL,
                    status TEXT NOT NULL,
                    read_count INTEGER NOT NULL DEFAULT 0,
                    write_count INTEGER NOT NULL DEFAULT 0,
                    skip_count INTEGER NOT NULL DEFAULT 0,
                    commit_count INTEGER NOT NULL DEFAULT 0,
                    rollback_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    ended_at TEXT,
                    last_updated TEXT,
                    exit_message TEXT,
                    owner TEXT
                )
                """
            )
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(job_runs)")}
            if "owner" not in columns:
                conn.execute("ALTER TABLE job_runs ADD COLUMN owner TEXT")
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_job_runs_instance_key
                    ON job_runs(instance_key)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scan_checkpoints (
                    instance_key TEXT PRIMARY KEY,
                    next_index INTEGER NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> JobRun:
        return JobRun(
            run_id=row["id"],
            instance_key=row["instance_key"],
            parameters=json.loads(row["parameters"]),
            status=JobStatus(row["status"]),
            counters=StepCounters(
                read=row["read_count"],
                write=row["write_count"],
                skip=row["skip_count"],
                commit=row["commit_count"],
                rollback=row["rollback_count"],
            ),
            created_at=_from_text(row["created_at"]) or utc_now(),
            started_at=_from_text(row["started_at"]),
            ended_at=_from_text(row["ended_at"]),
            last_updated=_from_text(row["last_updated"]),
            exit_message=row["exit_message"],
            owner=row["owner"],
        )

    def create_run(self, instance_key: str, parameters: Dict[str, str]) -> JobRun:
        """Register a new run unless the same parameters are running or already completed."""
        with self.transaction(immediate=True) as conn:
            statuses = {
                row["status"]
                for row in conn.execute("SELECT status FROM job_runs WHERE instance_key = ?", (instance_key,))
            }
            if statuses & set(ACTIVE_STATUSES):
                raise JobAlreadyRunningError(f"A run with parameters {parameters} is already running")
            if JobStatus.COMPLETED.value in statuses:
                raise JobAlreadyCompleteError(
                    f"A run with parameters {parameters} already completed; launch with new parameters"
                )

            now = utc_now()
            run_id = conn.execute(
                """
                INSERT INTO job_runs(instance_key, parameters, status, created_at, last_updated, owner)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    instance_key,
                    json.dumps(parameters, sort_keys=True),
                    JobStatus.STARTING.value,
                    _to_text(now),
                    _to_text(now),
                    self.owner,
                ),
            ).lastrowid
        return JobRun(
            run_id=int(run_id),
            instance_key=instance_key,
            parameters=dict(parameters),
            created_at=now,
            last_updated=now,
            owner=self.owner,
        )

    def update_run(self, run: JobRun) -> None:
        """Persist status and counters. Terminal records are never changed again."""
        run.last_updated = utc_now()
        with self.transaction() as conn:
            row = conn.execute("SELECT status FROM job_runs WHERE id = ?", (run.run_id,)).fetchone()
            if row is None:
                raise KeyError(f"Unknown run {run.run_id}")
            if JobStatus(row["status"]).is_terminal:
                raise ValueError(f"Run {run.run_id} is already {row['status']} and cannot change")
            conn.execute(
                """
                UPDATE job_runs SET
                    status = ?, read_count = ?, write_count = ?, skip_count = ?,
                    commit_count = ?, rollback_count = ?, started_at = ?, ended_at = ?,
                    last_updated = ?, exit_message = ?
                WHERE id = ?
                """,
                (
                    run.status.value,
                    run.counters.read,
                    run.counters.write,
                    run.counters.skip,
                    run.counters.commit,
                    run.counters.rollback,
                    _to_text(run.started_at),
                    _to_text(run.ended_at),
                    _to_text(run.last_updated),
                    run.exit_message,
                    run.run_id,
                ),
            )

    def get_run(self, run_id: int) -> JobRun | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM job_runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, limit: int = 10) -> List[JobRun]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM job_runs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def heartbeat(self, run_ids: Iterable[int]) -> None:
        """Refresh ``last_updated`` on active runs owned by this process."""
        ids = list(run_ids)
        if not ids:
            return
        placeholders = ", ".join("?" for _ in ids)
        with self.transaction() as conn:
            conn.execute(
                f"""
                UPDATE job_runs SET last_updated = ?
                WHERE owner = ? AND status IN (?, ?) AND id IN ({placeholders})
                """,
                (_to_text(utc_now()), self.owner, *ACTIVE_STATUSES, *ids),
            )

    def fail_abandoned_runs(self, stale_after: float = DEFAULT_STALE_AFTER_SECONDS) -> int:
        """Mark runs whose owning process is gone as failed so they can be relaunched.

        Runs owned by a live process on this host are left alone. Runs owned by
        another host count as abandoned once their heartbeat is older than
        ``stale_after`` seconds.
        """
        now = utc_now()
        stale_before = now - timedelta(seconds=stale_after)
        with self.transaction(immediate=True) as conn:
            rows = conn.execute(
                "SELECT id, owner, last_updated FROM job_runs WHERE status IN (?, ?)", ACTIVE_STATUSES
            ).fetchall()
            abandoned = [
                row["id"]
                for row in rows
                if _is_abandoned(row["owner"], _from_text(row["last_updated"]), stale_before)
            ]
            for run_id in abandoned:
                conn.execute(
                    """
                    UPDATE job_runs SET status = ?, ended_at = ?, last_updated = ?,
                        exit_message = 'Abandoned: process exited while the run was active'
                    WHERE id = ?
                    """,
                    (JobStatus.FAILED.value, _to_text(now), _to_text(now), run_id),
                )
        return len(abandoned)

    def save_checkpoint(self, instance_key: str, next_index: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO scan_checkpoints(instance_key, next_index, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(instance_key) DO UPDATE SET
                    next_index = excluded.next_index, updated_at = excluded.updated_at
                """,
                (instance_key, next_index),
            )

    def load_checkpoint(self, instance_key: str) -> int | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT next_index FROM scan_checkpoints WHERE instance_key = ?", (instance_key,)
            ).fetchone()
        return int(row["next_index"]) if row else None

    def clear_checkpoint(self, instance_key: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM scan_checkpoints WHERE instance_key = ?", (instance_key,))
