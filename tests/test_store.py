"""Tests for the SQLite run and checkpoint store."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from docsync.batch.store import JobRepository, current_owner
from docsync.errors import JobAlreadyCompleteError, JobAlreadyRunningError
from docsync.models import JobStatus


class TestSchema:
    """Test JobRepository initialization and schema."""

    def test_init_creates_database(self, tmp_path: Path) -> None:
        db_path = tmp_path / "new.db"
        assert not db_path.exists()

        store = JobRepository(db_path)

        assert db_path.exists()
        assert store.db_path == db_path
        store.close()

    def test_tables_exist(self, store: JobRepository) -> None:
        names = {
            row["name"]
            for row in store.connection.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'index')")
        }

        assert {"job_runs", "scan_checkpoints", "idx_job_runs_instance_key"} <= names

    def test_wal_mode(self, store: JobRepository) -> None:
        mode = store.connection.execute("PRAGMA journal_mode").fetchone()[0]

        assert mode.lower() == "wal"


class TestRuns:
    """Test run history."""

    def test_create_and_get(self, store: JobRepository) -> None:
        run = store.create_run("key-1", {"launchTimestamp": "t1"})

        loaded = store.get_run(run.run_id)

        assert loaded is not None
        assert loaded.status is JobStatus.STARTING
        assert loaded.instance_key == "key-1"
        assert loaded.parameters == {"launchTimestamp": "t1"}

    def test_get_unknown(self, store: JobRepository) -> None:
        assert store.get_run(999) is None

    def test_update_persists_counters(self, store: JobRepository) -> None:
        run = store.create_run("key-1", {})
        run.status = JobStatus.RUNNING
        run.counters.read = 5
        run.counters.write = 4
        run.counters.skip = 1
        run.counters.commit = 1
        store.update_run(run)

        loaded = store.get_run(run.run_id)

        assert loaded.status is JobStatus.RUNNING
        assert loaded.counters.read == 5
        assert loaded.counters.write == 4
        assert loaded.counters.skip == 1
        assert loaded.last_updated is not None

    def test_terminal_run_cannot_change(self, store: JobRepository) -> None:
        run = store.create_run("key-1", {})
        run.status = JobStatus.COMPLETED
        store.update_run(run)
        run.status = JobStatus.RUNNING

        with pytest.raises(ValueError):
            store.update_run(run)

        assert store.get_run(run.run_id).status is JobStatus.COMPLETED

    def test_update_unknown_run(self, store: JobRepository) -> None:
        run = store.create_run("key-1", {})
        run.run_id = 12345

        with pytest.raises(KeyError):
            store.update_run(run)

    def test_active_instance_cannot_start_twice(self, store: JobRepository) -> None:
        store.create_run("key-1", {"launchTimestamp": "t1"})

        with pytest.raises(JobAlreadyRunningError):
            store.create_run("key-1", {"launchTimestamp": "t1"})

    def test_completed_instance_cannot_restart(self, store: JobRepository) -> None:
        run = store.create_run("key-1", {})
        run.status = JobStatus.COMPLETED
        store.update_run(run)

        with pytest.raises(JobAlreadyCompleteError):
            store.create_run("key-1", {})

    def test_failed_instance_can_restart(self, store: JobRepository) -> None:
        run = store.create_run("key-1", {})
        run.status = JobStatus.FAILED
        store.update_run(run)

        again = store.create_run("key-1", {})

        assert again.run_id != run.run_id

    def test_list_runs_newest_first(self, store: JobRepository) -> None:
        ids = [store.create_run(f"key-{index}", {}).run_id for index in range(12)]

        runs = store.list_runs()

        assert len(runs) == 10
        assert [run.run_id for run in runs] == list(reversed(ids))[:10]

    def test_fail_abandoned_runs(self, store: JobRepository, monkeypatch: pytest.MonkeyPatch) -> None:
        active = store.create_run("key-1", {})
        finished = store.create_run("key-2", {})
        finished.status = JobStatus.COMPLETED
        store.update_run(finished)
        monkeypatch.setattr("docsync.batch.store._process_alive", lambda pid: False)

        assert store.fail_abandoned_runs() == 1

        loaded = store.get_run(active.run_id)
        assert loaded.status is JobStatus.FAILED
        assert loaded.ended_at is not None
        assert "Abandoned" in loaded.exit_message
        assert store.get_run(finished.run_id).status is JobStatus.COMPLETED

    def test_runs_of_live_local_process_are_kept(self, store: JobRepository) -> None:
        active = store.create_run("key-1", {})

        assert store.fail_abandoned_runs() == 0
        assert store.get_run(active.run_id).status is JobStatus.STARTING
        assert store.get_run(active.run_id).owner == current_owner()

    def test_remote_runs_fail_only_when_heartbeat_is_stale(self, tmp_path: Path, store: JobRepository) -> None:
        remote = JobRepository(tmp_path / "state.db", owner="other-host:17")
        fresh = remote.create_run("key-1", {})
        stale = remote.create_run("key-2", {})
        remote.connection.execute(
            "UPDATE job_runs SET last_updated = '2000-01-01T00:00:00Z' WHERE id = ?", (stale.run_id,)
        )
        remote.connection.commit()
        remote.close()

        assert store.fail_abandoned_runs(stale_after=60) == 1
        assert store.get_run(fresh.run_id).status is JobStatus.STARTING
        assert store.get_run(stale.run_id).status is JobStatus.FAILED

    def test_runs_without_owner_are_abandoned(self, store: JobRepository) -> None:
        run = store.create_run("key-1", {})
        store.connection.execute("UPDATE job_runs SET owner = NULL WHERE id = ?", (run.run_id,))
        store.connection.commit()

        assert store.fail_abandoned_runs() == 1

    def test_heartbeat_touches_own_active_runs(self, store: JobRepository) -> None:
        active = store.create_run("key-1", {})
        store.connection.execute("UPDATE job_runs SET last_updated = '2000-01-01T00:00:00Z'")
        store.connection.commit()

        store.heartbeat([active.run_id])

        assert store.get_run(active.run_id).last_updated.year > 2000

    def test_existing_database_gains_owner_column(self, tmp_path: Path) -> None:
        db_path = tmp_path / "legacy.db"
        conn = sqlite3.connect(db_path)
        conn.execute(
            """
            CREATE TABLE job_runs (
                id INTEGER PRIMARY KEY, instance_key TEXT NOT NULL, parameters TEXT NOT NULL,
                status TEXT NOT NULL, read_count INTEGER NOT NULL DEFAULT 0,
                write_count INTEGER NOT NULL DEFAULT 0, skip_count INTEGER NOT NULL DEFAULT 0,
                commit_count INTEGER NOT NULL DEFAULT 0, rollback_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL, started_at TEXT, ended_at TEXT, last_updated TEXT, exit_message TEXT
            )
            """
        )
        conn.commit()
        conn.close()

        store = JobRepository(db_path)
        run = store.create_run("key-1", {})

        assert store.get_run(run.run_id).owner == current_owner()
        store.close()


class TestCheckpoints:
    """Test cursor persistence."""

    def test_save_overwrites(self, store: JobRepository) -> None:
        store.save_checkpoint("key-1", 100)
        store.save_checkpoint("key-1", 200)

        assert store.load_checkpoint("key-1") == 200

    def test_load_missing(self, store: JobRepository) -> None:
        assert store.load_checkpoint("nothing") is None

    def test_clear(self, store: JobRepository) -> None:
        store.save_checkpoint("key-1", 100)
        store.clear_checkpoint("key-1")

        assert store.load_checkpoint("key-1") is None

    def test_survives_reopen(self, tmp_path: Path) -> None:
        db_path = tmp_path / "state.db"
        first = JobRepository(db_path)
        first.save_checkpoint("key-1", 42)
        first.close()

        second = JobRepository(db_path)
        try:
            assert second.load_checkpoint("key-1") == 42
        finally:
            second.close()
