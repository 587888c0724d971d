"""Tests for CLI commands."""

from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from docsync.batch.store import JobRepository
from docsync.cli import _setup_logging, app
from docsync.index.gateway import BulkResult
from docsync.models import JobStatus

runner = CliRunner()


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ["DOCSYNC_TARGET_BASE_DIR", "DOCSYNC_STATE_DB_PATH", "DOCSYNC_CHUNK_SIZE"]:
        monkeypatch.delenv(name, raising=False)


class TestSetupLogging:
    """Tests for _setup_logging helper."""

    def test_setup_logging_verbose(self) -> None:
        """Verbose mode sets DEBUG level."""
        with patch("docsync.cli.logging.basicConfig") as mock_config:
            _setup_logging(verbose=True)
            mock_config.assert_called_once()
            assert mock_config.call_args[1]["level"] == logging.DEBUG

    def test_setup_logging_normal(self) -> None:
        """Normal mode sets INFO level."""
        with patch("docsync.cli.logging.basicConfig") as mock_config:
            _setup_logging(verbose=False)
            mock_config.assert_called_once()
            assert mock_config.call_args[1]["level"] == logging.INFO


class TestBackfillCommand:
    """Tests for the backfill command."""

    @patch("docsync.cli.ElasticsearchGateway")
    def test_backfill_indexes_directory(self, mock_gateway_class: MagicMock, tmp_path: Path, clean_env) -> None:
        files = tmp_path / "files"
        files.mkdir()
        (files / "a.txt").write_text("hello")
        db_path = tmp_path / "state" / "docsync.db"
        gateway = MagicMock()
        gateway.bulk_upsert.side_effect = lambda docs: BulkResult(attempted=len(docs), succeeded=len(docs))
        mock_gateway_class.from_config.return_value = gateway

        result = runner.invoke(app, ["backfill", "--base-dir", str(files), "--db", str(db_path)])

        assert result.exit_code == 0, result.stdout
        assert "finished with status COMPLETED" in result.stdout
        gateway.bulk_upsert.assert_called_once()
        gateway.close.assert_called_once()
        assert db_path.exists()

    @patch("docsync.cli.ElasticsearchGateway")
    def test_backfill_failure_exits_nonzero(
        self, mock_gateway_class: MagicMock, tmp_path: Path, clean_env
    ) -> None:
        files = tmp_path / "files"
        files.mkdir()
        (files / "a.txt").write_text("hello")
        gateway = MagicMock()
        gateway.bulk_upsert.return_value = BulkResult(attempted=1, failures=[("x", "rejected")])
        mock_gateway_class.from_config.return_value = gateway

        result = runner.invoke(
            app, ["backfill", "--base-dir", str(files), "--db", str(tmp_path / "state.db")]
        )

        assert result.exit_code == 1
        assert "FAILED" in result.stdout

    @patch("docsync.cli.ElasticsearchGateway")
    def test_backfill_completed_timestamp_is_rejected(
        self, mock_gateway_class: MagicMock, tmp_path: Path, clean_env
    ) -> None:
        files = tmp_path / "files"
        files.mkdir()
        mock_gateway_class.from_config.return_value = MagicMock()
        args = [
            "backfill",
            "--base-dir",
            str(files),
            "--db",
            str(tmp_path / "state.db"),
            "--launch-timestamp",
            "2024-01-01T00:00:00Z",
        ]

        assert runner.invoke(app, args).exit_code == 0
        result = runner.invoke(app, args)

        assert result.exit_code != 0


class TestConsumeCommand:
    """Tests for the consume command."""

    @patch("docsync.cli.create_stream_runner")
    @patch("docsync.cli.ElasticsearchGateway")
    def test_consume_runs_until_done(
        self, mock_gateway_class: MagicMock, mock_create_runner: MagicMock, tmp_path: Path
    ) -> None:
        stream_runner = MagicMock()

        async def _run() -> None:
            return None

        stream_runner.run.side_effect = _run
        mock_create_runner.return_value = stream_runner

        result = runner.invoke(app, ["consume", "--base-dir", str(tmp_path), "--concurrency", "2"])

        assert result.exit_code == 0, result.stdout
        config = mock_create_runner.call_args.args[0]
        assert config.consumer_concurrency == 2
        assert config.target_base_dir == tmp_path
        stream_runner.run.assert_called_once()
        mock_gateway_class.from_config.return_value.close.assert_called_once()


class TestServeCommand:
    """Tests for the serve command."""

    @patch("docsync.cli.uvicorn.run")
    def test_serve_configures_app(self, mock_run: MagicMock) -> None:
        with patch("docsync.cli.web_module.configure") as mock_configure:
            result = runner.invoke(app, ["serve", "--port", "9000", "--consumers"])

        assert result.exit_code == 0, result.stdout
        assert mock_configure.call_args.kwargs == {"consume": True}
        assert mock_run.call_args.kwargs["port"] == 9000


class TestRunsAndStatusCommands:
    """Tests for run history commands."""

    def test_runs_without_database(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["runs", "--db", str(tmp_path / "missing.db")])

        assert result.exit_code == 0
        assert "No run history found" in result.stdout

    def test_runs_lists_history(self, tmp_path: Path) -> None:
        db_path = tmp_path / "state.db"
        store = JobRepository(db_path)
        run = store.create_run("key", {"launchTimestamp": "t"})
        run.status = JobStatus.COMPLETED
        store.update_run(run)
        store.close()

        result = runner.invoke(app, ["runs", "--db", str(db_path)])

        assert result.exit_code == 0
        assert "No runs recorded" not in result.stdout

    def test_status_found(self, tmp_path: Path) -> None:
        db_path = tmp_path / "state.db"
        store = JobRepository(db_path)
        run = store.create_run("key", {"launchTimestamp": "t"})
        store.close()

        result = runner.invoke(app, ["status", str(run.run_id), "--db", str(db_path)])

        assert result.exit_code == 0
        assert f"Run {run.run_id}: STARTING" in result.stdout

    def test_status_not_found(self, tmp_path: Path) -> None:
        db_path = tmp_path / "state.db"
        JobRepository(db_path).close()

        result = runner.invoke(app, ["status", "42", "--db", str(db_path)])

        assert result.exit_code == 1
        assert "not found" in result.stdout
