"""Starting, stopping and inspecting backfill runs."""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Mapping

from docsync.batch.job import BatchIndexingJob
from docsync.batch.processor import FileDocumentProcessor
from docsync.batch.scanner import DirectoryScanner
from docsync.batch.store import JobRepository
from docsync.config import AppConfig
from docsync.errors import InvalidJobParametersError
from docsync.index.gateway import ElasticsearchGateway
from docsync.ingestion.extractor import ContentExtractor
from docsync.models import JobRun, format_instant, utc_now

LOGGER = logging.getLogger(__name__)

JOB_NAME = "historicalFileIndexerJob"


def instance_key(parameters: Mapping[str, str]) -> str:
    """Identity of a parameter set; runs sharing it are the same job instance."""
    encoded = json.dumps({"job": JOB_NAME, **parameters}, sort_keys=True)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _validate(parameters: Mapping[str, object]) -> Dict[str, str]:
    validated: Dict[str, str] = {}
    for key, value in parameters.items():
        if not isinstance(key, str) or not key.strip():
            raise InvalidJobParametersError("Parameter names must be non-empty strings")
        if value is None or (isinstance(value, str) and not value.strip()):
            raise InvalidJobParametersError(f"Parameter {key!r} must have a value")
        validated[key] = str(value)
    return validated


class JobOrchestrator:
    """Launches backfill runs in the background and answers status queries."""

    def __init__(
        self,
        job_factory: Callable[[], BatchIndexingJob],
        store: JobRepository,
        *,
        max_concurrent_runs: int = 2,
        heartbeat_seconds: float = 30.0,
    ) -> None:
        self.job_factory = job_factory
        self.store = store
        self.heartbeat_seconds = heartbeat_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_runs, thread_name_prefix="backfill")
        self._lock = threading.Lock()
        self._stop_events: Dict[int, threading.Event] = {}
        self._futures: Dict[int, Future] = {}
        abandoned = store.fail_abandoned_runs(stale_after=heartbeat_seconds * 4)
        if abandoned:
            LOGGER.warning("Marked %d abandoned runs as failed", abandoned)
        self._closed = threading.Event()
        self._heartbeat = threading.Thread(target=self._beat, name="backfill-heartbeat", daemon=True)
        self._heartbeat.start()

    def start_run(self, parameters: Mapping[str, object] | None = None, *, wait: bool = False) -> JobRun:
        """Launch a run. Without parameters a launch timestamp makes the run unique.

        Raises ``JobAlreadyRunningError`` or ``JobAlreadyCompleteError`` for a
        parameter set that is active or already completed.
        """
        params = _validate(parameters or {"launchTimestamp": format_instant(utc_now())})
        key = instance_key(params)
        with self._lock:
            run = self.store.create_run(key, params)
            stop_event = threading.Event()
            self._stop_events[run.run_id] = stop_event
            future = self._executor.submit(self._execute, run, stop_event)
            self._futures[run.run_id] = future
        LOGGER.info("Launched backfill run %s", run.run_id)
        if wait:
            future.result()
        return self.store.get_run(run.run_id) or run

    def _beat(self) -> None:
        while not self._closed.wait(self.heartbeat_seconds):
            with self._lock:
                run_ids = list(self._stop_events)
            try:
                self.store.heartbeat(run_ids)
            except sqlite3.Error:
                LOGGER.warning("Heartbeat for runs %s failed", run_ids, exc_info=True)

    def _execute(self, run: JobRun, stop_event: threading.Event) -> JobRun:
        try:
            return self.job_factory().run(run, stop_event)
        finally:
            with self._lock:
                self._stop_events.pop(run.run_id, None)
                self._futures.pop(run.run_id, None)

    def stop_run(self, run_id: int) -> JobRun | None:
        """Request a stop; the in-flight chunk finishes before the run reports STOPPED."""
        with self._lock:
            event = self._stop_events.get(run_id)
        if event is not None:
            event.set()
            LOGGER.info("Stop requested for run %s", run_id)
        return self.store.get_run(run_id)

    def get_run(self, run_id: int) -> JobRun | None:
        return self.store.get_run(run_id)

    def list_recent_runs(self, limit: int = 10) -> List[JobRun]:
        return self.store.list_runs(limit)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            events = list(self._stop_events.values())
        for event in events:
            event.set()
        self._executor.shutdown(wait=wait)
        self._closed.set()
        self._heartbeat.join()


def create_orchestrator(config: AppConfig, gateway: ElasticsearchGateway, store: JobRepository) -> JobOrchestrator:

    def _job_factory() -> BatchIndexingJob:
        return BatchIndexingJob(
            DirectoryScanner(config.target_base_dir, config.extension_set),
            FileDocumentProcessor(ContentExtractor()),
            gateway,
            store,
            chunk_size=config.chunk_size,
            chunk_retry_limit=config.chunk_retry_limit,
            workers=config.batch_workers,
        )

    return JobOrchestrator(_job_factory, store)
