"""Chunked backfill pipeline: scan, convert, bulk write, checkpoint."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Sequence

from docsync.batch.processor import FileDocumentProcessor
from docsync.batch.scanner import DirectoryScanner, ScanCursor, checkpoint, restore
from docsync.batch.store import JobRepository
from docsync.errors import FailureKind, ProcessingError
from docsync.index.gateway import ElasticsearchGateway
from docsync.models import IndexableDocument, JobRun, JobStatus, utc_now

LOGGER = logging.getLogger(__name__)


class BatchIndexingJob:
    """Runs one backfill pass over the scanner's tree.

    The cursor is checkpointed only after a chunk's bulk write returns
    successfully, so a restarted run never skips uncommitted files.
    """

    def __init__(
        self,
        scanner: DirectoryScanner,
        processor: FileDocumentProcessor,
        gateway: ElasticsearchGateway,
        store: JobRepository,
        *,
        chunk_size: int = 100,
        chunk_retry_limit: int = 0,
        workers: int = 1,
    ) -> None:
        self.scanner = scanner
        self.processor = processor
        self.gateway = gateway
        self.store = store
        self.chunk_size = chunk_size
        self.chunk_retry_limit = chunk_retry_limit
        self.workers = workers

    def run(self, run: JobRun, stop_event: threading.Event | None = None) -> JobRun:
        run.status = JobStatus.RUNNING
        run.started_at = utc_now()
        self.store.update_run(run)
        LOGGER.info("Backfill run %s starting with parameters %s", run.run_id, run.parameters)

        final_status = JobStatus.COMPLETED
        try:
            cursor = restore(self.scanner.open(), self.store, run.instance_key)
            if self.scanner.base_dir is None:
                run.exit_message = "Target base directory is not configured; nothing indexed"
            elif not cursor.paths:
                run.exit_message = "No files to index"
            while True:
                if stop_event is not None and stop_event.is_set():
                    final_status = JobStatus.STOPPED
                    run.exit_message = f"Stopped at index {cursor.next_index} of {len(cursor.paths)}"
                    break
                paths = self._read_chunk(cursor)
                if not paths:
                    break
                self._run_chunk(run, cursor, paths)
        except Exception as exc:
            final_status = JobStatus.FAILED
            run.exit_message = str(exc)
            LOGGER.exception("Backfill run %s failed", run.run_id)

        if final_status is JobStatus.COMPLETED:
            self.store.clear_checkpoint(run.instance_key)
        run.status = final_status
        run.ended_at = utc_now()
        self.store.update_run(run)
        self._log_summary(run)
        return run

    def _read_chunk(self, cursor: ScanCursor) -> List[Path]:
        paths: List[Path] = []
        while len(paths) < self.chunk_size:
            path = self.scanner.next(cursor)
            if path is None:
                break
            paths.append(path)
        return paths

    def _process(self, paths: Sequence[Path]) -> List[IndexableDocument | None]:
        if self.workers <= 1:
            return [self.processor.process(path) for path in paths]
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            return list(pool.map(self.processor.process, paths))

    def _run_chunk(self, run: JobRun, cursor: ScanCursor, paths: Sequence[Path]) -> None:
        run.counters.read += len(paths)
        results = self._process(paths)
        documents = [doc for doc in results if doc is not None]
        run.counters.skip += len(results) - len(documents)

        self._write(run, documents)
        run.counters.write += len(documents)
        run.counters.commit += 1
        checkpoint(cursor, self.store, run.instance_key)
        self.store.update_run(run)
        LOGGER.info(
            "Run %s committed chunk %d: %d written, %d skipped, cursor at %d/%d",
            run.run_id,
            run.counters.commit,
            len(documents),
            len(results) - len(documents),
            cursor.next_index,
            len(cursor.paths),
        )

    def _write(self, run: JobRun, documents: Sequence[IndexableDocument]) -> None:
        """Bulk write the chunk, redoing the whole chunk up to ``chunk_retry_limit`` times."""
        if not documents:
            return
        attempts = self.chunk_retry_limit + 1
        for attempt in range(1, attempts + 1):
            try:
                result = self.gateway.bulk_upsert(documents)
            except ProcessingError as exc:
                reason = str(exc)
            else:
                if result.ok:
                    return
                reason = f"{len(result.failures)} of {result.attempted} documents failed to index"
            run.counters.rollback += 1
            LOGGER.warning("Chunk write attempt %d/%d failed: %s", attempt, attempts, reason)
        raise ProcessingError(FailureKind.PERSISTENCE, f"Chunk write failed after {attempts} attempt(s): {reason}")

    @staticmethod
    def _log_summary(run: JobRun) -> None:
        duration = run.duration_seconds
        elapsed = f"{duration:.1f}s" if duration is not None else "N/A"
        message = "Backfill run %s finished with status %s in %s (read=%d write=%d skip=%d commit=%d rollback=%d)"
        args = (
            run.run_id,
            run.status.value,
            elapsed,
            run.counters.read,
            run.counters.write,
            run.counters.skip,
            run.counters.commit,
            run.counters.rollback,
        )
        if run.status is JobStatus.FAILED:
            LOGGER.error(message + ": %s", *args, run.exit_message)
        elif run.status is JobStatus.STOPPED:
            LOGGER.warning(message, *args)
        else:
            LOGGER.info(message, *args)
