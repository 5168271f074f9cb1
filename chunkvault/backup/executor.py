"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Expand source paths and apply excludes
2. Stream each file's content into the content store (deduplicated)
3. Record the resulting tree as a new snapshot (atomic commit)
4. Enforce the retention policy (forget + garbage collection)

Per-file read errors are collected and reported; storage errors abort the run
without creating a snapshot.
"""

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Mapping, Optional, Sequence

from .errors import BackupCancelled, FileFailure, VaultError
from .retention import PruneResult, RetentionRule
from .snapshots import SnapshotManager
from .sources import LocalSource
from .storage import ChunkRef, ContentStore, iter_blocks

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


@dataclass(frozen=True)
class BackupResult:
    """Outcome of a backup run."""

    snapshot_id: str
    file_count: int
    total_size: int
    failures: List[FileFailure] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)


class BackupOrchestrator:
    """
    Runs a single backup pass: enumerate, ingest, commit.
    """

    def __init__(self, workers: int = DEFAULT_WORKERS,
                 cancel_event: Optional[threading.Event] = None,
                 hostname: Optional[str] = None):
        """
        Initialize backup orchestrator.

        Args:
            workers: Number of files ingested in parallel
            cancel_event: Set to abort the run between files
            hostname: Hostname recorded in the snapshot (defaults to this host)
        """
        self.workers = max(int(workers), 1)
        self.cancel_event = cancel_event or threading.Event()
        self.hostname = hostname

        self._abort = threading.Event()
        self._lock = threading.Lock()
        self._taken: List[ChunkRef] = []

    def run(self, paths: Sequence[str], excludes: Sequence[str],
            store: ContentStore, mgr: SnapshotManager) -> BackupResult:
        """
        Back up the given paths into a new snapshot.

        Args:
            paths: Path patterns (files, directories or globs)
            excludes: Exclude glob patterns
            store: Content store receiving file chunks
            mgr: Snapshot manager recording the result

        Returns:
            BackupResult with the snapshot id and skipped files

        Raises:
            StorageUnavailable: If the content store or index fails (no snapshot is created)
            BackupCancelled: If the cancel event was set
        """
        self._taken = []
        self._abort.clear()
        source = LocalSource(list(paths), list(excludes))

        with store.index.chunks_in_use():
            files = source.collect()
            failures = list(source.failures)
            logger.info(f"Backing up {len(files)} file(s) from {len(paths)} source path(s)")

            builder = mgr.begin(paths=paths, hostname=self.hostname)

            try:
                self._ingest_all(files, store, builder, failures)
                self._check_cancelled()
                snapshot_id = mgr.commit(builder)
            except BaseException:
                self._release_taken(store)
                raise

        entries = builder.files
        for failure in failures:
            logger.warning(f"Skipped {failure}")

        return BackupResult(
            snapshot_id=snapshot_id,
            file_count=len(entries),
            total_size=sum(entry.size for entry in entries),
            failures=failures
        )

    def _ingest_all(self, files: List[str], store: ContentStore, builder, failures: List[FileFailure]):
        if not files:
            return

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='chunkvault-ingest') as pool:
            pending = {pool.submit(self._ingest_file, path, store): path for path in files}
            try:
                while pending:
                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        path = pending.pop(future)
                        try:
                            chunks, st = future.result()
                        except OSError as e:
                            logger.warning(f"Cannot read {path}: {e}")
                            failures.append(FileFailure(path, e.strerror or str(e)))
                            continue
                        builder.add_file(path, chunks, st.st_mode, st.st_mtime)
                    self._check_cancelled()
            except BaseException:
                self._abort.set()
                for future in pending:
                    future.cancel()
                raise

    def _open(self, path: str):
        return open(path, 'rb')

    def _ingest_file(self, path: str, store: ContentStore):
        """
        Stream one file into the content store.

        Returns:
            Tuple of (chunk refs, os.stat_result)

        Raises:
            OSError: If the file cannot be read (its chunks are released first)
        """
        self._check_cancelled()

        chunks = []
        try:
            with self._open(path) as f:
                st = os.fstat(f.fileno())
                for block in iter_blocks(f, store.chunk_size):
                    ref = store.put(block)
                    chunks.append(ref)
                    with self._lock:
                        self._taken.append(ref)
        except OSError:
            self._release(store, chunks)
            raise

        return chunks, st

    def _release(self, store: ContentStore, chunks: List[ChunkRef]):
        for ref in chunks:
            try:
                store.release(ref)
            except VaultError as e:
                logger.error(f"Failed to release chunk {ref.short}: {e}")
            with self._lock:
                self._taken.remove(ref)

    def _release_taken(self, store: ContentStore):
        with self._lock:
            taken, self._taken = self._taken, []
        if taken:
            logger.info(f"Releasing {len(taken)} chunk reference(s) from aborted run")
        for ref in taken:
            try:
                store.release(ref)
            except VaultError as e:
                logger.error(f"Failed to release chunk {ref.short}: {e}")

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise BackupCancelled("Backup cancelled")
        if self._abort.is_set():
            raise BackupCancelled("Backup aborted")


@dataclass
class BackupReport:
    """Result of a full backup job (backup + retention)."""

    status: str = 'running'  # running, success, partial, failed
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    snapshot_id: Optional[str] = None
    file_count: int = 0
    total_size: int = 0
    failures: List[FileFailure] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'snapshot_id': self.snapshot_id,
            'file_count': self.file_count,
            'total_size': self.total_size,
            'failures': [{'path': f.path, 'reason': f.reason} for f in self.failures],
            'pruned': self.pruned,
            'error_message': self.error_message,
            'logs': self.logs
        }


class BackupExecutor:
    """
    Runs a configured backup job against a repository and reports on it.
    """

    def __init__(self, repository, paths: Sequence[str], excludes: Sequence[str],
                 retention: Optional[RetentionRule] = None, workers: int = DEFAULT_WORKERS,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initialize backup executor.

        Args:
            repository: Open Repository
            paths: Source path patterns
            excludes: Exclude glob patterns
            retention: Rule enforced after a successful backup (None to skip pruning)
            workers: Parallel file ingestion workers
            cancel_event: Set to cancel the run
        """
        self.repository = repository
        self.paths = list(paths)
        self.excludes = list(excludes)
        self.retention = retention
        self.workers = workers
        self.cancel_event = cancel_event
        self.report = BackupReport()

    def execute(self) -> BackupReport:
        """
        Execute the backup job.

        Returns:
            BackupReport with execution results. Failures are recorded in the
            report, not raised.
        """
        self.report.started_at = datetime.now(timezone.utc)
        self._log(f"Starting backup of {len(self.paths)} path(s)")

        try:
            result = self.repository.backup(
                self.paths, self.excludes, workers=self.workers, cancel_event=self.cancel_event
            )
            self.report.snapshot_id = result.snapshot_id
            self.report.file_count = result.file_count
            self.report.total_size = result.total_size
            self.report.failures = result.failures
            self._log(
                f"Snapshot {result.snapshot_id[:8]} saved "
                f"({result.file_count} files, {result.total_size / 1024 / 1024:.2f} MB)"
            )
            for failure in result.failures:
                self._log(f"Skipped {failure}")

            if self.retention is not None and not self.retention.is_empty:
                self._log("Pruning old snapshots")
                prune_result = self._prune()
                self.report.pruned = sorted(prune_result.pruned)
                self._log(f"Pruned {len(prune_result.pruned)} snapshot(s)")
            else:
                self._log("Retention not configured, skipping prune")

            self.report.status = 'partial' if result.is_partial else 'success'
            self._log("Backup completed.")

        except Exception as e:
            self.report.status = 'failed'
            self.report.error_message = str(e)
            self._log(f"Backup failed: {e}")
            logger.exception("Backup job failed")

        finally:
            self.report.completed_at = datetime.now(timezone.utc)

        return self.report

    def _prune(self) -> PruneResult:
        return self.repository.prune(self.retention)

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.report.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def execute_backup(config: Mapping, cancel_event: Optional[threading.Event] = None) -> BackupReport:
    """
    Open the configured repository and run the configured backup job.

    Args:
        config: Application configuration (BACKUP_PATHS, BACKUP_EXCLUDES, RETENTION_*, ...)
        cancel_event: Set to cancel the run

    Returns:
        BackupReport with execution results
    """
    from .repository import open_repository

    report = BackupReport()
    try:
        retention = RetentionRule.from_config(config)
        repository = open_repository(config, create=True)
    except Exception as e:
        now = datetime.now(timezone.utc)
        report.status = 'failed'
        report.started_at = report.completed_at = now
        report.error_message = str(e)
        logger.error(f"Backup could not start: {e}")
        return report

    with repository:
        executor = BackupExecutor(
            repository,
            paths=config.get('BACKUP_PATHS') or [],
            excludes=config.get('BACKUP_EXCLUDES') or [],
            retention=retention,
            workers=config.get('BACKUP_WORKERS', DEFAULT_WORKERS),
            cancel_event=cancel_event
        )
        return executor.execute()
