"""
Repository index and locking.

The index is a SQLite database (index.db) in the repository directory holding
chunk reference counts and snapshot metadata. Writers (commit, forget, GC)
serialize on an exclusive lock file; readers use WAL snapshot isolation and
never wait on a writer.

Locks:
- locks/writer.lock: exclusive for any index mutation besides chunk puts
- locks/gc.lock: shared by backup and restore runs, exclusive for GC
"""

import fcntl
import logging
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from chunkvault.models import Base
from .errors import RepositoryLocked, StorageUnavailable

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 30.0
LOCK_POLL_INTERVAL = 0.1


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """Enable WAL journaling and foreign keys on every new connection."""
    # Let SQLAlchemy's begin event issue BEGIN instead of the driver
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA journal_mode=WAL')
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.execute('PRAGMA synchronous=FULL')
    cursor.close()


def _create_engine(db_path: Path, begin_statement: str, timeout: float, echo: bool):
    engine = create_engine(
        f'sqlite:///{db_path}',
        echo=echo,
        connect_args={'check_same_thread': False, 'timeout': timeout}
    )
    event.listen(engine, 'connect', _set_sqlite_pragmas)

    @event.listens_for(engine, 'begin')
    def _begin(connection):
        connection.exec_driver_sql(begin_statement)

    return engine


class _FileLock:
    """
    Inter-process lock on a file using flock, with a bounded wait.

    Also guards against re-entrant use within a single process: nested
    acquisitions by the same thread only bump a depth counter.
    """

    def __init__(self, path: Path, timeout: float):
        self.path = path
        self.timeout = timeout
        self._local = threading.local()
        self._thread_lock = threading.RLock()

    @contextmanager
    def hold(self, exclusive: bool) -> Iterator[None]:
        depth = getattr(self._local, 'depth', 0)
        if depth > 0:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return

        if exclusive:
            if not self._thread_lock.acquire(timeout=self.timeout):
                raise RepositoryLocked(f"Timed out waiting for {self.path.name}")

        handle = None
        try:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                # a+ so a concurrent holder's contents are not truncated
                handle = open(self.path, 'a+')
                self._acquire(handle, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                if exclusive:
                    handle.seek(0)
                    handle.truncate()
                    handle.write(f"pid {os.getpid()} since {datetime.now(timezone.utc).isoformat()}\n")
                    handle.flush()
            except OSError as e:
                raise StorageUnavailable(f"Failed to lock {self.path}: {e}") from e

            self._local.depth = 1
            try:
                yield
            finally:
                self._local.depth = 0
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            if handle is not None:
                handle.close()
            if exclusive:
                self._thread_lock.release()

    def _acquire(self, handle, operation: int):
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(handle.fileno(), operation | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise RepositoryLocked(
                        f"Repository lock {self.path.name} held by another process"
                    ) from None
                time.sleep(LOCK_POLL_INTERVAL)


class RepositoryIndex:
    """
    Handle on a repository's persistent index.

    An instance is passed explicitly to the content store and the snapshot
    manager; nothing in the core keeps repository state globally.
    """

    def __init__(self, repo_path: str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT, echo: bool = False):
        """
        Open (and create if needed) the index of a repository.

        Args:
            repo_path: Repository root directory
            lock_timeout: Seconds to wait for repository locks
            echo: Log SQL statements
        """
        self.path = Path(repo_path)
        self.db_path = self.path / 'index.db'
        self.lock_timeout = lock_timeout

        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Failed to create repository directory: {e}") from e

        # Readers get a deferred snapshot; writers take the database write lock
        # up front so read-then-update transactions never conflict midway
        self.engine = _create_engine(self.db_path, 'BEGIN', lock_timeout, echo)
        self._write_engine = _create_engine(self.db_path, 'BEGIN IMMEDIATE', lock_timeout, echo)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._write_session_factory = sessionmaker(bind=self._write_engine, expire_on_commit=False)

        self._writer_lock = _FileLock(self.path / 'locks' / 'writer.lock', lock_timeout)
        self._gc_lock = _FileLock(self.path / 'locks' / 'gc.lock', lock_timeout)

        self.create_schema()

    def create_schema(self):
        """Create index tables if they don't exist."""
        try:
            Base.metadata.create_all(self.engine)
        except OperationalError as e:
            raise StorageUnavailable(f"Failed to initialize index: {e}") from e

    @contextmanager
    def session(self):
        """Read-only session against the last committed index state."""
        session = self._session_factory()
        try:
            yield session
        except OperationalError as e:
            raise StorageUnavailable(f"Index read failed: {e}") from e
        finally:
            session.close()

    @contextmanager
    def transaction(self):
        """
        Session wrapped in a single transaction.

        Commits on success, rolls back on any exception. Database-level
        failures surface as StorageUnavailable.
        """
        session = self._write_session_factory()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            raise StorageUnavailable(f"Index write failed: {e}") from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def exclusive(self):
        """Hold the single-writer lock for commits, forgets and GC."""
        with self._writer_lock.hold(exclusive=True):
            yield

    @contextmanager
    def chunks_in_use(self):
        """Shared hold that keeps garbage collection out while chunks are in flight."""
        with self._gc_lock.hold(exclusive=False):
            yield

    @contextmanager
    def collecting(self):
        """Exclusive hold taken by garbage collection."""
        with self._gc_lock.hold(exclusive=True):
            with self.exclusive():
                yield

    def close(self):
        """Dispose of pooled connections."""
        self.engine.dispose()
        self._write_engine.dispose()
