"""
Restore engine - materializes a snapshot's file tree into a target directory.

Files are rebuilt chunk by chunk into a temporary file next to their final
location and renamed into place, so a file is either fully restored or absent.
Files that cannot be rebuilt are skipped and reported once all others are done.
"""

import logging
import os
import stat
import tempfile
import threading
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional, Sequence

from .errors import BackupCancelled, CorruptChunk, FileFailure, NotFound, PartialRestore
from .snapshots import FileEntry, Snapshot, SnapshotManager
from .storage import ContentStore

logger = logging.getLogger(__name__)


class RestoreEngine:
    """
    Writes snapshot contents back to the filesystem.
    """

    def __init__(self, store: ContentStore, snapshots: SnapshotManager,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initialize restore engine.

        Args:
            store: Content store holding the chunks
            snapshots: Snapshot manager to resolve snapshot ids
            cancel_event: Set to abort the restore between files
        """
        self.store = store
        self.snapshots = snapshots
        self.cancel_event = cancel_event or threading.Event()

    def resolve(self, snapshot_id: str) -> Snapshot:
        """Load a snapshot by id, unique prefix or 'latest'."""
        if snapshot_id == 'latest':
            return self.snapshots.latest()
        return self.snapshots.get(snapshot_id)

    def restore(self, snapshot_id: str, target: str, include: Optional[Sequence[str]] = None) -> int:
        """
        Restore a snapshot into a target directory.

        The caller is responsible for confirming that existing files in the
        target may be overwritten.

        Args:
            snapshot_id: Snapshot id, unique prefix or 'latest'
            target: Directory to restore into (created if missing)
            include: Optional glob patterns; only matching files are restored

        Returns:
            Number of files restored

        Raises:
            NotFound: If the snapshot does not exist
            PartialRestore: If some files were skipped (after all others are restored)
            StorageUnavailable: If the repository cannot be read
            BackupCancelled: If the cancel event was set
        """
        snapshot = self.resolve(snapshot_id)
        target_root = Path(target).expanduser().resolve()
        target_root.mkdir(parents=True, exist_ok=True)

        entries = [entry for entry in snapshot.files if self._included(entry.path, include)]
        logger.info(f"Restoring {len(entries)} file(s) from snapshot {snapshot.short_id} to {target_root}")

        restored = 0
        failures: List[FileFailure] = []

        with self.store.index.chunks_in_use():
            for entry in entries:
                if self.cancel_event.is_set():
                    raise BackupCancelled(f"Restore cancelled after {restored} file(s)")

                try:
                    self._restore_file(entry, target_root)
                    restored += 1
                except (NotFound, CorruptChunk, ValueError) as e:
                    logger.warning(f"Cannot restore {entry.path}: {e}")
                    failures.append(FileFailure(entry.path, str(e)))
                except OSError as e:
                    logger.warning(f"Cannot write {entry.path}: {e}")
                    failures.append(FileFailure(entry.path, e.strerror or str(e)))

        if failures:
            raise PartialRestore(restored, failures)

        logger.info(f"Restore complete: {restored} file(s) to {target_root}")
        return restored

    @staticmethod
    def _included(path: str, include: Optional[Sequence[str]]) -> bool:
        if not include:
            return True
        name = os.path.basename(path)
        return any(fnmatch(path, pattern) or fnmatch(name, pattern) for pattern in include)

    def destination(self, entry: FileEntry, target_root: Path) -> Path:
        """
        Path a file entry is restored to.

        Raises:
            ValueError: If the entry would land outside the target directory
        """
        relative = entry.path.lstrip('/')
        dest_path = (target_root / relative).resolve()
        if dest_path == target_root or target_root not in dest_path.parents:
            raise ValueError(f"Refusing to restore outside target: {entry.path}")
        return dest_path

    def _restore_file(self, entry: FileEntry, target_root: Path):
        dest_path = self.destination(entry, target_root)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(dir=dest_path.parent, prefix=f".{dest_path.name}.")
        try:
            with os.fdopen(fd, 'wb') as f:
                for chunk in entry.chunks:
                    f.write(self.store.get(chunk))

            os.chmod(temp_path, stat.S_IMODE(entry.mode))
            if entry.mtime is not None:
                os.utime(temp_path, (entry.mtime, entry.mtime))
            os.replace(temp_path, dest_path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise
