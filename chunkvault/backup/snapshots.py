"""
Snapshot lifecycle: building, committing, listing and forgetting snapshots.

A snapshot only becomes visible when commit() finishes: the snapshot row, its
file entries and their chunk links are written in one index transaction under
the repository writer lock. A failure at any point before that leaves the
previously committed snapshots exactly as they were.
"""

import hashlib
import json
import logging
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func, select

from chunkvault.models import ChunkRecord, FileChunkRecord, FileRecord, SnapshotRecord
from .errors import IncompleteTree, NotFound
from .index import RepositoryIndex
from .storage import ChunkRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEntry:
    """A file in a snapshot and the chunks holding its content, in order."""

    path: str
    mode: int
    chunks: Tuple[ChunkRef, ...]
    mtime: Optional[float] = None

    @property
    def size(self) -> int:
        return sum(chunk.size for chunk in self.chunks)


@dataclass(frozen=True)
class Snapshot:
    """
    Point-in-time record of a file tree.

    Snapshots returned by SnapshotManager.list() carry counts only; files is
    populated by SnapshotManager.get().
    """

    id: str
    created_at: datetime
    parent_id: Optional[str] = None
    hostname: str = ''
    paths: Tuple[str, ...] = ()
    file_count: int = 0
    total_size: int = 0
    files: Tuple[FileEntry, ...] = ()

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def summary(self) -> dict:
        return {
            'id': self.id,
            'short_id': self.short_id,
            'time': self.created_at.isoformat(),
            'parent': self.parent_id,
            'hostname': self.hostname,
            'paths': list(self.paths),
            'file_count': self.file_count,
            'total_size': self.total_size
        }


class SnapshotBuilder:
    """Mutable accumulation context for a snapshot that is not committed yet."""

    def __init__(self, parent_id: Optional[str] = None, hostname: Optional[str] = None,
                 paths: Sequence[str] = ()):
        self.parent_id = parent_id
        self.hostname = hostname if hostname is not None else socket.gethostname()
        self.paths = tuple(paths)
        self._files: Dict[str, FileEntry] = {}
        self.committed_id: Optional[str] = None

    def add_file(self, path: str, chunks: Iterable[ChunkRef], mode: int,
                 mtime: Optional[float] = None) -> FileEntry:
        """
        Record a file.

        Args:
            path: Absolute path of the source file
            chunks: Chunk references in content order
            mode: st_mode of the source file
            mtime: Modification time of the source file

        Returns:
            The recorded FileEntry

        Raises:
            ValueError: If the builder was committed or the path was already added
        """
        if self.committed_id is not None:
            raise ValueError(f"Snapshot {self.committed_id[:8]} is already committed")
        if path in self._files:
            raise ValueError(f"Duplicate path in snapshot: {path}")

        entry = FileEntry(path=path, mode=mode, chunks=tuple(chunks), mtime=mtime)
        self._files[path] = entry
        return entry

    @property
    def files(self) -> List[FileEntry]:
        return [self._files[path] for path in sorted(self._files)]

    def __len__(self):
        return len(self._files)


def snapshot_digest(builder: SnapshotBuilder, created_at: datetime) -> str:
    """Content-derived snapshot identifier."""
    document = {
        'time': created_at.isoformat(),
        'parent': builder.parent_id,
        'hostname': builder.hostname,
        'paths': list(builder.paths),
        'files': [
            [entry.path, entry.mode, [chunk.digest for chunk in entry.chunks]]
            for entry in builder.files
        ]
    }
    encoded = json.dumps(document, sort_keys=True, separators=(',', ':')).encode()
    return hashlib.sha256(encoded).hexdigest()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_snapshot(record: SnapshotRecord, with_files: bool = False) -> Snapshot:
    files = ()
    if with_files:
        files = tuple(
            FileEntry(
                path=file_record.path,
                mode=file_record.mode,
                chunks=tuple(ChunkRef(link.digest, link.size) for link in file_record.chunks),
                mtime=file_record.mtime
            )
            for file_record in record.files
        )

    return Snapshot(
        id=record.id,
        created_at=_as_utc(record.created_at),
        parent_id=record.parent_id,
        hostname=record.hostname,
        paths=tuple(json.loads(record.paths or '[]')),
        file_count=record.file_count,
        total_size=record.total_size,
        files=files
    )


class SnapshotManager:
    """
    Builds, lists and tracks snapshots in a repository index.
    """

    def __init__(self, index: RepositoryIndex):
        self.index = index

    def begin(self, paths: Sequence[str] = (), hostname: Optional[str] = None) -> SnapshotBuilder:
        """Open a builder whose parent is the newest committed snapshot."""
        with self.index.session() as session:
            parent_id = session.scalars(
                select(SnapshotRecord.id)
                .order_by(SnapshotRecord.created_at.desc(), SnapshotRecord.id.desc())
                .limit(1)
            ).first()
        return SnapshotBuilder(parent_id=parent_id, hostname=hostname, paths=paths)

    def commit(self, builder: SnapshotBuilder, created_at: Optional[datetime] = None) -> str:
        """
        Atomically record a snapshot.

        Args:
            builder: Builder holding the snapshot's files
            created_at: Snapshot time (defaults to now, UTC)

        Returns:
            Snapshot identifier

        Raises:
            IncompleteTree: If any referenced chunk is absent from the content store
            ValueError: If the builder was already committed
        """
        if builder.committed_id is not None:
            raise ValueError(f"Snapshot {builder.committed_id[:8]} is already committed")

        created_at = _as_utc(created_at or datetime.now(timezone.utc))
        files = builder.files

        with self.index.exclusive():
            with self.index.transaction() as session:
                self._verify_chunks(session, files)

                snapshot_id = snapshot_digest(builder, created_at)
                record = SnapshotRecord(
                    id=snapshot_id,
                    created_at=created_at.replace(tzinfo=None),
                    parent_id=builder.parent_id,
                    hostname=builder.hostname,
                    paths=json.dumps(list(builder.paths)),
                    file_count=len(files),
                    total_size=sum(entry.size for entry in files)
                )
                session.add(record)
                session.flush()
                self._persist_files(session, record, files)

        builder.committed_id = snapshot_id
        logger.info(
            f"Committed snapshot {snapshot_id[:8]} "
            f"({len(files)} files, {sum(entry.size for entry in files)} bytes)"
        )
        return snapshot_id

    def _verify_chunks(self, session, files: List[FileEntry]):
        digests = {chunk.digest for entry in files for chunk in entry.chunks}
        if not digests:
            return

        present = {}
        for batch in _batched(sorted(digests), 500):
            for record in session.scalars(select(ChunkRecord).where(ChunkRecord.digest.in_(batch))):
                present[record.digest] = record

        missing = set()
        for digest in digests:
            record = present.get(digest)
            if record is None or record.refcount <= 0:
                missing.add(digest)
            elif not (self.index.path / record.location).is_file():
                missing.add(digest)

        if missing:
            raise IncompleteTree(missing)

    def _persist_files(self, session, record: SnapshotRecord, files: List[FileEntry]):
        for entry in files:
            file_record = FileRecord(
                snapshot_seq=record.seq,
                path=entry.path,
                mode=entry.mode,
                size=entry.size,
                mtime=entry.mtime
            )
            file_record.chunks = [
                FileChunkRecord(position=position, digest=chunk.digest, size=chunk.size)
                for position, chunk in enumerate(entry.chunks)
            ]
            session.add(file_record)

    def list(self) -> List[Snapshot]:
        """All committed snapshots, newest last."""
        with self.index.session() as session:
            records = session.scalars(
                select(SnapshotRecord)
                .order_by(SnapshotRecord.created_at, SnapshotRecord.id)
            ).all()
            return [_to_snapshot(record) for record in records]

    def get(self, snapshot_id: str) -> Snapshot:
        """
        Load a snapshot with its files.

        Args:
            snapshot_id: Full identifier or unique prefix

        Raises:
            NotFound: If no snapshot, or more than one, matches
        """
        if not snapshot_id:
            raise NotFound("Snapshot id must not be empty")

        with self.index.session() as session:
            records = session.scalars(
                select(SnapshotRecord)
                .where(SnapshotRecord.id.startswith(snapshot_id, autoescape=True))
                .limit(2)
            ).all()
            if not records:
                raise NotFound(f"Snapshot not found: {snapshot_id}")
            if len(records) > 1:
                raise NotFound(f"Snapshot id prefix is ambiguous: {snapshot_id}")
            return _to_snapshot(records[0], with_files=True)

    def latest(self) -> Snapshot:
        """Newest snapshot, with files."""
        snapshots = self.list()
        if not snapshots:
            raise NotFound("Repository has no snapshots")
        return self.get(snapshots[-1].id)

    def count(self) -> int:
        with self.index.session() as session:
            return session.scalar(select(func.count()).select_from(SnapshotRecord))

    def forget(self, snapshot_ids: Iterable[str]) -> Set[str]:
        """
        Delete snapshots and drop their chunk references.

        Args:
            snapshot_ids: Full identifiers

        Returns:
            Set of identifiers that were deleted

        Raises:
            NotFound: If an identifier does not exist (nothing is deleted)
        """
        snapshot_ids = set(snapshot_ids)
        if not snapshot_ids:
            return set()

        with self.index.exclusive():
            with self.index.transaction() as session:
                records = session.scalars(
                    select(SnapshotRecord).where(SnapshotRecord.id.in_(snapshot_ids))
                ).all()
                unknown = snapshot_ids - {record.id for record in records}
                if unknown:
                    raise NotFound(f"Snapshot(s) not found: {', '.join(sorted(s[:8] for s in unknown))}")

                released: Dict[str, int] = {}
                for record in records:
                    for file_record in record.files:
                        for link in file_record.chunks:
                            released[link.digest] = released.get(link.digest, 0) + 1
                    session.delete(record)

                for digest, count in released.items():
                    chunk = session.get(ChunkRecord, digest)
                    if chunk is not None:
                        chunk.refcount = max(chunk.refcount - count, 0)

        for snapshot_id in sorted(snapshot_ids):
            logger.info(f"Forgot snapshot {snapshot_id[:8]}")
        return snapshot_ids


def _batched(items: List[str], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]
