"""
Content-addressed chunk storage.

Chunks are identified by the SHA-256 digest of their plaintext and stored once
under the repository's data directory:
{repository}/data/{digest[:2]}/{digest}

Each blob holds the compressed (and, when a CryptoManager is configured,
encrypted) chunk bytes. Reference counts live in the repository index and are
updated in the same transaction that records a write.
"""

import hashlib
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional

from cryptography.fernet import InvalidToken
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError

from chunkvault.models import ChunkRecord, FileChunkRecord
from chunkvault.utils.crypto import CryptoManager
from .compression import CompressionError, compress_chunk, decompress_chunk, validate_format
from .errors import CorruptChunk, NotFound, StorageUnavailable
from .index import RepositoryIndex

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB


@dataclass(frozen=True)
class ChunkRef:
    """Reference to a stored chunk."""

    digest: str
    size: int

    @property
    def short(self) -> str:
        return self.digest[:12]


@dataclass(frozen=True)
class GCResult:
    """Summary of a garbage collection pass."""

    chunks_deleted: int
    bytes_reclaimed: int


def chunk_digest(data: bytes) -> str:
    """Content address of a chunk."""
    return hashlib.sha256(data).hexdigest()


def iter_blocks(stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """
    Split a binary stream into fixed-size blocks.

    The final block may be shorter; an empty stream yields nothing.
    """
    while True:
        block = stream.read(chunk_size)
        if not block:
            return
        yield block


class ContentStore:
    """
    Deduplicating chunk store backed by the local filesystem.
    """

    def __init__(
        self,
        index: RepositoryIndex,
        crypto: Optional[CryptoManager] = None,
        compression_format: str = 'zlib',
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ):
        """
        Initialize content store.

        Args:
            index: Repository index holding chunk reference counts
            crypto: Initialized CryptoManager, or None for plaintext blobs
            compression_format: Codec for newly written chunks
            chunk_size: Block size used by put_stream()
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")

        self.index = index
        self.crypto = crypto
        self.compression_format = validate_format(compression_format)
        self.chunk_size = chunk_size
        self.data_dir = index.path / 'data'

        # Serializes read-modify-write of reference counts within this process
        self._lock = threading.Lock()

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Failed to create chunk directory: {e}") from e

    def _relative_location(self, digest: str) -> str:
        return f"data/{digest[:2]}/{digest}"

    def _blob_path(self, location: str) -> Path:
        return self.index.path / location

    def put(self, data: bytes) -> ChunkRef:
        """
        Store a chunk, or take another reference to an identical stored chunk.

        Args:
            data: Chunk bytes

        Returns:
            ChunkRef for the content

        Raises:
            StorageUnavailable: If the blob or the index cannot be written
        """
        digest = chunk_digest(data)
        ref = ChunkRef(digest=digest, size=len(data))

        if self._increment(digest):
            return ref

        location, stored_size = self._write_blob(digest, data)

        try:
            with self._lock, self.index.transaction() as session:
                record = session.get(ChunkRecord, digest)
                if record is None:
                    session.add(ChunkRecord(
                        digest=digest,
                        location=location,
                        size=len(data),
                        stored_size=stored_size,
                        compression=self.compression_format,
                        refcount=1
                    ))
                else:
                    # Blob was missing and has been rewritten
                    record.location = location
                    record.stored_size = stored_size
                    record.compression = self.compression_format
                    record.refcount += 1
        except IntegrityError:
            # Another process inserted the same chunk first
            if not self._increment(digest):
                raise StorageUnavailable(f"Failed to record chunk {ref.short}")

        logger.debug(f"Stored new chunk {ref.short} ({len(data)} bytes)")
        return ref

    def put_stream(self, stream: BinaryIO) -> List[ChunkRef]:
        """
        Split a stream into blocks and put each one, in order.

        Args:
            stream: Binary file object

        Returns:
            List of ChunkRefs, in stream order
        """
        return [self.put(block) for block in iter_blocks(stream, self.chunk_size)]

    def _increment(self, digest: str) -> bool:
        """
        Take a reference to an existing chunk.

        Returns:
            False if the chunk is unknown or its blob is missing
        """
        with self._lock, self.index.transaction() as session:
            record = session.get(ChunkRecord, digest)
            if record is None or not self._blob_path(record.location).is_file():
                return False
            record.refcount += 1
            return True

    def _write_blob(self, digest: str, data: bytes):
        """
        Encode and atomically write a chunk blob.

        Returns:
            Tuple of (relative location, stored size)
        """
        try:
            payload = compress_chunk(data, self.compression_format)
        except CompressionError as e:
            raise StorageUnavailable(str(e)) from e

        if self.crypto is not None:
            payload = self.crypto.encrypt(payload)

        location = self._relative_location(digest)
        dest_path = self._blob_path(location)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=dest_path.parent, prefix='.tmp-')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, dest_path)
            except BaseException:
                if os.path.exists(temp_path):
                    os.remove(temp_path)
                raise
        except OSError as e:
            raise StorageUnavailable(f"Failed to write chunk {digest[:12]}: {e}") from e

        return location, len(payload)

    def get(self, ref: ChunkRef) -> bytes:
        """
        Read a chunk.

        Args:
            ref: Chunk reference

        Returns:
            Chunk bytes

        Raises:
            NotFound: If the chunk is unknown, unreferenced or its blob is missing
            CorruptChunk: If the stored bytes do not decode to the digest
            StorageUnavailable: If the blob cannot be read
        """
        with self.index.session() as session:
            record = session.get(ChunkRecord, ref.digest)
            if record is None or record.refcount <= 0:
                raise NotFound(f"Chunk not found: {ref.short}")
            location = record.location
            compression_format = record.compression

        try:
            payload = self._blob_path(location).read_bytes()
        except FileNotFoundError:
            raise NotFound(f"Chunk blob missing: {ref.short}")
        except OSError as e:
            raise StorageUnavailable(f"Failed to read chunk {ref.short}: {e}") from e

        try:
            if self.crypto is not None:
                payload = self.crypto.decrypt(payload)
            data = decompress_chunk(payload, compression_format)
        except (InvalidToken, CompressionError) as e:
            raise CorruptChunk(f"Chunk {ref.short} cannot be decoded: {e}")

        if chunk_digest(data) != ref.digest:
            raise CorruptChunk(f"Chunk {ref.short} does not match its digest")

        return data

    def release(self, ref: ChunkRef) -> int:
        """
        Drop one reference to a chunk. The blob stays until garbage collection.

        Args:
            ref: Chunk reference

        Returns:
            Remaining reference count

        Raises:
            NotFound: If the chunk is unknown
        """
        with self._lock, self.index.transaction() as session:
            record = session.get(ChunkRecord, ref.digest)
            if record is None:
                raise NotFound(f"Chunk not found: {ref.short}")
            record.refcount = max(record.refcount - 1, 0)
            return record.refcount

    def refcount(self, digest: str) -> int:
        """Current reference count of a chunk (0 if unknown)."""
        with self.index.session() as session:
            record = session.get(ChunkRecord, digest)
            return record.refcount if record else 0

    def contains(self, digest: str) -> bool:
        """Check whether a referenced chunk with an existing blob is stored."""
        with self.index.session() as session:
            record = session.get(ChunkRecord, digest)
            if record is None or record.refcount <= 0:
                return False
            return self._blob_path(record.location).is_file()

    def garbage_collect(self) -> GCResult:
        """
        Delete unreferenced chunks and orphaned blob files.

        Waits for in-flight backup and restore runs to finish.

        Returns:
            GCResult with counts of deleted chunks and reclaimed bytes
        """
        deleted = 0
        reclaimed = 0

        with self.index.collecting():
            with self.index.transaction() as session:
                linked = exists().where(FileChunkRecord.digest == ChunkRecord.digest)
                unreferenced = session.scalars(
                    select(ChunkRecord).where(ChunkRecord.refcount <= 0, ~linked)
                ).all()
                known = set(session.scalars(select(ChunkRecord.location)).all())

                for record in unreferenced:
                    reclaimed += self._remove_blob(record.location)
                    known.discard(record.location)
                    session.delete(record)
                    deleted += 1

            # Blobs written by runs that died before reaching the index
            for blob_path in self._iter_blob_files():
                location = blob_path.relative_to(self.index.path).as_posix()
                if location not in known:
                    reclaimed += self._remove_blob(location)
                    deleted += 1

        logger.info(f"Garbage collection removed {deleted} chunk(s), reclaimed {reclaimed} bytes")
        return GCResult(chunks_deleted=deleted, bytes_reclaimed=reclaimed)

    def _iter_blob_files(self) -> Iterator[Path]:
        for prefix_dir in sorted(self.data_dir.iterdir()):
            if not prefix_dir.is_dir():
                continue
            for blob_path in sorted(prefix_dir.iterdir()):
                if blob_path.is_file():
                    yield blob_path

    def _remove_blob(self, location: str) -> int:
        blob_path = self._blob_path(location)
        try:
            size = blob_path.stat().st_size
            blob_path.unlink()
            return size
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise StorageUnavailable(f"Failed to delete chunk blob {location}: {e}") from e
