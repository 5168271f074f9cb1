"""
Repository facade.

A repository is a directory holding:
- config.json: repository id, chunking/compression settings, KDF parameters
- index.db: the repository index (chunks, snapshots, files)
- data/: chunk blobs keyed by digest prefix
- keyfile: derived encryption key (mode 0600)
- locks/, logs/

Repository exposes the operations a surrounding tool calls: backup, list,
prune, restore, plus gc and check.
"""

import json
import logging
import os
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from cryptography.fernet import InvalidToken
from sqlalchemy import func, select

from chunkvault.models import ChunkRecord, FileChunkRecord
from chunkvault.utils.crypto import CryptoManager
from chunkvault.utils.key_file import KeyFileError, KeyFileManager
from .compression import validate_format
from .errors import RepositoryError, StorageUnavailable
from .executor import DEFAULT_WORKERS, BackupOrchestrator, BackupResult
from .index import DEFAULT_LOCK_TIMEOUT, RepositoryIndex
from .restore import RestoreEngine
from .retention import PruneResult, RetentionManager, RetentionRule
from .snapshots import Snapshot, SnapshotManager
from .storage import DEFAULT_CHUNK_SIZE, ContentStore, GCResult

logger = logging.getLogger(__name__)

REPOSITORY_VERSION = 1
CONFIG_FILENAME = 'config.json'
KEY_FILENAME = 'keyfile'
KEY_CHECK_PLAINTEXT = b'chunkvault-key-check'


@dataclass(frozen=True)
class KdfParams:
    """Argon2id parameters recorded in the repository config."""

    salt: bytes
    time_cost: int = 3
    memory_cost: int = 65536
    parallelism: int = 4

    def to_dict(self) -> dict:
        return {
            'algorithm': 'argon2id',
            'salt': self.salt.hex(),
            'time_cost': self.time_cost,
            'memory_cost': self.memory_cost,
            'parallelism': self.parallelism
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> 'KdfParams':
        return cls(
            salt=bytes.fromhex(data['salt']),
            time_cost=int(data['time_cost']),
            memory_cost=int(data['memory_cost']),
            parallelism=int(data['parallelism'])
        )


@dataclass
class CheckResult:
    """Findings of a repository consistency check."""

    refcount_mismatches: Dict[str, tuple] = field(default_factory=dict)  # digest -> (stored, expected)
    missing_blobs: List[str] = field(default_factory=list)
    orphan_blobs: List[str] = field(default_factory=list)
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return not (self.refcount_mismatches or self.missing_blobs)


def _read_config(repo_path: Path) -> dict:
    config_path = repo_path / CONFIG_FILENAME
    try:
        with open(config_path) as f:
            data = json.load(f)
    except FileNotFoundError:
        raise RepositoryError(f"No repository at {repo_path} (missing {CONFIG_FILENAME})")
    except (OSError, ValueError) as e:
        raise RepositoryError(f"Unreadable repository config {config_path}: {e}")

    if data.get('version') != REPOSITORY_VERSION:
        raise RepositoryError(f"Unsupported repository version: {data.get('version')}")
    return data


def _write_config(repo_path: Path, data: dict):
    config_path = repo_path / CONFIG_FILENAME
    temp_path = config_path.with_suffix('.tmp')
    try:
        with open(temp_path, 'w') as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, config_path)
    except OSError as e:
        raise StorageUnavailable(f"Failed to write repository config: {e}") from e


def init_repository(
    path: str,
    password: Optional[str] = None,
    kdf: Optional[KdfParams] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    compression_format: str = 'zlib'
) -> dict:
    """
    Create a new repository.

    Args:
        path: Repository directory (created if missing)
        password: Passphrase; None creates an unencrypted repository
        kdf: Key derivation parameters (random salt if omitted)
        chunk_size: Fixed chunk size in bytes
        compression_format: Chunk compression codec

    Returns:
        The written repository config

    Raises:
        RepositoryError: If a repository already exists at path
    """
    repo_path = Path(path).expanduser()
    if (repo_path / CONFIG_FILENAME).exists():
        raise RepositoryError(f"Repository already exists at {repo_path}")
    if chunk_size <= 0:
        raise RepositoryError(f"Invalid chunk size: {chunk_size}")
    try:
        validate_format(compression_format)
    except ValueError as e:
        raise RepositoryError(str(e))

    logger.info(f"Initializing repository at {repo_path}")
    try:
        for directory in ('data', 'locks', 'logs'):
            (repo_path / directory).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageUnavailable(f"Failed to create repository: {e}") from e

    data = {
        'version': REPOSITORY_VERSION,
        'id': uuid.uuid4().hex,
        'created_at': datetime.now(timezone.utc).isoformat(),
        'chunk_size': chunk_size,
        'compression': compression_format,
        'encrypted': password is not None,
    }

    if password is not None:
        kdf = kdf or KdfParams(salt=secrets.token_bytes(16))
        key_manager = KeyFileManager(repo_path / KEY_FILENAME)
        try:
            key_material = key_manager.load_or_create(
                password, kdf.salt, kdf.time_cost, kdf.memory_cost, kdf.parallelism
            )
        except KeyFileError as e:
            raise RepositoryError(str(e))
        crypto = CryptoManager()
        crypto.initialize_with_key(key_material)
        data['kdf'] = kdf.to_dict()
        data['key_check'] = crypto.encrypt(KEY_CHECK_PLAINTEXT).decode()

    # Index is created before the config so a config always has an index
    RepositoryIndex(str(repo_path)).close()
    _write_config(repo_path, data)
    return data


class Repository:
    """
    An open repository and the components operating on it.
    """

    def __init__(self, path: str, password: Optional[str] = None,
                 lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        """
        Open an existing repository.

        Args:
            path: Repository directory
            password: Passphrase, only needed when no key file exists yet
            lock_timeout: Seconds to wait for repository locks

        Raises:
            RepositoryError: If the repository is missing or the key is wrong
        """
        self.path = Path(path).expanduser()
        self.config = _read_config(self.path)
        self.crypto = self._load_crypto(password) if self.config.get('encrypted') else None

        self.index = RepositoryIndex(str(self.path), lock_timeout=lock_timeout)
        self.store = ContentStore(
            self.index,
            crypto=self.crypto,
            compression_format=self.config.get('compression', 'zlib'),
            chunk_size=int(self.config.get('chunk_size', DEFAULT_CHUNK_SIZE))
        )
        self.snapshots = SnapshotManager(self.index)
        self.retention = RetentionManager(self.snapshots, self.store)

    def _load_crypto(self, password: Optional[str]) -> CryptoManager:
        """Unlock the repository key; a derived key is only stored once it is verified."""
        key_manager = KeyFileManager(self.path / KEY_FILENAME)
        from_key_file = key_manager.exists
        crypto = CryptoManager()

        try:
            if from_key_file:
                key_material = key_manager.load()
                crypto.initialize_with_key(key_material)
            elif not password:
                raise RepositoryError(f"No key file at {key_manager.path} and no passphrase configured")
            else:
                kdf = KdfParams.from_dict(self.config['kdf'])
                key_material = crypto.initialize(
                    password, kdf.salt, kdf.time_cost, kdf.memory_cost, kdf.parallelism
                )
        except (KeyFileError, ValueError) as e:
            raise RepositoryError(str(e))

        try:
            if crypto.decrypt(self.config['key_check'].encode()) != KEY_CHECK_PLAINTEXT:
                raise InvalidToken()
        except InvalidToken:
            raise RepositoryError("Wrong passphrase or key file for this repository")

        if not from_key_file:
            logger.info("Creating key file...")
            try:
                key_manager.store(key_material)
            except KeyFileError as e:
                raise RepositoryError(str(e))
        return crypto

    @property
    def id(self) -> str:
        return self.config['id']

    def backup(self, paths: Sequence[str], excludes: Sequence[str] = (),
               workers: int = DEFAULT_WORKERS,
               cancel_event: Optional[threading.Event] = None) -> BackupResult:
        """Back up paths into a new snapshot."""
        orchestrator = BackupOrchestrator(workers=workers, cancel_event=cancel_event)
        return orchestrator.run(paths, excludes, self.store, self.snapshots)

    def list(self) -> List[Snapshot]:
        """Snapshots, newest last."""
        return self.snapshots.list()

    def get(self, snapshot_id: str) -> Snapshot:
        if snapshot_id == 'latest':
            return self.snapshots.latest()
        return self.snapshots.get(snapshot_id)

    def prune(self, rule: RetentionRule, now: Optional[datetime] = None) -> PruneResult:
        """Forget snapshots outside the retention rule and collect garbage."""
        return self.retention.prune(rule, now)

    def restore(self, snapshot_id: str, target: str, include: Optional[Sequence[str]] = None,
                cancel_event: Optional[threading.Event] = None) -> int:
        """Restore a snapshot into target; returns the number of files restored."""
        engine = RestoreEngine(self.store, self.snapshots, cancel_event=cancel_event)
        return engine.restore(snapshot_id, target, include=include)

    def gc(self) -> GCResult:
        return self.store.garbage_collect()

    def check(self, repair: bool = False) -> CheckResult:
        """
        Compare stored reference counts with snapshot references.

        Counts drift when a backup process dies between taking chunk
        references and committing its snapshot. With repair=True, counts are
        reset to the number of references held by committed snapshots, which
        lets the next gc() reclaim the leaked chunks.

        Args:
            repair: Rewrite mismatching reference counts

        Returns:
            CheckResult listing mismatches, missing blobs and orphan blobs
        """
        result = CheckResult()

        with self.index.collecting():
            with self.index.transaction() as session:
                expected = dict(session.execute(
                    select(FileChunkRecord.digest, func.count())
                    .group_by(FileChunkRecord.digest)
                ).all())

                known_locations = set()
                for record in session.scalars(select(ChunkRecord)):
                    known_locations.add(record.location)
                    wanted = expected.get(record.digest, 0)
                    if record.refcount != wanted:
                        result.refcount_mismatches[record.digest] = (record.refcount, wanted)
                        if repair:
                            record.refcount = wanted
                    if wanted and not (self.path / record.location).is_file():
                        result.missing_blobs.append(record.digest)

            data_dir = self.path / 'data'
            for blob_path in sorted(data_dir.glob('*/*')):
                location = blob_path.relative_to(self.path).as_posix()
                if location not in known_locations:
                    result.orphan_blobs.append(location)

        result.repaired = repair and bool(result.refcount_mismatches)
        if result.ok:
            logger.info("Repository check passed")
        else:
            logger.warning(
                f"Repository check found {len(result.refcount_mismatches)} refcount mismatch(es) "
                f"and {len(result.missing_blobs)} missing blob(s)"
            )
        return result

    def close(self):
        self.index.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def kdf_params_from_config(config: Mapping) -> KdfParams:
    """KDF parameters from PASSPHRASE_SALT and KDF_* configuration keys."""
    salt = config.get('PASSPHRASE_SALT') or 'backup-salt'
    return KdfParams(
        salt=salt.encode() if isinstance(salt, str) else bytes(salt),
        time_cost=int(config.get('KDF_TIME_COST', 3)),
        memory_cost=int(config.get('KDF_MEMORY_COST', 65536)),
        parallelism=int(config.get('KDF_PARALLELISM', 4))
    )


def open_repository(config: Mapping, create: bool = False) -> Repository:
    """
    Open the repository described by application configuration.

    Args:
        config: Mapping with REPOSITORY_PATH, PASSPHRASE, PASSPHRASE_SALT,
            KDF_*, CHUNK_SIZE, COMPRESSION and LOCK_TIMEOUT keys
        create: Initialize the repository if it does not exist yet

    Returns:
        Open Repository

    Raises:
        RepositoryError: If the repository is missing (and create is False,
            or no PASSPHRASE is configured to create it) or cannot be unlocked
    """
    path = config.get('REPOSITORY_PATH')
    if not path:
        raise RepositoryError("REPOSITORY_PATH is not configured")

    password = config.get('PASSPHRASE') or None
    repo_path = Path(path).expanduser()

    if create and not (repo_path / CONFIG_FILENAME).exists():
        # Unencrypted repositories are only created by an explicit init
        if password is None:
            raise RepositoryError(
                f"No repository at {repo_path} and no PASSPHRASE configured to create an encrypted one"
            )
        init_repository(
            str(repo_path),
            password=password,
            kdf=kdf_params_from_config(config),
            chunk_size=int(config.get('CHUNK_SIZE', DEFAULT_CHUNK_SIZE)),
            compression_format=config.get('COMPRESSION', 'zlib')
        )

    return Repository(
        str(repo_path),
        password=password,
        lock_timeout=float(config.get('LOCK_TIMEOUT', DEFAULT_LOCK_TIMEOUT))
    )
