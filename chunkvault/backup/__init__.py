"""
Backup core for Chunkvault.

This module handles the repository functionality including:
- Content-addressed chunk storage with deduplication
- Snapshots and their atomic commit
- Retention policy enforcement
- Backup orchestration and restore
"""

from .errors import (
    BackupCancelled,
    CorruptChunk,
    FileFailure,
    IncompleteTree,
    InvalidRetentionRule,
    NotFound,
    PartialFailure,
    PartialRestore,
    RepositoryError,
    RepositoryLocked,
    StorageUnavailable,
    VaultError
)
from .executor import BackupExecutor, BackupOrchestrator, BackupResult, execute_backup
from .repository import Repository, init_repository, open_repository
from .restore import RestoreEngine
from .retention import RetentionManager, RetentionRule, select
from .snapshots import Snapshot, SnapshotManager
from .storage import ChunkRef, ContentStore

__all__ = [
    'BackupCancelled',
    'CorruptChunk',
    'FileFailure',
    'IncompleteTree',
    'InvalidRetentionRule',
    'NotFound',
    'PartialFailure',
    'PartialRestore',
    'RepositoryError',
    'RepositoryLocked',
    'StorageUnavailable',
    'VaultError',
    'BackupExecutor',
    'BackupOrchestrator',
    'BackupResult',
    'execute_backup',
    'Repository',
    'init_repository',
    'open_repository',
    'RestoreEngine',
    'RetentionManager',
    'RetentionRule',
    'select',
    'Snapshot',
    'SnapshotManager',
    'ChunkRef',
    'ContentStore'
]
