"""
Shared pytest fixtures for Chunkvault tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Repository components (index, content store, snapshot manager)
- Opened repositories with fast key derivation
- Temporary source trees
"""

import json
import os
from datetime import timezone

import pytest

from chunkvault import create_app
from chunkvault import scheduler as scheduler_module
from chunkvault.backup.index import RepositoryIndex
from chunkvault.backup.repository import KdfParams, Repository, init_repository
from chunkvault.backup.snapshots import Snapshot, SnapshotManager
from chunkvault.backup.storage import ContentStore
from chunkvault.utils.crypto import CryptoManager


# Cheap Argon2id parameters; production defaults take seconds per derivation
FAST_KDF = KdfParams(salt=b'test-salt-1234', time_cost=1, memory_cost=64, parallelism=1)


@pytest.fixture
def fast_kdf():
    return FAST_KDF


@pytest.fixture(scope='function')
def repo_dir(tmp_path):
    """Directory for a repository (not created)."""
    return tmp_path / 'repository'


@pytest.fixture(scope='function')
def source_tree(tmp_path):
    """
    Create a small source tree.

    Layout:
        src/a.txt, src/b.bin (3 chunks at 64-byte chunking),
        src/sub/c.txt, src/app.log, src/cache/tmp.dat, src/empty.txt
    """
    src = tmp_path / 'src'
    (src / 'sub').mkdir(parents=True)
    (src / 'cache').mkdir()

    (src / 'a.txt').write_text('alpha\n' * 10)
    (src / 'b.bin').write_bytes(bytes(range(160)))
    (src / 'sub' / 'c.txt').write_text('gamma')
    (src / 'app.log').write_text('log line\n')
    (src / 'cache' / 'tmp.dat').write_bytes(b'cached')
    (src / 'empty.txt').write_bytes(b'')

    return src


@pytest.fixture(scope='function')
def index(repo_dir):
    """Repository index in a fresh directory."""
    idx = RepositoryIndex(str(repo_dir), lock_timeout=2.0)
    yield idx
    idx.close()


@pytest.fixture(scope='function')
def crypto():
    """CryptoManager initialized with fixed key material."""
    cm = CryptoManager()
    cm.initialize_with_key(b'k' * 32)
    return cm


@pytest.fixture(scope='function')
def store(index, crypto):
    """Encrypted content store with 64-byte chunks."""
    return ContentStore(index, crypto=crypto, chunk_size=64)


@pytest.fixture(scope='function')
def snapshot_manager(index):
    return SnapshotManager(index)


@pytest.fixture(scope='function')
def repository(repo_dir):
    """
    Initialized, encrypted repository with 64-byte chunks.

    Password: test-passphrase
    """
    init_repository(str(repo_dir), password='test-passphrase', kdf=FAST_KDF, chunk_size=64)
    repo = Repository(str(repo_dir), lock_timeout=2.0)
    yield repo
    repo.close()


@pytest.fixture(scope='function')
def config_file(tmp_path, repo_dir, source_tree):
    """JSON configuration file pointing at the temporary repository."""
    path = tmp_path / 'chunkvault.json'
    path.write_text(json.dumps({
        'REPOSITORY_PATH': str(repo_dir),
        'LOG_DIR': str(tmp_path / 'logs'),
        'BACKUP_PATHS': [str(source_tree)],
        # '**/tmp/*' would match the system temp directory holding the tree
        'BACKUP_EXCLUDES': ['*.sqlite3*', '*.log', '**/cache/*'],
        'CHUNK_SIZE': 64,
        'PASSPHRASE_SALT': 'test-salt-1234',
    }))
    return path


@pytest.fixture(scope='function')
def app(config_file, monkeypatch):
    """
    Create Flask app with test configuration.

    The repository lives in a temporary directory; the scheduler is off.
    """
    monkeypatch.setenv('CHUNKVAULT_CONFIG', str(config_file))

    app = create_app('testing', with_scheduler=False)

    yield app

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


def make_snapshot(snapshot_id, created_at):
    """Snapshot value with only id and time, for retention tests."""
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return Snapshot(id=snapshot_id, created_at=created_at)


@pytest.fixture
def snapshot_factory():
    return make_snapshot


def read_tree(root):
    """Map of relative path -> bytes for every regular file below root."""
    contents = {}
    for current, _, filenames in os.walk(root):
        for name in filenames:
            path = os.path.join(current, name)
            with open(path, 'rb') as f:
                contents[os.path.relpath(path, root)] = f.read()
    return contents


@pytest.fixture
def tree_reader():
    return read_tree
