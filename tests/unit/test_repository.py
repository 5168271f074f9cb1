"""
Unit tests for the repository facade (chunkvault/backup/repository.py).

Tests initialization, opening with keys, and the consistency check.
"""

import json

import pytest

from chunkvault.backup.errors import RepositoryError
from chunkvault.backup.repository import (
    REPOSITORY_VERSION,
    KdfParams,
    Repository,
    init_repository,
    kdf_params_from_config,
    open_repository
)
from chunkvault.models import ChunkRecord

EXCLUDES = ['*.log', '**/cache/*']


class TestInitRepository:
    """Test creating repositories."""

    def test_init_writes_config_and_layout(self, repo_dir, fast_kdf):
        data = init_repository(str(repo_dir), password='secret', kdf=fast_kdf, chunk_size=128)

        config = json.loads((repo_dir / 'config.json').read_text())
        assert config == data
        assert config['version'] == REPOSITORY_VERSION
        assert config['chunk_size'] == 128
        assert config['encrypted'] is True
        assert config['kdf']['salt'] == fast_kdf.salt.hex()
        assert 'key_check' in config
        for name in ('data', 'locks', 'logs', 'index.db', 'keyfile'):
            assert (repo_dir / name).exists()

    def test_init_unencrypted(self, repo_dir):
        data = init_repository(str(repo_dir), password=None)

        assert data['encrypted'] is False
        assert 'kdf' not in data
        assert not (repo_dir / 'keyfile').exists()

    def test_init_twice_raises_error(self, repo_dir):
        init_repository(str(repo_dir), password=None)

        with pytest.raises(RepositoryError, match='already exists'):
            init_repository(str(repo_dir), password=None)

    @pytest.mark.parametrize('kwargs', [{'chunk_size': 0}, {'compression_format': 'rar'}])
    def test_init_invalid_settings(self, repo_dir, kwargs):
        with pytest.raises(RepositoryError):
            init_repository(str(repo_dir), password=None, **kwargs)

        assert not (repo_dir / 'config.json').exists()


class TestOpenRepository:
    """Test opening repositories."""

    def test_open_missing_repository(self, repo_dir):
        with pytest.raises(RepositoryError, match='No repository'):
            Repository(str(repo_dir))

    def test_open_uses_key_file_without_password(self, repository, source_tree, repo_dir):
        result = repository.backup([str(source_tree / 'a.txt')], [])
        repository.close()

        with Repository(str(repo_dir)) as reopened:
            snapshot = reopened.get(result.snapshot_id)
            assert reopened.store.get(snapshot.files[0].chunks[0]) == b'alpha\n' * 10

    def test_open_with_wrong_key_file(self, repository, repo_dir):
        repository.close()
        (repo_dir / 'keyfile').write_text('00' * 32)

        with pytest.raises(RepositoryError, match='Wrong passphrase'):
            Repository(str(repo_dir))

    def test_open_with_wrong_password_and_no_key_file(self, repository, repo_dir):
        repository.close()
        (repo_dir / 'keyfile').unlink()

        with pytest.raises(RepositoryError, match='Wrong passphrase'):
            Repository(str(repo_dir), password='not the passphrase')

    def test_open_without_password_and_no_key_file(self, repository, repo_dir):
        repository.close()
        (repo_dir / 'keyfile').unlink()

        with pytest.raises(RepositoryError, match='no passphrase'):
            Repository(str(repo_dir))

    def test_open_unsupported_version(self, repo_dir):
        init_repository(str(repo_dir), password=None)
        config_path = repo_dir / 'config.json'
        config = json.loads(config_path.read_text())
        config['version'] = 99
        config_path.write_text(json.dumps(config))

        with pytest.raises(RepositoryError, match='Unsupported'):
            Repository(str(repo_dir))

    def test_open_repository_creates_on_demand(self, repo_dir):
        config = {
            'REPOSITORY_PATH': str(repo_dir),
            'PASSPHRASE': 'secret',
            'PASSPHRASE_SALT': 'backup-salt',
            'KDF_TIME_COST': 1,
            'KDF_MEMORY_COST': 64,
            'KDF_PARALLELISM': 1,
            'CHUNK_SIZE': 256,
            'COMPRESSION': 'lzma'
        }

        with open_repository(config, create=True) as repository:
            assert repository.config['chunk_size'] == 256
            assert repository.config['compression'] == 'lzma'
            assert repository.store.chunk_size == 256

    @pytest.mark.parametrize('passphrase', [None, ''])
    def test_open_repository_refuses_to_create_unencrypted(self, repo_dir, passphrase):
        """Test a missing passphrase never creates a plaintext repository."""
        config = {
            'REPOSITORY_PATH': str(repo_dir),
            'PASSPHRASE': passphrase,
            'COMPRESSION': 'none'
        }

        with pytest.raises(RepositoryError, match='no PASSPHRASE'):
            open_repository(config, create=True)

        assert not (repo_dir / 'config.json').exists()
        assert not (repo_dir / 'data').exists()

    def test_open_repository_without_passphrase_uses_existing(self, repo_dir):
        init_repository(str(repo_dir), password=None)

        with open_repository({'REPOSITORY_PATH': str(repo_dir)}, create=True) as repository:
            assert repository.config['encrypted'] is False

    def test_open_repository_without_create(self, repo_dir):
        with pytest.raises(RepositoryError):
            open_repository({'REPOSITORY_PATH': str(repo_dir)})

    def test_kdf_params_from_config_defaults(self):
        params = kdf_params_from_config({})

        assert params == KdfParams(salt=b'backup-salt', time_cost=3, memory_cost=65536, parallelism=4)


class TestCheck:
    """Test the consistency check."""

    def test_check_clean_repository(self, repository, source_tree):
        repository.backup([str(source_tree)], EXCLUDES)

        result = repository.check()

        assert result.ok
        assert result.refcount_mismatches == {}
        assert result.orphan_blobs == []

    def test_check_finds_and_repairs_leaked_references(self, repository, source_tree):
        """Test references leaked by a crashed run are repaired and reclaimed."""
        repository.backup([str(source_tree)], EXCLUDES)
        leaked = repository.store.put(b'written by a run that never committed')

        result = repository.check()
        assert not result.ok
        assert result.refcount_mismatches == {leaked.digest: (1, 0)}

        repaired = repository.check(repair=True)
        assert repaired.repaired
        assert repository.store.refcount(leaked.digest) == 0

        assert repository.gc().chunks_deleted == 1
        assert repository.check().ok

    def test_check_reports_missing_and_orphan_blobs(self, repository, source_tree):
        result = repository.backup([str(source_tree / 'a.txt')], [])
        digest = repository.get(result.snapshot_id).files[0].chunks[0].digest
        (repository.store.data_dir / digest[:2] / digest).unlink()
        orphan = repository.store.data_dir / 'ff' / ('f' * 64)
        orphan.parent.mkdir(parents=True, exist_ok=True)
        orphan.write_bytes(b'orphan')

        check = repository.check()

        assert check.missing_blobs == [digest]
        assert check.orphan_blobs == [f"data/ff/{'f' * 64}"]
        assert not check.ok

    def test_check_repair_does_not_touch_consistent_counts(self, repository, source_tree):
        repository.backup([str(source_tree)], EXCLUDES)
        with repository.index.session() as session:
            before = {r.digest: r.refcount for r in session.query(ChunkRecord)}

        repository.check(repair=True)

        with repository.index.session() as session:
            assert {r.digest: r.refcount for r in session.query(ChunkRecord)} == before
