"""
Unit tests for key file handling (chunkvault/utils/key_file.py).
"""

import stat
from unittest.mock import patch

import pytest

from chunkvault.utils.key_file import KeyFileError, KeyFileManager

FAST = dict(time_cost=1, memory_cost=64, parallelism=1)


class TestKeyFileManager:
    """Test loading and provisioning the derived key."""

    def test_load_or_create_writes_hex_key_with_owner_only_mode(self, tmp_path):
        """Test first use derives the key and stores it as hex with mode 0600."""
        manager = KeyFileManager(tmp_path / 'keyfile')

        key = manager.load_or_create('password', b'backup-salt', **FAST)

        assert len(key) == 32
        assert (tmp_path / 'keyfile').read_text() == key.hex()
        assert stat.S_IMODE((tmp_path / 'keyfile').stat().st_mode) == 0o600

    def test_load_or_create_reuses_existing_key(self, tmp_path):
        """Test later runs read the key file instead of deriving again."""
        manager = KeyFileManager(tmp_path / 'keyfile')
        key = manager.load_or_create('password', b'backup-salt', **FAST)

        with patch('chunkvault.utils.key_file.derive_passphrase') as mock_derive:
            again = manager.load_or_create(None, b'backup-salt', **FAST)

        assert again == key
        mock_derive.assert_not_called()

    def test_load_or_create_without_password_or_file_raises_error(self, tmp_path):
        manager = KeyFileManager(tmp_path / 'keyfile')

        with pytest.raises(KeyFileError, match='no passphrase'):
            manager.load_or_create(None, b'backup-salt', **FAST)

    def test_load_or_create_with_invalid_parameters_raises_error(self, tmp_path):
        manager = KeyFileManager(tmp_path / 'keyfile')

        with pytest.raises(KeyFileError, match='Invalid key derivation'):
            manager.load_or_create('password', b'short', **FAST)

        assert not manager.exists

    def test_load_missing_file_raises_error(self, tmp_path):
        with pytest.raises(KeyFileError, match='not found'):
            KeyFileManager(tmp_path / 'missing').load()

    def test_load_malformed_file_raises_error(self, tmp_path):
        """Test non-hex and wrong-length key files are rejected."""
        path = tmp_path / 'keyfile'

        path.write_text('not hex at all')
        with pytest.raises(KeyFileError, match='not valid hex'):
            KeyFileManager(path).load()

        path.write_text('abcd')
        with pytest.raises(KeyFileError, match='wrong length'):
            KeyFileManager(path).load()

    def test_load_tolerates_trailing_newline(self, tmp_path):
        path = tmp_path / 'keyfile'
        path.write_text(('ab' * 32) + '\n')

        assert KeyFileManager(path).load() == bytes.fromhex('ab' * 32)
