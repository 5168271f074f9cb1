"""
Key file utilities.

The Argon2 derivation is deliberately slow, so the derived key is written once
to a key file (hex, mode 0600) inside the repository and reused by later runs,
which then no longer need the plain password.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from chunkvault.utils.crypto import KEY_LENGTH, derive_passphrase

logger = logging.getLogger(__name__)


class KeyFileError(Exception):
    """Raised when the key file cannot be read, written or derived."""
    pass


class KeyFileManager:
    """
    Loads or provisions the derived repository key.

    This is NOT the same as CryptoManager, which only consumes the key.
    """

    def __init__(self, path: str):
        """
        Initialize with the key file location.

        Args:
            path: Path of the key file
        """
        self.path = Path(path)

    @property
    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> bytes:
        """
        Read key material from the key file.

        Returns:
            Raw key material

        Raises:
            KeyFileError: If the file is missing or malformed
        """
        try:
            key_material = bytes.fromhex(self.path.read_text().strip())
        except FileNotFoundError:
            raise KeyFileError(f"Key file not found: {self.path}")
        except ValueError:
            raise KeyFileError(f"Key file is not valid hex: {self.path}")
        except OSError as e:
            raise KeyFileError(f"Failed to read key file {self.path}: {e}")

        if len(key_material) != KEY_LENGTH:
            raise KeyFileError(f"Key file has wrong length ({len(key_material)} bytes): {self.path}")
        return key_material

    def store(self, key_material: bytes):
        """
        Write key material with owner-only permissions.

        Args:
            key_material: Raw key material
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w') as f:
                f.write(key_material.hex())
            os.chmod(self.path, 0o600)
        except OSError as e:
            raise KeyFileError(f"Failed to write key file {self.path}: {e}")

    def load_or_create(
        self,
        password: Optional[str],
        salt: bytes,
        time_cost: int,
        memory_cost: int,
        parallelism: int
    ) -> bytes:
        """
        Return the stored key, deriving and storing it on first use.

        Args:
            password: Plain password (only needed when no key file exists)
            salt: KDF salt
            time_cost: Argon2 time cost
            memory_cost: Argon2 memory cost in KiB
            parallelism: Argon2 lanes

        Returns:
            Raw key material

        Raises:
            KeyFileError: If no key file exists and no password was given
        """
        if self.exists:
            logger.info("Using existing key file")
            return self.load()

        if not password:
            raise KeyFileError(f"No key file at {self.path} and no passphrase configured")

        logger.info("Creating key file...")
        try:
            key_material = derive_passphrase(password, salt, time_cost, memory_cost, parallelism)
        except ValueError as e:
            raise KeyFileError(f"Invalid key derivation parameters: {e}")

        self.store(key_material)
        return key_material
