"""
Encryption utilities for chunk blobs.
Uses Fernet symmetric encryption with a key derived from the repository passphrase
through Argon2id.
"""

import base64
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives.kdf.argon2 import Argon2id


KEY_LENGTH = 32


def derive_passphrase(
    password: str,
    salt: bytes,
    time_cost: int = 3,
    memory_cost: int = 65536,
    parallelism: int = 4,
    length: int = KEY_LENGTH
) -> bytes:
    """
    Derive fixed-length key material from a password with Argon2id.

    Args:
        password: Plain password
        salt: Salt bytes (at least 8)
        time_cost: Number of passes over memory
        memory_cost: Memory in KiB (at least 8 * parallelism)
        parallelism: Number of lanes
        length: Output length in bytes

    Returns:
        Raw key material

    Raises:
        ValueError: If the parameters are out of range
    """
    if not password:
        raise ValueError("Password must not be empty")
    if len(salt) < 8:
        raise ValueError("Salt must be at least 8 bytes")
    if memory_cost < 8 * parallelism:
        raise ValueError("memory_cost must be at least 8 KiB per lane")

    kdf = Argon2id(
        salt=salt,
        length=length,
        iterations=time_cost,
        lanes=parallelism,
        memory_cost=memory_cost,
    )
    return kdf.derive(password.encode())


class CryptoManager:
    """Handles encryption and decryption of chunk data."""

    def __init__(self):
        self._fernet = None

    def initialize(self, password: str, salt: bytes, time_cost: int = 3,
                   memory_cost: int = 65536, parallelism: int = 4) -> bytes:
        """
        Initialize the encryption manager from a password.

        Args:
            password: Repository password
            salt: KDF salt
            time_cost: Argon2 time cost
            memory_cost: Argon2 memory cost in KiB
            parallelism: Argon2 lanes

        Returns:
            The derived key material (persist it to a key file to skip the KDF)
        """
        key_material = derive_passphrase(password, salt, time_cost, memory_cost, parallelism)
        self.initialize_with_key(key_material)
        return key_material

    def initialize_with_key(self, key_material: bytes):
        """
        Initialize the encryption manager from previously derived key material.

        Args:
            key_material: 32 bytes of key material
        """
        if len(key_material) != KEY_LENGTH:
            raise ValueError(f"Key material must be {KEY_LENGTH} bytes, got {len(key_material)}")

        self._fernet = Fernet(base64.urlsafe_b64encode(key_material))

    def encrypt(self, plaintext: bytes) -> bytes:
        """
        Encrypt bytes.

        Args:
            plaintext: Bytes to encrypt

        Returns:
            Fernet token

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.encrypt(plaintext)

    def decrypt(self, token: bytes) -> bytes:
        """
        Decrypt bytes.

        Args:
            token: Fernet token

        Returns:
            Decrypted bytes

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.decrypt(token)

    @property
    def is_initialized(self) -> bool:
        """Check if the crypto manager has been initialized."""
        return self._fernet is not None
