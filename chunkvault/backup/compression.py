"""
Compression codecs for chunk blobs.

Supports multiple formats:
- zlib: Deflate (default)
- bz2: Bzip2
- lzma: LZMA/xz
- none: Stored as-is

The format used for a chunk is recorded in the index so repositories can
switch formats without rewriting existing chunks.
"""

import bz2
import lzma
import zlib


class CompressionError(Exception):
    """Raised when a chunk cannot be compressed or decompressed."""
    pass


def _identity(data: bytes) -> bytes:
    return data


# Map format to (compress, decompress)
CODECS = {
    'zlib': (lambda data: zlib.compress(data, 6), zlib.decompress),
    'bz2': (lambda data: bz2.compress(data, 9), bz2.decompress),
    'lzma': (lzma.compress, lzma.decompress),
    'none': (_identity, _identity)
}


def validate_format(compression_format: str) -> str:
    """
    Check that a compression format is supported.

    Args:
        compression_format: Format name

    Returns:
        The format name, unchanged

    Raises:
        ValueError: If compression_format is invalid
    """
    if compression_format not in CODECS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(CODECS.keys())}"
        )
    return compression_format


def compress_chunk(data: bytes, compression_format: str = 'zlib') -> bytes:
    """
    Compress chunk bytes.

    Args:
        data: Plaintext chunk bytes
        compression_format: Format to use ('zlib', 'bz2', 'lzma', 'none')

    Returns:
        Compressed bytes

    Raises:
        CompressionError: If compression fails
        ValueError: If compression_format is invalid
    """
    compress, _ = CODECS[validate_format(compression_format)]
    try:
        return compress(data)
    except Exception as e:
        raise CompressionError(f"Failed to compress chunk ({compression_format}): {e}")


def decompress_chunk(data: bytes, compression_format: str) -> bytes:
    """
    Decompress chunk bytes.

    Args:
        data: Compressed bytes as stored
        compression_format: Format the chunk was written with

    Returns:
        Plaintext chunk bytes

    Raises:
        CompressionError: If the data is not valid for the format
        ValueError: If compression_format is invalid
    """
    _, decompress = CODECS[validate_format(compression_format)]
    try:
        return decompress(data)
    except (zlib.error, OSError, lzma.LZMAError, EOFError) as e:
        raise CompressionError(f"Failed to decompress chunk ({compression_format}): {e}")
