import hashlib
from pathlib import Path
from typing import Union

_READ_BLOCK = 1024 * 1024


def sha256_hex(data: Union[str, bytes]) -> str:
    """Hex SHA-256 of a string (utf-8) or bytes. Used for cache keys and content fingerprints."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Union[str, Path]) -> str:
    """Streamed SHA-256 of a file on disk, so large uploads are never held in memory just to hash them."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(_READ_BLOCK), b""):
            h.update(block)
    return h.hexdigest()
