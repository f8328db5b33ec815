"""Content hashing for files and chunks"""

import hashlib
from typing import Iterable, Optional
import logging

logger = logging.getLogger(__name__)

# Window size for whole-file hashing
HASH_WINDOW = 10 * 1024 * 1024

# Returned when a digest could not be computed
CHECKSUM_ERROR = "error"


def checksum_available(value: Optional[str]) -> bool:
    """True if `value` is a real digest rather than missing/unavailable"""
    return bool(value) and value != CHECKSUM_ERROR


def _combine(window_digests: Iterable[str]) -> str:
    return hashlib.sha256("".join(window_digests).encode('ascii')).hexdigest()


def digest_whole(data: bytes) -> str:
    """
    Hash of hashes over fixed windows
    Each 10 MiB window is hashed on its own, the hex digests are joined
    and hashed again.
    """
    try:
        view = memoryview(data)
        digests = [
            hashlib.sha256(view[start:start + HASH_WINDOW]).hexdigest()
            for start in range(0, len(view), HASH_WINDOW)
        ]
        return _combine(digests)
    except Exception as e:
        logger.error(f"Checksum calculation failed: {e}")
        return CHECKSUM_ERROR


def digest_chunk(data: bytes) -> str:
    """Plain SHA-256 of one chunk"""
    try:
        return hashlib.sha256(data).hexdigest()
    except Exception as e:
        logger.error(f"Chunk checksum calculation failed: {e}")
        return CHECKSUM_ERROR


async def digest_file(source) -> str:
    """digest_whole of a file source, read one window at a time"""
    try:
        digests = []
        for start in range(0, source.size, HASH_WINDOW):
            window = await source.read_range(start, start + HASH_WINDOW)
            digests.append(hashlib.sha256(window).hexdigest())
        return _combine(digests)
    except Exception as e:
        logger.error(f"Checksum calculation failed for {getattr(source, 'name', source)}: {e}")
        return CHECKSUM_ERROR
