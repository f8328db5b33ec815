from .checksum import (
    CHECKSUM_ERROR,
    HASH_WINDOW,
    checksum_available,
    digest_chunk,
    digest_file,
    digest_whole,
)
from .repair import (
    CHUNK_SIZE_LADDER_MB,
    RepairEngine,
    RepairState,
    RepairStatus,
    chunk_size_candidates,
    infer_chunk_size,
)

__all__ = [
    'CHECKSUM_ERROR',
    'HASH_WINDOW',
    'checksum_available',
    'digest_chunk',
    'digest_file',
    'digest_whole',
    'CHUNK_SIZE_LADDER_MB',
    'RepairEngine',
    'RepairState',
    'RepairStatus',
    'chunk_size_candidates',
    'infer_chunk_size'
]
