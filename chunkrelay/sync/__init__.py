from .registry import ChunkRegistry, ChunkRecord, Session, SESSION_TIMEOUT
from .scanner import Scanner, LiveDiscovery, chunk_record_from_message
from .state import JsonFileBlobStore, MemoryBlobStore

__all__ = [
    'ChunkRegistry',
    'ChunkRecord',
    'Session',
    'SESSION_TIMEOUT',
    'Scanner',
    'LiveDiscovery',
    'chunk_record_from_message',
    'JsonFileBlobStore',
    'MemoryBlobStore'
]
