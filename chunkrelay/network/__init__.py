from .protocol import (
    CHUNK_TYPE,
    ChunkMetadata,
    chunk_filename,
    parse_chunk_metadata,
    sanitize_filename,
)
from .transport import Attachment, Author, ChatTransport, Message
from .discord import DiscordTransport

__all__ = [
    'CHUNK_TYPE',
    'ChunkMetadata',
    'chunk_filename',
    'parse_chunk_metadata',
    'sanitize_filename',
    'Attachment',
    'Author',
    'ChatTransport',
    'Message',
    'DiscordTransport'
]
