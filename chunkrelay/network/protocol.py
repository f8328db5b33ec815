"""Chunk metadata wire format"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

# Discriminator carried by every carrier message
CHUNK_TYPE = "FileSplitterChunk"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass
class ChunkMetadata:
    """Metadata posted as the text body of a carrier message"""
    index: int
    total: int
    original_name: str
    original_size: int
    session_id: int
    file_checksum: Optional[str] = None
    chunk_checksum: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            'type': CHUNK_TYPE,
            'index': self.index,
            'total': self.total,
            'originalName': self.original_name,
            'originalSize': self.original_size,
            'timestamp': self.session_id,
        }
        if self.file_checksum:
            payload['checksum'] = self.file_checksum
        if self.chunk_checksum:
            payload['chunkChecksum'] = self.chunk_checksum
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), separators=(',', ':'))


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_payload(payload: Any) -> bool:
    """Check a decoded payload against the chunk metadata shape"""
    if not isinstance(payload, dict):
        return False
    if payload.get('type') != CHUNK_TYPE:
        return False

    index = payload.get('index')
    total = payload.get('total')
    if not (_is_int(index) and _is_int(total)):
        return False
    if index < 0 or total <= 0 or index >= total:
        return False

    if not isinstance(payload.get('originalName'), str):
        return False
    size = payload.get('originalSize')
    if not _is_int(size) or size < 0:
        return False
    if not _is_int(payload.get('timestamp')):
        return False

    for key in ('checksum', 'chunkChecksum'):
        if key in payload and payload[key] is not None and not isinstance(payload[key], str):
            return False
    return True


def parse_chunk_metadata(content: Optional[str]) -> Optional[ChunkMetadata]:
    """Parse carrier message content.

    Returns None for anything that is not chunk metadata; the channel may
    carry unrelated messages, so this is not an error.
    """
    if not content:
        return None
    try:
        payload = json.loads(content)
    except (TypeError, ValueError):
        return None

    if not validate_payload(payload):
        return None

    return ChunkMetadata(
        index=payload['index'],
        total=payload['total'],
        original_name=payload['originalName'],
        original_size=payload['originalSize'],
        session_id=payload['timestamp'],
        file_checksum=payload.get('checksum') or None,
        chunk_checksum=payload.get('chunkChecksum') or None,
    )


def sanitize_filename(name: str) -> str:
    """Replace characters the upload endpoint may reject"""
    return _UNSAFE_CHARS.sub("_", name)


def chunk_filename(original_name: str, index: int) -> str:
    """Attachment name for a chunk: <sanitized>.part<NNN>, 1-based"""
    return f"{sanitize_filename(original_name)}.part{index + 1:03d}"
