"""Chunk discovery from channel history and live events"""

import asyncio
from typing import Callable, List, Optional
import logging

from ..network.protocol import parse_chunk_metadata
from ..network.transport import ChatTransport, Message
from .registry import ChunkRecord, ChunkRegistry

logger = logging.getLogger(__name__)

PAGE_SIZE = 50


def chunk_record_from_message(message: Message) -> Optional[ChunkRecord]:
    """Build a ChunkRecord from a carrier message, None if it is not one"""
    if not message.content or not message.attachments:
        return None

    metadata = parse_chunk_metadata(message.content)
    if metadata is None:
        return None

    attachment = message.attachments[0]
    if not attachment.url:
        return None

    return ChunkRecord(
        index=metadata.index,
        total=metadata.total,
        original_name=metadata.original_name,
        original_size=metadata.original_size,
        session_id=metadata.session_id,
        file_checksum=metadata.file_checksum,
        chunk_checksum=metadata.chunk_checksum,
        source_location=attachment.url,
        proxy_location=attachment.proxy_url,
        origin_message_id=message.id,
    )


class Scanner:
    """Backfills the registry by paging through channel history"""

    def __init__(self, registry: ChunkRegistry, transport: ChatTransport,
                 page_size: int = PAGE_SIZE, page_delay: float = 0.2):
        self.registry = registry
        self.transport = transport
        self.page_size = page_size
        self.page_delay = page_delay

    async def scan_channel(self, channel_id: str, limit: int) -> int:
        """
        Scan up to `limit` messages, newest first
        Returns the number of chunks added to the registry
        """
        logger.info(f"Scanning last {limit} messages in {channel_id}")
        fetched = 0
        added = 0
        before: Optional[str] = None

        while fetched < limit:
            batch_size = min(self.page_size, limit - fetched)
            messages = await self.transport.list_messages(channel_id, batch_size, before)
            if not messages:
                break

            for message in messages:
                record = chunk_record_from_message(message)
                if record is not None:
                    if self.registry.add_chunk(record, message.channel_id or channel_id, message.author):
                        added += 1
                before = message.id

            fetched += len(messages)
            if len(messages) < batch_size:
                break
            await asyncio.sleep(self.page_delay)

        found = len(self.registry.get_sessions(channel_id))
        logger.info(f"Scan complete: {fetched} messages, {added} new chunks, {found} files")
        return added


class LiveDiscovery:
    """Keeps the registry in step with message events"""

    def __init__(self, registry: ChunkRegistry, transport: ChatTransport):
        self.registry = registry
        self.transport = transport
        self._unsubscribe: List[Callable[[], None]] = []

    def attach(self):
        if self._unsubscribe:
            return
        self._unsubscribe = [
            self.transport.on_message_created(self.handle_created),
            self.transport.on_message_deleted(self.handle_deleted),
        ]

    def detach(self):
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    def handle_created(self, message: Message):
        record = chunk_record_from_message(message)
        if record is None:
            return
        logger.debug(
            f"Received chunk {record.index + 1}/{record.total} for {record.original_name}"
        )
        self.registry.add_chunk(record, message.channel_id, message.author)

    def handle_deleted(self, channel_id: str, message_id: str):
        self.registry.remove_chunk(message_id)
