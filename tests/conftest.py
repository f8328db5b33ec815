"""Pytest configuration and fixtures"""

import pytest
import asyncio
import tempfile
import shutil
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set

from chunkrelay.config import TransferConfig
from chunkrelay.exceptions import RateLimitedError
from chunkrelay.integrity.checksum import digest_chunk, digest_whole
from chunkrelay.network.protocol import ChunkMetadata, chunk_filename
from chunkrelay.network.transport import Attachment, Author, ChatTransport, Message
from chunkrelay.sync.registry import ChunkRegistry
from chunkrelay.sync.scanner import chunk_record_from_message
from chunkrelay.sync.state import MemoryBlobStore


class BytesFile:
    """In-memory file source"""

    def __init__(self, name: str, data: bytes):
        self.name = name
        self.data = data
        self.size = len(data)

    async def read_range(self, start: int, end: int) -> bytes:
        return self.data[start:min(end, self.size)]


class FakeTransport(ChatTransport):
    """
    In-memory chat channel
    Records every send and can simulate rate limits, failed fetches and
    slow uploads.
    """

    def __init__(self):
        super().__init__()
        self.channels: Dict[str, List[Message]] = {}
        self.blobs: Dict[str, bytes] = {}
        self.staged: Dict[str, bytes] = {}
        self.author = Author(id="42", username="uploader")

        self.send_count = 0
        self.sent_filenames: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.fetched: List[str] = []
        self.list_calls: List[tuple] = []

        self.send_delay = 0.0
        self.before_send: Optional[Callable[[str], Awaitable[None]]] = None
        self.rate_limit_on: Set[int] = set()  # 1-based send numbers
        self.retry_after = 0.0
        self.failing_urls: Set[str] = set()

        self._next_id = 1000

    async def send_attachment(self, data: bytes, filename: str, channel_id: str) -> str:
        self.send_count += 1
        number = self.send_count
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.before_send is not None:
                await self.before_send(filename)
            if self.send_delay:
                await asyncio.sleep(self.send_delay)
            if number in self.rate_limit_on:
                raise RateLimitedError(retry_after=self.retry_after)
            ref = f"staged/{number}/{filename}"
            self.staged[ref] = bytes(data)
            return ref
        finally:
            self.in_flight -= 1

    async def post_message(self, channel_id: str, content: str, attachment_ref: str,
                           filename: str, size: int) -> Message:
        message_id = self._new_id()
        url = f"https://cdn.test/{channel_id}/{message_id}/{filename}"
        self.blobs[url] = self.staged.pop(attachment_ref)
        self.sent_filenames.append(filename)

        message = Message(
            id=message_id,
            channel_id=channel_id,
            content=content,
            attachments=[Attachment(url=url, filename=filename, size=size, proxy_url=url + "?proxy")],
            author=self.author,
        )
        self.channels.setdefault(channel_id, []).append(message)
        self.dispatch_created(message)
        return message

    async def fetch_bytes(self, url: str) -> Optional[bytes]:
        self.fetched.append(url)
        await asyncio.sleep(0)
        if url in self.failing_urls:
            return None
        return self.blobs.get(url)

    async def list_messages(self, channel_id: str, limit: int,
                            before: Optional[str] = None) -> List[Message]:
        self.list_calls.append((channel_id, limit, before))
        history = list(reversed(self.channels.get(channel_id, [])))
        if before is not None:
            history = [m for m in history if int(m.id) < int(before)]
        return history[:limit]

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def post_text(self, channel_id: str, content: str) -> Message:
        """Unrelated chatter without attachments"""
        message = Message(id=self._new_id(), channel_id=channel_id, content=content, author=self.author)
        self.channels.setdefault(channel_id, []).append(message)
        return message

    def delete_message(self, channel_id: str, message_id: str):
        self.channels[channel_id] = [m for m in self.channels[channel_id] if m.id != message_id]
        self.dispatch_deleted(channel_id, message_id)

    def messages(self, channel_id: str) -> List[Message]:
        return list(self.channels.get(channel_id, []))


async def publish_file(transport: FakeTransport, channel_id: str, name: str, data: bytes,
                       chunk_size: int, session_id: int = 1700000000000,
                       file_checksum: Optional[str] = "auto") -> List[Message]:
    """Post a file as carrier messages the way an uploader would"""
    if file_checksum == "auto":
        file_checksum = digest_whole(data)
    total = max(1, -(-len(data) // chunk_size))
    messages = []
    for index in range(total):
        piece = data[index * chunk_size:(index + 1) * chunk_size]
        metadata = ChunkMetadata(index, total, name, len(data), session_id,
                                 file_checksum, digest_chunk(piece))
        filename = chunk_filename(name, index)
        ref = await transport.send_attachment(piece, filename, channel_id)
        messages.append(await transport.post_message(channel_id, metadata.to_json(), ref, filename, len(piece)))
    return messages


def index_messages(registry: ChunkRegistry, messages: List[Message]):
    for message in messages:
        registry.add_chunk(chunk_record_from_message(message), message.channel_id, message.author)


def pattern_bytes(size: int, seed: int = 0) -> bytes:
    """Deterministic non-repeating-ish test content"""
    block = bytes((i * 31 + seed) % 251 for i in range(251))
    return (block * (size // len(block) + 1))[:size]


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return MemoryBlobStore()


@pytest.fixture
def registry():
    return ChunkRegistry()


@pytest.fixture
def fast_config():
    """Config with every delay removed"""
    return TransferConfig(
        base_delay_ms=0,
        jitter_ms=0,
        poll_interval=0.01,
        cooldown_seconds=0.05,
        scan_page_delay=0,
        repair_delay=0,
        repair_linger=0.05,
    )
