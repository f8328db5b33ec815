"""
sync/registry.py - Discovered chunk sessions
In-memory index of chunks found in channels, rebuilt after restart
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set
import logging

from ..network.transport import Author

logger = logging.getLogger(__name__)

# Sessions with no activity for this long are garbage collected
SESSION_TIMEOUT = 15 * 60


@dataclass
class ChunkRecord:
    """One transferred piece of a file"""
    index: int
    total: int
    original_name: str
    original_size: int
    session_id: int
    source_location: str
    file_checksum: Optional[str] = None
    chunk_checksum: Optional[str] = None
    proxy_location: Optional[str] = None
    origin_message_id: Optional[str] = None


@dataclass
class Session:
    """All chunks sharing a session id"""
    id: int
    name: str
    size: int
    total_chunks: int
    channel_id: str
    uploader: Optional[Author]
    chunks: List[ChunkRecord] = field(default_factory=list)
    last_updated: float = 0.0
    is_complete: bool = False

    def sorted_chunks(self) -> List[ChunkRecord]:
        return sorted(self.chunks, key=lambda c: c.index)

    def chunk_for(self, index: int) -> Optional[ChunkRecord]:
        for chunk in self.chunks:
            if chunk.index == index:
                return chunk
        return None

    def indices(self) -> Set[int]:
        return {c.index for c in self.chunks}

    def missing_indices(self) -> List[int]:
        present = self.indices()
        return [i for i in range(self.total_chunks) if i not in present]

    @property
    def file_checksum(self) -> Optional[str]:
        """Whole-file checksum, normally repeated on every chunk"""
        for chunk in self.sorted_chunks():
            if chunk.file_checksum:
                return chunk.file_checksum
        return None

    def _refresh(self, now: float):
        self.last_updated = now
        self.is_complete = len(self.chunks) == self.total_chunks


class ChunkRegistry:
    """
    Authoritative index of discovered chunks
    Groups chunks into sessions and notifies listeners on change
    """

    def __init__(self, session_timeout: float = SESSION_TIMEOUT,
                 clock: Callable[[], float] = time.time):
        self.session_timeout = session_timeout
        self.clock = clock
        self.storage: Dict[int, Session] = {}
        self._listeners: List[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a change listener, returns a function removing it"""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def emit_change(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Registry listener failed: {e}", exc_info=True)

    def add_chunk(self, record: ChunkRecord, channel_id: str,
                  uploader: Optional[Author] = None) -> bool:
        """
        Insert a chunk, creating its session if needed
        Returns False when the index is already known
        """
        if record.index < 0 or record.index >= record.total:
            logger.warning(
                f"Ignoring chunk {record.index} of session {record.session_id}: "
                f"index out of range (total {record.total})"
            )
            return False

        session = self.storage.get(record.session_id)
        if session is None:
            session = Session(
                id=record.session_id,
                name=record.original_name,
                size=record.original_size,
                total_chunks=record.total,
                channel_id=channel_id,
                uploader=uploader,
            )
            self.storage[record.session_id] = session
            logger.debug(f"New session {session.id}: {session.name} ({session.total_chunks} chunks)")
        elif record.total != session.total_chunks:
            logger.warning(
                f"Ignoring chunk {record.index} of session {record.session_id}: "
                f"total {record.total} conflicts with {session.total_chunks}"
            )
            return False

        if any(c.index == record.index for c in session.chunks):
            return False

        session.chunks.append(record)
        session._refresh(self.clock())
        logger.debug(
            f"Session {session.id}: chunk {record.index + 1}/{session.total_chunks} "
            f"({len(session.chunks)} known)"
        )
        self.emit_change()
        return True

    def remove_chunk(self, message_id: str) -> bool:
        """Drop chunks carried by a deleted message"""
        changed = False
        now = self.clock()

        for session_id in list(self.storage.keys()):
            session = self.storage[session_id]
            remaining = [c for c in session.chunks if c.origin_message_id != message_id]
            if len(remaining) == len(session.chunks):
                continue

            changed = True
            session.chunks = remaining
            session._refresh(now)
            if not session.chunks:
                del self.storage[session_id]
                logger.info(f"Session {session_id} removed: all chunks deleted")

        if changed:
            self.emit_change()
        return changed

    def remove_chunk_by_index(self, session_id: int, index: int) -> bool:
        """Drop one chunk so a replacement can be inserted"""
        session = self.get_session(session_id)
        if session is None:
            return False

        remaining = [c for c in session.chunks if c.index != index]
        if len(remaining) == len(session.chunks):
            return False

        session.chunks = remaining
        session._refresh(self.clock())
        self.emit_change()
        return True

    def get_session(self, session_id: int) -> Optional[Session]:
        return self.storage.get(session_id)

    def get_sessions(self, channel_id: Optional[str] = None) -> List[Session]:
        sessions = list(self.storage.values())
        if channel_id:
            return [s for s in sessions if s.channel_id == channel_id]
        return sessions

    def sweep_expired(self, now: Optional[float] = None) -> int:
        """Remove sessions idle longer than the timeout"""
        if now is None:
            now = self.clock()

        expired = [
            session_id for session_id, session in self.storage.items()
            if now - session.last_updated > self.session_timeout
        ]
        for session_id in expired:
            del self.storage[session_id]

        if expired:
            logger.info(f"Garbage collected {len(expired)} expired sessions")
            self.emit_change()
        return len(expired)

    async def run_sweeper(self, interval: float, stop: asyncio.Event):
        """Sweep expired sessions every `interval` seconds until stopped"""
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self.sweep_expired()
