"""Chunked upload engine"""

import asyncio
import json
import math
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import logging

from ..config import LARGE_FILE_LIMIT, TransferConfig, chunk_size_bytes
from ..exceptions import (
    FileMismatchError,
    FileTooLargeError,
    MissingFileError,
    RateLimitedError,
    SessionNotFoundError,
    TransferCancelled,
    ValidationError,
)
from ..integrity.checksum import checksum_available, digest_chunk, digest_file
from ..network.protocol import ChunkMetadata, chunk_filename
from ..network.transport import ChatTransport, Message
from .cancel import CancelToken
from .pool import run_bounded

logger = logging.getLogger(__name__)


class UploadStatus(Enum):
    """Upload session states"""
    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = (UploadStatus.COMPLETED, UploadStatus.ERROR)


@dataclass
class UploadSession:
    """
    A local file being pushed to a channel
    `id` doubles as the session id carried in every chunk's metadata
    """
    id: int
    name: str
    size: int
    chunk_size: int
    total_chunks: int
    channel_id: str
    file: Optional[Any] = None  # absent after restart until reattached
    status: UploadStatus = UploadStatus.PENDING
    completed_indices: Set[int] = field(default_factory=set)
    start_time: float = 0.0
    bytes_uploaded: int = 0
    speed: float = 0.0  # bytes/s
    etr: float = 0.0  # seconds
    last_message_id: Optional[str] = None
    error: Optional[str] = None
    cancel: CancelToken = field(default_factory=CancelToken)

    def chunk_range(self, index: int) -> Tuple[int, int]:
        start = index * self.chunk_size
        return start, min(start + self.chunk_size, self.size)

    def chunk_length(self, index: int) -> int:
        start, end = self.chunk_range(index)
        return end - start

    def completed_bytes(self) -> int:
        return sum(self.chunk_length(i) for i in self.completed_indices)

    @property
    def progress(self) -> float:
        if not self.total_chunks:
            return 0.0
        return len(self.completed_indices) / self.total_chunks

    def to_state(self) -> Dict[str, Any]:
        """Serializable projection, without the file and token"""
        return {
            'id': self.id,
            'name': self.name,
            'size': self.size,
            'chunk_size': self.chunk_size,
            'total_chunks': self.total_chunks,
            'channel_id': self.channel_id,
            'status': self.status.value,
            'completed_indices': sorted(self.completed_indices),
            'start_time': self.start_time,
            'bytes_uploaded': self.bytes_uploaded,
            'speed': self.speed,
            'etr': self.etr,
            'last_message_id': self.last_message_id,
            'error': self.error,
        }

    @classmethod
    def from_state(cls, data: Dict[str, Any]) -> "UploadSession":
        """Restore a persisted session; it always comes back paused"""
        total = int(data['total_chunks'])
        return cls(
            id=int(data['id']),
            name=data['name'],
            size=int(data['size']),
            chunk_size=int(data['chunk_size']),
            total_chunks=total,
            channel_id=str(data['channel_id']),
            status=UploadStatus.PAUSED,
            completed_indices={int(i) for i in data.get('completed_indices', []) if 0 <= int(i) < total},
            start_time=data.get('start_time', 0.0),
            bytes_uploaded=data.get('bytes_uploaded', 0),
            speed=data.get('speed', 0.0),
            etr=data.get('etr', 0.0),
            last_message_id=data.get('last_message_id'),
            error=data.get('error'),
        )


class UploadEngine:
    """
    Splits local files into chunks and sends them to a channel
    Tracks progress, persists resumable sessions and backs off when
    the platform rate limits us.
    """

    def __init__(self, transport: ChatTransport, store, config: Optional[TransferConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.transport = transport
        self.store = store
        self.config = config or TransferConfig()
        self.clock = clock

        self.sessions: Dict[int, UploadSession] = {}
        self._listeners: List[Callable[[], None]] = []
        self._tasks: Dict[int, asyncio.Task] = {}
        self._cooldowns: Dict[int, asyncio.Task] = {}

    # --- listeners & persistence ---

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
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
                logger.error(f"Upload listener failed: {e}", exc_info=True)
        self.save_state()

    def save_state(self):
        """Persist every session that can still be resumed"""
        to_save = {
            str(s.id): s.to_state()
            for s in self.sessions.values()
            if s.status not in TERMINAL_STATUSES
        }
        try:
            self.store.save(json.dumps(to_save))
        except Exception as e:
            logger.error(f"Failed to save upload state: {e}")

    def load_state(self) -> int:
        """Restore persisted sessions as paused, returns how many"""
        try:
            data = json.loads(self.store.load() or "{}")
        except ValueError as e:
            logger.error(f"Failed to load upload state: {e}")
            return 0
        if not isinstance(data, dict):
            logger.error(f"Failed to load upload state: expected an object, got {type(data).__name__}")
            return 0

        restored = 0
        for entry in data.values():
            try:
                session = UploadSession.from_state(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable upload state entry: {e}")
                continue
            self.sessions[session.id] = session
            restored += 1

        if restored:
            logger.info(f"Restored {restored} paused uploads")
        return restored

    # --- public operations ---

    def get_session(self, session_id: int) -> Optional[UploadSession]:
        return self.sessions.get(session_id)

    def get_sessions(self) -> List[UploadSession]:
        return list(self.sessions.values())

    def start_upload(self, file, chunk_size_mb: Optional[float] = None,
                     channel_id: Optional[str] = None) -> UploadSession:
        """Create a session for `file` and start sending it to `channel_id`"""
        if not channel_id:
            raise ValidationError("A destination channel is required")
        if file.size <= 0:
            raise ValidationError(f"Cannot upload empty file {file.name}")
        if file.size > LARGE_FILE_LIMIT and not self.config.bypass_limit:
            raise FileTooLargeError(
                f"{file.name} is larger than {LARGE_FILE_LIMIT // (1024 * 1024)} MiB; "
                "enable bypass_limit to upload it anyway"
            )

        if chunk_size_mb is None:
            chunk_size_mb = self.config.chunk_size_mb
        chunk_size = chunk_size_bytes(chunk_size_mb)
        if chunk_size <= 0:
            raise ValidationError(f"Invalid chunk size: {chunk_size_mb} MB")

        session = UploadSession(
            id=self._new_id(),
            file=file,
            name=file.name,
            size=file.size,
            chunk_size=chunk_size,
            total_chunks=math.ceil(file.size / chunk_size),
            channel_id=channel_id,
        )
        self.sessions[session.id] = session
        logger.info(
            f"Upload {session.id}: {session.name} ({session.size} bytes) "
            f"in {session.total_chunks} chunks of {chunk_size} bytes"
        )
        self.emit_change()
        self._spawn(session)
        return session

    def resume_upload(self, session_id: int, file=None) -> UploadSession:
        """
        Continue a paused or failed upload
        A supplied file must match the recorded name and size.
        """
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown upload {session_id}")

        if file is not None:
            if file.name != session.name or file.size != session.size:
                raise FileMismatchError(
                    f"File mismatch: expected {session.name} ({session.size} bytes), "
                    f"got {file.name} ({file.size} bytes)"
                )
        elif session.file is None:
            raise MissingFileError(f"Upload {session_id} needs its source file reattached")

        if session.status in (UploadStatus.PENDING, UploadStatus.UPLOADING, UploadStatus.COMPLETED):
            return session

        if file is not None:
            session.file = file
        self._cancel_cooldown(session_id)
        session.cancel = CancelToken()
        session.status = UploadStatus.PENDING
        session.error = None
        logger.info(f"Resuming upload {session_id} ({len(session.completed_indices)}/{session.total_chunks} done)")
        self.emit_change()
        self._spawn(session)
        return session

    def pause_upload(self, session_id: int) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        self._cancel_cooldown(session_id)
        if session.status in TERMINAL_STATUSES:
            return False

        session.cancel.cancel("paused")
        session.status = UploadStatus.PAUSED
        logger.info(f"Paused upload {session_id}")
        self.emit_change()
        return True

    def delete_upload(self, session_id: int) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        self._cancel_cooldown(session_id)
        session.cancel.cancel("deleted")
        logger.info(f"Deleted upload {session_id}")
        self.emit_change()
        return True

    async def join(self, session_id: int) -> Optional[UploadSession]:
        """
        Wait until the upload settles
        Follows safe-mode cooldowns and the attempts they restart.
        """
        while True:
            cooldown = self._cooldowns.get(session_id)
            if cooldown is not None and not cooldown.done():
                await asyncio.wait([cooldown])
                continue
            task = self._tasks.get(session_id)
            if task is None or task.done():
                return self.sessions.get(session_id)
            await task

    async def upload_chunk(self, data: bytes, filename: str, metadata: ChunkMetadata,
                           channel_id: str, cancel: Optional[CancelToken] = None) -> Message:
        """Send one chunk: binary upload, then the carrier message"""
        if cancel is not None:
            cancel.raise_if_cancelled()
        attachment_ref = await self.transport.send_attachment(data, filename, channel_id)

        if cancel is not None:
            cancel.raise_if_cancelled()
        message = await self.transport.post_message(
            channel_id, metadata.to_json(), attachment_ref, filename, len(data)
        )
        logger.debug(f"Sent {filename} as message {message.id}")
        return message

    # --- transfer loop ---

    def _new_id(self) -> int:
        session_id = int(self.clock() * 1000)
        while session_id in self.sessions:
            session_id += 1
        return session_id

    def _spawn(self, session: UploadSession):
        self._tasks[session.id] = asyncio.ensure_future(self.process_upload(session))

    def _start_delay(self) -> float:
        return (self.config.base_delay_ms + random.uniform(0, self.config.jitter_ms)) / 1000.0

    async def process_upload(self, session: UploadSession):
        """Send every chunk not yet completed, for one attempt"""
        if session.file is None:
            return
        token = session.cancel
        if token.cancelled:
            return

        session.status = UploadStatus.UPLOADING
        session.start_time = self.clock()
        session.bytes_uploaded = session.completed_bytes()
        session.speed = 0.0
        attempt_base = session.bytes_uploaded
        self.emit_change()
        logger.info(f"Starting upload for {session.name} (ID: {session.id})")

        try:
            file_checksum = await digest_file(session.file)
            if not checksum_available(file_checksum):
                logger.warning(f"Uploading {session.name} without a file checksum")
                file_checksum = None
            token.raise_if_cancelled()

            pending = [i for i in range(session.total_chunks) if i not in session.completed_indices]

            async def worker(index: int):
                await self._upload_index(session, index, file_checksum, token, attempt_base)

            async def stagger():
                await token.sleep(self._start_delay())

            await run_bounded(
                pending,
                worker,
                lambda: self.config.upload_concurrency,
                token,
                poll_interval=self.config.poll_interval,
                before_start=stagger,
            )

        except TransferCancelled:
            return
        except RateLimitedError as e:
            if not self._is_current(session, token):
                return
            if self.config.safe_mode:
                self._enter_cooldown(session, e.retry_after)
            else:
                self._fail(session, e)
            return
        except Exception as e:
            if self._is_current(session, token):
                self._fail(session, e)
            return

        if token.cancelled:
            return

        if len(session.completed_indices) == session.total_chunks:
            session.status = UploadStatus.COMPLETED
            session.etr = 0.0
            logger.info(f"Upload complete: {session.name}")
            self.emit_change()

    async def _upload_index(self, session: UploadSession, index: int,
                            file_checksum: Optional[str], token: CancelToken,
                            attempt_base: int):
        token.raise_if_cancelled()
        start, end = session.chunk_range(index)
        data = await session.file.read_range(start, end)
        token.raise_if_cancelled()

        chunk_checksum = digest_chunk(data)
        metadata = ChunkMetadata(
            index=index,
            total=session.total_chunks,
            original_name=session.name,
            original_size=session.size,
            session_id=session.id,
            file_checksum=file_checksum,
            chunk_checksum=chunk_checksum if checksum_available(chunk_checksum) else None,
        )

        message = await self.upload_chunk(
            data, chunk_filename(session.name, index), metadata, session.channel_id, token
        )
        # Result arrived after a pause: drop it, the index is resent on resume
        token.raise_if_cancelled()

        session.completed_indices.add(index)
        session.last_message_id = message.id
        session.bytes_uploaded = session.completed_bytes()

        elapsed = self.clock() - session.start_time
        if elapsed > 0:
            session.speed = (session.bytes_uploaded - attempt_base) / elapsed
            remaining = session.size - session.bytes_uploaded
            session.etr = remaining / session.speed if session.speed > 0 else 0.0

        logger.debug(f"Upload {session.id}: chunk {index + 1}/{session.total_chunks} done")
        self.emit_change()

    def _is_current(self, session: UploadSession, token: CancelToken) -> bool:
        return (
            self.sessions.get(session.id) is session
            and session.cancel is token
            and session.status is UploadStatus.UPLOADING
        )

    def _fail(self, session: UploadSession, error: Exception):
        session.cancel.cancel("error")
        session.status = UploadStatus.ERROR
        session.error = str(error) or error.__class__.__name__
        logger.error(f"Upload {session.id} failed: {session.error}")
        self.emit_change()

    # --- safe mode ---

    def _enter_cooldown(self, session: UploadSession, retry_after: float):
        seconds = max(self.config.cooldown_seconds, retry_after or 0.0)
        session.cancel.cancel("rate limited")
        session.status = UploadStatus.PAUSED
        session.error = f"Rate limited, cooling down for {seconds:.0f}s"
        logger.warning(f"Upload {session.id} rate limited; pausing for {seconds:.1f}s")
        self.emit_change()
        self._cooldowns[session.id] = asyncio.ensure_future(self._cooldown(session.id, seconds))

    async def _cooldown(self, session_id: int, seconds: float):
        await asyncio.sleep(seconds)
        self._cooldowns.pop(session_id, None)

        session = self.sessions.get(session_id)
        if session is None or session.status is not UploadStatus.PAUSED or session.file is None:
            return
        logger.info(f"Cooldown over for upload {session_id}, resuming")
        self.resume_upload(session_id)

    def _cancel_cooldown(self, session_id: int):
        task = self._cooldowns.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
