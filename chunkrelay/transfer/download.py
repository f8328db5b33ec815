"""
transfer/download.py - Chunk retrieval and reassembly
Pulls every chunk of a complete session, merges them by index and
verifies the result against the uploader's checksum
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Union
import logging

import aiofiles

from ..config import TransferConfig
from ..exceptions import (
    ChunkFetchError,
    IncompleteSessionError,
    SessionNotFoundError,
    TransferCancelled,
    TransferError,
)
from ..integrity.checksum import checksum_available, digest_whole
from ..network.transport import ChatTransport
from ..sync.registry import ChunkRegistry
from .cancel import CancelToken
from .pool import run_bounded

logger = logging.getLogger(__name__)


class DownloadStatus(Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class ChecksumResult(Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


@dataclass
class DownloadState:
    """Progress and resume cache for one session being downloaded"""
    session_id: int
    name: str
    total_chunks: int
    total_bytes: int
    status: DownloadStatus = DownloadStatus.PENDING
    chunks_downloaded: Set[int] = field(default_factory=set)
    bytes_downloaded: int = 0
    start_time: float = 0.0
    speed: float = 0.0
    etr: float = 0.0
    buffers: Dict[int, bytes] = field(default_factory=dict)
    sources: Dict[int, str] = field(default_factory=dict)
    result: Optional[bytes] = None
    checksum_result: Optional[ChecksumResult] = None
    error: Optional[str] = None
    cancel: CancelToken = field(default_factory=CancelToken)

    @property
    def progress(self) -> float:
        if not self.total_chunks:
            return 0.0
        return len(self.chunks_downloaded) / self.total_chunks


class DownloadEngine:
    """Downloads complete sessions from the registry"""

    def __init__(self, registry: ChunkRegistry, transport: ChatTransport,
                 config: Optional[TransferConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.registry = registry
        self.transport = transport
        self.config = config or TransferConfig()
        self.clock = clock

        self.downloads: Dict[int, DownloadState] = {}
        self._listeners: List[Callable[[], None]] = []
        self._tasks: Dict[int, asyncio.Task] = {}

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
                logger.error(f"Download listener failed: {e}", exc_info=True)

    def get_download(self, session_id: int) -> Optional[DownloadState]:
        return self.downloads.get(session_id)

    def get_downloads(self) -> List[DownloadState]:
        return list(self.downloads.values())

    def start_download(self, session_id: int) -> DownloadState:
        """Start or resume downloading a session"""
        session = self.registry.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown session {session_id}")
        if not session.is_complete:
            raise IncompleteSessionError(
                f"Session {session_id} is incomplete: "
                f"{len(session.chunks)}/{session.total_chunks} chunks found"
            )

        state = self.downloads.get(session_id)
        if state is not None and state.status in (
            DownloadStatus.PENDING, DownloadStatus.DOWNLOADING, DownloadStatus.MERGING,
        ):
            return state
        if state is not None:
            replaced = self._drop_stale(state, session)
            if state.status is DownloadStatus.COMPLETED and not replaced:
                return state

        if state is None:
            state = DownloadState(
                session_id=session_id,
                name=session.name,
                total_chunks=session.total_chunks,
                total_bytes=session.size,
            )
            self.downloads[session_id] = state
            logger.info(f"Downloading {session.name} ({session.total_chunks} chunks)")
        else:
            logger.info(
                f"Resuming download of {state.name} "
                f"({len(state.chunks_downloaded)}/{state.total_chunks} cached)"
            )

        state.cancel = CancelToken()
        state.status = DownloadStatus.PENDING
        state.error = None
        state.result = None
        state.checksum_result = None
        self.emit_change()
        self._tasks[session_id] = asyncio.ensure_future(self.process_download(state))
        return state

    def pause_download(self, session_id: int) -> bool:
        state = self.downloads.get(session_id)
        if state is None or state.status not in (DownloadStatus.PENDING, DownloadStatus.DOWNLOADING):
            return False
        state.cancel.cancel("paused")
        state.status = DownloadStatus.PAUSED
        logger.info(f"Paused download of {state.name}")
        self.emit_change()
        return True

    def cancel_download(self, session_id: int) -> bool:
        """Stop a download and drop its cached chunks"""
        state = self.downloads.pop(session_id, None)
        if state is None:
            return False
        state.cancel.cancel("cancelled")
        logger.info(f"Cancelled download of {state.name}")
        self.emit_change()
        return True

    async def join(self, session_id: int) -> Optional[DownloadState]:
        task = self._tasks.get(session_id)
        if task is not None:
            await task
        return self.downloads.get(session_id)

    async def process_download(self, state: DownloadState):
        token = state.cancel
        if token.cancelled:
            return

        session = self.registry.get_session(state.session_id)
        if session is None or not session.is_complete:
            self._fail(state, IncompleteSessionError(f"Session {state.session_id} is no longer complete"))
            return
        records = {c.index: c for c in session.chunks}
        expected_checksum = session.file_checksum

        state.status = DownloadStatus.DOWNLOADING
        state.start_time = self.clock()
        attempt_base = state.bytes_downloaded
        self.emit_change()

        async def worker(index: int):
            token.raise_if_cancelled()
            record = records[index]
            data = await self.transport.fetch_bytes(record.source_location)
            # Late result from a paused/cancelled attempt
            token.raise_if_cancelled()
            if not data:
                raise ChunkFetchError(f"Failed to fetch chunk {index + 1}/{state.total_chunks}")

            state.buffers[index] = data
            state.sources[index] = record.source_location
            state.chunks_downloaded.add(index)
            state.bytes_downloaded = sum(len(b) for b in state.buffers.values())

            elapsed = self.clock() - state.start_time
            if elapsed > 0:
                state.speed = (state.bytes_downloaded - attempt_base) / elapsed
                remaining = max(state.total_bytes - state.bytes_downloaded, 0)
                state.etr = remaining / state.speed if state.speed > 0 else 0.0

            logger.debug(f"Downloaded chunk {index + 1}/{state.total_chunks} of {state.name}")
            self.emit_change()

        pending = [i for i in range(state.total_chunks) if i not in state.buffers]
        try:
            await run_bounded(
                pending,
                worker,
                lambda: self.config.download_concurrency,
                token,
                poll_interval=self.config.poll_interval,
            )
        except TransferCancelled:
            return
        except Exception as e:
            if self._is_current(state, token):
                self._fail(state, e)
            return

        if token.cancelled or not self._is_current(state, token):
            return

        self._merge(state, expected_checksum)

    def _merge(self, state: DownloadState, expected_checksum: Optional[str]):
        missing = [i for i in range(state.total_chunks) if i not in state.buffers]
        if missing:
            self._fail(state, IncompleteSessionError(f"Cannot merge, missing chunks {missing}"))
            return

        state.status = DownloadStatus.MERGING
        self.emit_change()

        result = b"".join(state.buffers[i] for i in range(state.total_chunks))

        if not checksum_available(expected_checksum):
            state.checksum_result = ChecksumResult.SKIPPED
        else:
            actual = digest_whole(result)
            if not checksum_available(actual):
                state.checksum_result = ChecksumResult.SKIPPED
            elif actual == expected_checksum:
                state.checksum_result = ChecksumResult.PASS
            else:
                state.checksum_result = ChecksumResult.FAIL
                logger.warning(f"Checksum mismatch for {state.name}: file may be corrupt")

        state.result = result
        state.status = DownloadStatus.COMPLETED
        state.etr = 0.0
        logger.info(
            f"Download complete: {state.name} ({len(result)} bytes, "
            f"checksum {state.checksum_result.value})"
        )
        self.emit_change()

    def _drop_stale(self, state: DownloadState, session) -> int:
        """Forget cached chunks whose registry record now points elsewhere"""
        current = {c.index: c.source_location for c in session.chunks}
        stale = [i for i in state.buffers if state.sources.get(i) != current.get(i)]
        for index in stale:
            del state.buffers[index]
            state.sources.pop(index, None)
            state.chunks_downloaded.discard(index)
        if stale:
            state.bytes_downloaded = sum(len(b) for b in state.buffers.values())
            logger.info(f"{state.name}: {len(stale)} cached chunks were replaced, fetching again")
        return len(stale)

    def _is_current(self, state: DownloadState, token: CancelToken) -> bool:
        return (
            self.downloads.get(state.session_id) is state
            and state.cancel is token
            and state.status is DownloadStatus.DOWNLOADING
        )

    def _fail(self, state: DownloadState, error: Exception):
        state.cancel.cancel("error")
        state.status = DownloadStatus.ERROR
        state.error = str(error) or error.__class__.__name__
        logger.error(f"Download of {state.name} failed: {state.error}")
        self.emit_change()

    async def save_file_to_disk(self, session_id: int, destination: Union[str, Path]) -> Path:
        """
        Write a finished download
        `destination` may be a directory, in which case the original
        file name is used.
        """
        state = self.downloads.get(session_id)
        if state is None or state.result is None:
            raise TransferError(f"Download {session_id} has not finished")

        path = Path(destination)
        if path.is_dir():
            path = path / Path(state.name).name
        path.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(path, 'wb') as f:
            await f.write(state.result)

        logger.info(f"Saved {state.name} to {path}")
        return path
