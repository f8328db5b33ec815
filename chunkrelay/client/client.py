"""Chunk relay client"""

import asyncio
from pathlib import Path
from typing import List, Optional, Union
import logging

from ..config import TransferConfig
from ..exceptions import TransferError
from ..integrity.repair import RepairEngine, RepairState
from ..network.transport import ChatTransport
from ..sync.registry import ChunkRegistry
from ..sync.scanner import LiveDiscovery, Scanner
from ..sync.state import MemoryBlobStore
from ..transfer.download import DownloadEngine, DownloadStatus
from ..transfer.files import LocalFile
from ..transfer.upload import UploadEngine, UploadSession, UploadStatus

logger = logging.getLogger(__name__)


class RelayClient:
    """
    One registry and one set of engines per process
    Owns the expiry sweep and wires live discovery to the transport.
    """

    def __init__(self, transport: ChatTransport, config: Optional[TransferConfig] = None,
                 state_store=None):
        self.transport = transport
        self.config = config or TransferConfig()
        self.state_store = state_store or MemoryBlobStore()

        self.registry = ChunkRegistry(session_timeout=self.config.session_timeout)
        self.uploads = UploadEngine(transport, self.state_store, self.config)
        self.downloads = DownloadEngine(self.registry, transport, self.config)
        self.repairs = RepairEngine(self.registry, transport, self.uploads, self.config)
        self.scanner = Scanner(
            self.registry, transport,
            page_size=self.config.scan_page_size,
            page_delay=self.config.scan_page_delay,
        )
        self.discovery = LiveDiscovery(self.registry, transport)

        self._stop: Optional[asyncio.Event] = None
        self._sweeper: Optional[asyncio.Task] = None

    async def start(self):
        """Restore persisted uploads and start background upkeep"""
        restored = self.uploads.load_state()
        self.discovery.attach()
        self._stop = asyncio.Event()
        self._sweeper = asyncio.ensure_future(
            self.registry.run_sweeper(self.config.sweep_interval, self._stop)
        )
        logger.info(f"Client started ({restored} resumable uploads)")

    async def close(self):
        """Pause running transfers, stop the sweeper and the transport"""
        for session in self.uploads.get_sessions():
            if session.status in (UploadStatus.PENDING, UploadStatus.UPLOADING):
                self.uploads.pause_upload(session.id)
        for state in self.downloads.get_downloads():
            if state.status in (DownloadStatus.PENDING, DownloadStatus.DOWNLOADING):
                self.downloads.pause_download(state.session_id)

        if self._stop is not None:
            self._stop.set()
        if self._sweeper is not None:
            await self._sweeper
            self._sweeper = None

        self.discovery.detach()
        await self.transport.close()
        logger.info("Client closed")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def upload_file(self, path: Union[str, Path], channel_id: str,
                          chunk_size_mb: Optional[float] = None) -> UploadSession:
        session = self.uploads.start_upload(LocalFile(path), chunk_size_mb, channel_id)
        return await self.uploads.join(session.id)

    async def resume_file(self, session_id: int, path: Union[str, Path]) -> UploadSession:
        self.uploads.resume_upload(session_id, LocalFile(path))
        return await self.uploads.join(session_id)

    async def scan(self, channel_id: str, limit: int) -> int:
        return await self.scanner.scan_channel(channel_id, limit)

    async def download_file(self, session_id: int, destination: Union[str, Path]) -> Path:
        """Download a session and write it to `destination`"""
        self.downloads.start_download(session_id)
        state = await self.downloads.join(session_id)
        if state is None or state.status is not DownloadStatus.COMPLETED:
            error = state.error if state is not None else "cancelled"
            raise TransferError(f"Download of session {session_id} did not complete: {error}")
        return await self.downloads.save_file_to_disk(session_id, destination)

    async def verify_file(self, session_id: int, path: Union[str, Path]) -> List[int]:
        return await self.repairs.verify_session_against_file(session_id, LocalFile(path))

    async def repair_file(self, session_id: int, path: Union[str, Path]) -> RepairState:
        return await self.repairs.repair_session(session_id, LocalFile(path))
