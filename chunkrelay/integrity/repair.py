"""
integrity/repair.py - Verification and selective re-upload
Compares a session's remote chunks with a local reference file and
replaces only the chunks that differ
"""

import asyncio
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import logging

from ..config import DEFAULT_CHUNK_SIZE_MB, TransferConfig, chunk_size_bytes
from ..exceptions import FileMismatchError, SessionNotFoundError, ValidationError
from ..network.protocol import ChunkMetadata, chunk_filename
from ..network.transport import ChatTransport
from ..sync.registry import ChunkRecord, ChunkRegistry, Session
from ..sync.scanner import chunk_record_from_message
from ..transfer.cancel import CancelToken
from ..transfer.pool import run_bounded
from .checksum import checksum_available, digest_chunk

logger = logging.getLogger(__name__)

# Chunk sizes that have been offered over time (MB), smallest first
CHUNK_SIZE_LADDER_MB = (8, 9.5, 9.9, 10, 24, 24.9, 25, 49, 50, 99, 100, 499, 500)


def chunk_size_candidates(file_size: int, total_chunks: int) -> List[int]:
    """Every ladder size (bytes) that splits `file_size` into `total_chunks`"""
    candidates = []
    for mb in CHUNK_SIZE_LADDER_MB:
        size = chunk_size_bytes(mb)
        if math.ceil(file_size / size) == total_chunks:
            candidates.append(size)
    return candidates


def infer_chunk_size(file_size: int, total_chunks: int) -> int:
    """
    Guess the chunk size a session was uploaded with
    Picks the smallest matching ladder entry, so sizes that several
    entries explain are ambiguous.
    """
    candidates = chunk_size_candidates(file_size, total_chunks)
    if len(candidates) > 1:
        logger.debug(f"Chunk size ambiguous for {file_size} bytes / {total_chunks} chunks: {candidates}")
    if candidates:
        return candidates[0]
    return chunk_size_bytes(DEFAULT_CHUNK_SIZE_MB)


class RepairStatus(Enum):
    VERIFYING = "verifying"
    REPAIRING = "repairing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RepairState:
    session_id: int
    status: RepairStatus = RepairStatus.VERIFYING
    total_bad_chunks: int = 0
    repaired_chunks: int = 0
    error: Optional[str] = None


class RepairEngine:
    """
    Finds and replaces corrupt or missing chunks
    Replacements go through the upload engine's single-chunk send and
    keep the original session id, so downloads pick them up unchanged.
    """

    def __init__(self, registry: ChunkRegistry, transport: ChatTransport, uploader,
                 config: Optional[TransferConfig] = None):
        self.registry = registry
        self.transport = transport
        self.uploader = uploader
        self.config = config or TransferConfig()

        self.repairs: Dict[int, RepairState] = {}
        self._listeners: List[Callable[[], None]] = []

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
                logger.error(f"Repair listener failed: {e}", exc_info=True)

    def get_repair(self, session_id: int) -> Optional[RepairState]:
        return self.repairs.get(session_id)

    def _get_session(self, session_id: int) -> Session:
        session = self.registry.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown session {session_id}")
        return session

    async def verify_session_against_file(self, session_id: int, reference) -> List[int]:
        """Indices whose remote bytes are missing or differ from `reference`"""
        session = self._get_session(session_id)
        bad, _, _ = await self._verify(session, reference)
        return bad

    async def _fetch(self, record: ChunkRecord) -> Optional[bytes]:
        try:
            return await self.transport.fetch_bytes(record.source_location)
        except Exception as e:
            logger.warning(f"Could not fetch chunk {record.index + 1}/{record.total}: {e}")
            return None

    def _nominal_chunk_size(self, session: Session, reference,
                            first: Optional[bytes]) -> Tuple[int, bool]:
        """Chunk size and whether it was measured rather than guessed"""
        if session.total_chunks == 1 and reference.size > 0:
            return reference.size, True
        if first and math.ceil(session.size / len(first)) == session.total_chunks:
            return len(first), True
        return infer_chunk_size(session.size, session.total_chunks), False

    async def _verify(self, session: Session, reference) -> Tuple[List[int], int, bool]:
        total = session.total_chunks
        records = {c.index: c for c in session.chunks}

        fetched: Dict[int, Optional[bytes]] = {}
        if 0 in records:
            fetched[0] = await self._fetch(records[0])
        chunk_size, measured = self._nominal_chunk_size(session, reference, fetched.get(0))
        logger.info(
            f"Verifying {session.name} against {getattr(reference, 'name', 'reference')} "
            f"({total} chunks of {chunk_size} bytes{'' if measured else ', inferred'})"
        )

        bad = set()

        async def check(index: int):
            record = records.get(index)
            if record is None:
                logger.warning(f"Chunk {index + 1}/{total} of {session.name} is missing")
                bad.add(index)
                return

            data = fetched.pop(index) if index in fetched else await self._fetch(record)
            if not data:
                bad.add(index)
                return

            start = index * chunk_size
            local = await reference.read_range(start, min(start + chunk_size, reference.size))
            if len(local) != len(data):
                logger.warning(
                    f"Chunk {index + 1}/{total} size mismatch: remote {len(data)}, local {len(local)}"
                )
                bad.add(index)
            elif digest_chunk(local) != digest_chunk(data):
                logger.warning(f"Chunk {index + 1}/{total} of {session.name} is corrupt")
                bad.add(index)

        await run_bounded(
            range(total),
            check,
            lambda: self.config.download_concurrency,
            CancelToken(),
            poll_interval=self.config.poll_interval,
        )
        return sorted(bad), chunk_size, measured

    async def repair_session(self, session_id: int, reference) -> RepairState:
        """Verify, then re-send every bad chunk from `reference`"""
        session = self._get_session(session_id)
        if reference.size != session.size:
            raise FileMismatchError(
                f"Reference is {reference.size} bytes, session {session.name} is {session.size}"
            )

        state = RepairState(session_id=session_id)
        self.repairs[session_id] = state
        self.emit_change()

        try:
            bad, chunk_size, measured = await self._verify(session, reference)
            state.total_bad_chunks = len(bad)
            if not bad:
                logger.info(f"{session.name}: all {session.total_chunks} chunks verified")
                self._finish(state)
                return state

            if not measured:
                logger.warning(
                    f"Repairing {session.name} with inferred chunk size {chunk_size} "
                    f"(candidates: {chunk_size_candidates(session.size, session.total_chunks)})"
                )

            state.status = RepairStatus.REPAIRING
            logger.info(f"Repairing {len(bad)} chunks of {session.name}: {[i + 1 for i in bad]}")
            self.emit_change()

            for index in bad:
                self.registry.remove_chunk_by_index(session_id, index)

            file_checksum = session.file_checksum
            for position, index in enumerate(bad):
                if position > 0:
                    await asyncio.sleep(self.config.repair_delay)
                await self._resend(session, reference, index, chunk_size, file_checksum)
                state.repaired_chunks += 1
                self.emit_change()

            self._finish(state)
        except Exception as e:
            state.status = RepairStatus.FAILED
            state.error = str(e) or e.__class__.__name__
            logger.error(f"Repair of {session.name} failed: {state.error}")
            self.emit_change()

        return state

    async def _resend(self, session: Session, reference, index: int,
                      chunk_size: int, file_checksum: Optional[str]):
        start = index * chunk_size
        data = await reference.read_range(start, min(start + chunk_size, reference.size))
        if not data:
            raise ValidationError(f"Reference file has no bytes for chunk {index + 1}")

        chunk_checksum = digest_chunk(data)
        metadata = ChunkMetadata(
            index=index,
            total=session.total_chunks,
            original_name=session.name,
            original_size=session.size,
            session_id=session.id,
            file_checksum=file_checksum if checksum_available(file_checksum) else None,
            chunk_checksum=chunk_checksum if checksum_available(chunk_checksum) else None,
        )
        message = await self.uploader.upload_chunk(
            data, chunk_filename(session.name, index), metadata, session.channel_id
        )

        record = chunk_record_from_message(message)
        if record is not None:
            self.registry.add_chunk(record, message.channel_id or session.channel_id, message.author)
        logger.info(f"Replaced chunk {index + 1}/{session.total_chunks} of {session.name}")

    def _finish(self, state: RepairState):
        state.status = RepairStatus.COMPLETED
        self.emit_change()
        asyncio.get_running_loop().call_later(self.config.repair_linger, self._discard, state)

    def _discard(self, state: RepairState):
        if self.repairs.get(state.session_id) is state:
            del self.repairs[state.session_id]
            self.emit_change()
