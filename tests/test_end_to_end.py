"""Full round trips through the client"""

import asyncio
import json

import pytest
from chunkrelay.client import RelayClient
from chunkrelay.config import MIB
from chunkrelay.exceptions import IncompleteSessionError
from chunkrelay.integrity.repair import RepairStatus
from chunkrelay.sync.state import JsonFileBlobStore
from chunkrelay.transfer.download import ChecksumResult, DownloadStatus
from chunkrelay.transfer.files import LocalFile
from chunkrelay.transfer.upload import UploadStatus

from conftest import BytesFile, pattern_bytes, publish_file

CHANNEL = "chan-1"


class TestLargeFileRoundTrip:
    """Upload, discover, download, verify and repair a 30 MB file"""

    @pytest.mark.asyncio
    async def test_round_trip(self, transport, fast_config, temp_dir):
        data = pattern_bytes(30_000_000)

        async with RelayClient(transport, fast_config) as sender:
            session = sender.uploads.start_upload(BytesFile("big.bin", data), 10, CHANNEL)
            assert session.total_chunks == 3

            session = await sender.uploads.join(session.id)
            assert session.status is UploadStatus.COMPLETED
            assert session.bytes_uploaded == 30_000_000
            assert len(transport.messages(CHANNEL)) == 3

        async with RelayClient(transport, fast_config) as receiver:
            await receiver.scan(CHANNEL, 50)
            sessions = receiver.registry.get_sessions(CHANNEL)
            assert len(sessions) == 1
            found = sessions[0]
            assert found.id == session.id
            assert found.is_complete
            assert found.total_chunks == 3
            assert len(found.chunks) == 3

            path = await receiver.download_file(found.id, temp_dir)
            assert path.read_bytes() == data
            assert receiver.downloads.get_download(found.id).checksum_result is ChecksumResult.PASS

            corrupted = bytearray(data)
            corrupted[10 * 1024 * 1024 + 5] ^= 0xFF
            reference = BytesFile("big.bin", bytes(corrupted))

            assert await receiver.repairs.verify_session_against_file(found.id, reference) == [1]

            state = await receiver.repairs.repair_session(found.id, reference)
            assert state.status is RepairStatus.COMPLETED
            assert state.repaired_chunks == 1
            assert len(transport.messages(CHANNEL)) == 4

            assert await receiver.repairs.verify_session_against_file(found.id, reference) == []

    @pytest.mark.asyncio
    async def test_incomplete_session_cannot_download(self, transport, fast_config):
        messages = await publish_file(transport, CHANNEL, "a.bin", pattern_bytes(30), 10)
        transport.channels[CHANNEL] = [m for m in messages if m.id != messages[1].id]

        async with RelayClient(transport, fast_config) as client:
            await client.scan(CHANNEL, 50)
            with pytest.raises(IncompleteSessionError):
                client.downloads.start_download(1700000000000)
            assert client.downloads.get_download(1700000000000) is None

    @pytest.mark.asyncio
    async def test_failed_fetch_stops_download(self, transport, fast_config):
        messages = await publish_file(transport, CHANNEL, "a.bin", pattern_bytes(30), 10)
        transport.failing_urls.add(messages[2].attachments[0].url)

        async with RelayClient(transport, fast_config) as client:
            await client.scan(CHANNEL, 50)
            client.downloads.start_download(1700000000000)
            state = await client.downloads.join(1700000000000)

            assert state.status is DownloadStatus.ERROR
            assert state.result is None


    @pytest.mark.asyncio
    async def test_download_after_repair_refetches_replaced_chunks(self, transport, fast_config):
        data = pattern_bytes(30)
        messages = await publish_file(transport, CHANNEL, "a.bin", data, 10)
        url = messages[1].attachments[0].url
        transport.blobs[url] = bytes(b ^ 0xFF for b in transport.blobs[url])

        async with RelayClient(transport, fast_config) as client:
            await client.scan(CHANNEL, 50)
            client.downloads.start_download(1700000000000)
            state = await client.downloads.join(1700000000000)
            assert state.checksum_result is ChecksumResult.FAIL

            repair = await client.repairs.repair_session(1700000000000, BytesFile("a.bin", data))
            assert repair.repaired_chunks == 1

            fetched = len(transport.fetched)
            client.downloads.start_download(1700000000000)
            state = await client.downloads.join(1700000000000)

            assert state.status is DownloadStatus.COMPLETED
            assert state.checksum_result is ChecksumResult.PASS
            assert state.result == data
            assert len(transport.fetched) == fetched + 1

            # nothing changed since, so the finished download is reused
            assert client.downloads.start_download(1700000000000) is state
            assert len(transport.fetched) == fetched + 1

class TestClientFiles:
    """Files on disk and persisted state"""

    @pytest.mark.asyncio
    async def test_upload_and_download_local_file(self, transport, fast_config, temp_dir):
        source = temp_dir / "photo.jpg"
        data = pattern_bytes(3_000_000, seed=9)
        source.write_bytes(data)

        async with RelayClient(transport, fast_config) as client:
            session = await client.upload_file(source, CHANNEL, chunk_size_mb=1)
            assert session.status is UploadStatus.COMPLETED
            assert session.total_chunks == 3

            # picked up through the live message hook
            assert client.registry.get_session(session.id).is_complete

            out = await client.download_file(session.id, temp_dir / "copy.jpg")
            assert out == temp_dir / "copy.jpg"
            assert out.read_bytes() == data

            assert await client.verify_file(session.id, source) == []

    @pytest.mark.asyncio
    async def test_close_pauses_and_persists_uploads(self, transport, fast_config, temp_dir):
        state_file = temp_dir / "state" / "uploads.json"
        source = temp_dir / "a.bin"
        source.write_bytes(pattern_bytes(40))
        transport.send_delay = 0.05

        client = RelayClient(transport, fast_config, JsonFileBlobStore(state_file))
        await client.start()
        session = client.uploads.start_upload(LocalFile(source), 10 / MIB, CHANNEL)
        await asyncio.sleep(0.08)
        await client.close()
        await client.uploads.join(session.id)

        saved = json.loads(state_file.read_text())
        assert saved[str(session.id)]['status'] == 'paused'

        transport.send_delay = 0
        async with RelayClient(transport, fast_config, JsonFileBlobStore(state_file)) as restarted:
            restored = restarted.uploads.get_session(session.id)
            assert restored.status is UploadStatus.PAUSED
            assert restored.completed_indices == session.completed_indices

            resumed = await restarted.resume_file(session.id, source)
            assert resumed.status is UploadStatus.COMPLETED

        assert json.loads(state_file.read_text()) == {}
