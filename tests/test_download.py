"""Download engine"""

import asyncio

import pytest
from chunkrelay.exceptions import IncompleteSessionError, SessionNotFoundError, TransferError
from chunkrelay.transfer.download import ChecksumResult, DownloadEngine, DownloadStatus

from conftest import FakeTransport, index_messages, pattern_bytes, publish_file

CHANNEL = "chan-1"
SESSION = 1700000000000


class ReversedLatencyTransport(FakeTransport):
    """Earlier parts take longer, so workers finish out of order"""

    async def fetch_bytes(self, url):
        part = int(url.rsplit("part", 1)[1])
        await asyncio.sleep(0.01 * (6 - part))
        return await super().fetch_bytes(url)


class TestDownloadEngine:
    """Fetching, merging and verification"""

    @pytest.fixture
    def engine(self, registry, transport, fast_config):
        return DownloadEngine(registry, transport, fast_config)

    @pytest.mark.asyncio
    async def test_download_and_merge(self, engine, registry, transport):
        data = pattern_bytes(25)
        index_messages(registry, await publish_file(transport, CHANNEL, "a.bin", data, 10))

        engine.start_download(SESSION)
        state = await engine.join(SESSION)

        assert state.status is DownloadStatus.COMPLETED
        assert state.result == data
        assert state.checksum_result is ChecksumResult.PASS
        assert state.bytes_downloaded == 25
        assert state.chunks_downloaded == {0, 1, 2}
        assert state.progress == 1.0

    @pytest.mark.asyncio
    async def test_merge_follows_index_not_completion_order(self, registry, fast_config):
        transport = ReversedLatencyTransport()
        data = pattern_bytes(50, seed=3)
        index_messages(registry, await publish_file(transport, CHANNEL, "a.bin", data, 10))

        completion = []
        engine = DownloadEngine(registry, transport, fast_config)
        engine.add_listener(lambda: completion.append(sorted(engine.get_download(SESSION).chunks_downloaded)))
        engine.start_download(SESSION)
        state = await engine.join(SESSION)

        assert state.result == data
        assert [0] not in completion  # part 1 is the slowest
        assert state.checksum_result is ChecksumResult.PASS

    @pytest.mark.asyncio
    async def test_fetch_without_data_fails_the_download(self, engine, registry, transport):
        messages = await publish_file(transport, CHANNEL, "a.bin", pattern_bytes(30), 10)
        index_messages(registry, messages)
        transport.failing_urls.add(messages[1].attachments[0].url)

        engine.start_download(SESSION)
        state = await engine.join(SESSION)

        assert state.status is DownloadStatus.ERROR
        assert "chunk 2/3" in state.error
        assert state.result is None
        assert state.checksum_result is None

    @pytest.mark.asyncio
    async def test_incomplete_session_is_rejected(self, engine, registry, transport):
        messages = await publish_file(transport, CHANNEL, "a.bin", pattern_bytes(30), 10)
        index_messages(registry, messages[:2])

        with pytest.raises(IncompleteSessionError, match="2/3"):
            engine.start_download(SESSION)
        assert engine.get_download(SESSION) is None
        assert engine.get_downloads() == []

    def test_unknown_session(self, engine):
        with pytest.raises(SessionNotFoundError):
            engine.start_download(1)

    @pytest.mark.asyncio
    async def test_checksum_mismatch_still_completes(self, engine, registry, transport):
        data = pattern_bytes(30)
        index_messages(registry, await publish_file(
            transport, CHANNEL, "a.bin", data, 10, file_checksum="0" * 64
        ))

        engine.start_download(SESSION)
        state = await engine.join(SESSION)

        assert state.status is DownloadStatus.COMPLETED
        assert state.checksum_result is ChecksumResult.FAIL
        assert state.result == data

    @pytest.mark.asyncio
    async def test_missing_checksum_is_skipped(self, engine, registry, transport):
        index_messages(registry, await publish_file(
            transport, CHANNEL, "a.bin", pattern_bytes(30), 10, file_checksum=None
        ))

        engine.start_download(SESSION)
        state = await engine.join(SESSION)
        assert state.checksum_result is ChecksumResult.SKIPPED

    @pytest.mark.asyncio
    async def test_pause_and_resume_reuses_cache(self, registry, transport, fast_config):
        fast_config.parallel_downloads = False
        data = pattern_bytes(30)
        messages = await publish_file(transport, CHANNEL, "a.bin", data, 10)
        index_messages(registry, messages)

        engine = DownloadEngine(registry, transport, fast_config)
        paused = []

        def pause_after_first():
            state = engine.get_download(SESSION)
            if state and len(state.chunks_downloaded) == 1 and not paused:
                paused.append(True)
                engine.pause_download(SESSION)

        engine.add_listener(pause_after_first)
        engine.start_download(SESSION)
        state = await engine.join(SESSION)

        assert state.status is DownloadStatus.PAUSED
        assert state.chunks_downloaded == {0}
        assert state.result is None

        engine.start_download(SESSION)
        state = await engine.join(SESSION)

        assert state.status is DownloadStatus.COMPLETED
        assert state.result == data
        assert transport.fetched.count(messages[0].attachments[0].url) == 1

    @pytest.mark.asyncio
    async def test_cancel_drops_state(self, engine, registry, transport):
        index_messages(registry, await publish_file(transport, CHANNEL, "a.bin", pattern_bytes(30), 10))

        engine.start_download(SESSION)
        assert engine.cancel_download(SESSION)
        await asyncio.sleep(0.05)

        assert engine.get_download(SESSION) is None
        assert not engine.cancel_download(SESSION)
        assert not engine.pause_download(SESSION)

    @pytest.mark.asyncio
    async def test_save_file_to_disk(self, engine, registry, transport, temp_dir):
        data = pattern_bytes(30)
        index_messages(registry, await publish_file(transport, CHANNEL, "report.pdf", data, 10))

        with pytest.raises(TransferError):
            await engine.save_file_to_disk(SESSION, temp_dir)

        engine.start_download(SESSION)
        await engine.join(SESSION)

        path = await engine.save_file_to_disk(SESSION, temp_dir)
        assert path == temp_dir / "report.pdf"
        assert path.read_bytes() == data

        renamed = await engine.save_file_to_disk(SESSION, temp_dir / "out" / "copy.pdf")
        assert renamed.read_bytes() == data
