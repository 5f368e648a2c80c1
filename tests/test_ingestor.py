"""
Streaming Ingestor 테스트
"""
import asyncio

import httpx
import pytest

from gcode_simulator.command_store import CommandStore
from gcode_simulator.config import PlaybackConfig
from gcode_simulator.errors import IngestionError
from gcode_simulator.ingestor import StreamingIngestor, ingest_source
from gcode_simulator.sources import UrlChunkSource, stream_from_bytes, stream_from_file, stream_from_string


class TestStreamingIngestor:

    @pytest.mark.asyncio
    async def test_tiny_chunks_split_lines_and_utf8(self):
        """청크 경계가 라인/멀티바이트 문자 중간에 걸려도 동일하게 파싱"""
        content = "G1 X1\n; 한글 주석\nG1 X2\r\nG1 X3".encode("utf-8")
        store = CommandStore()
        ingestor = StreamingIngestor(store, config=PlaybackConfig(chunk_size=3))

        count = await ingestor.ingest(stream_from_bytes(content, 3), total_bytes=len(content))

        assert count == 3
        assert [c.params["X"] for c in store.slice(0, 3)] == [1.0, 2.0, 3.0]
        assert [c.line_number for c in store.slice(0, 3)] == [1, 3, 4]
        assert store.is_finished
        assert ingestor.lines_seen == 4

    @pytest.mark.asyncio
    async def test_lone_carriage_returns(self):
        store = CommandStore()
        await ingest_source(store, [b"G1 X1\r", b"G1 X2\r"])
        assert store.loaded_count == 2

    @pytest.mark.asyncio
    async def test_async_source(self):
        async def source():
            yield b"G28\nG1 X5"
            await asyncio.sleep(0)
            yield b"\nM107\n"

        store = CommandStore()
        await ingest_source(store, source())
        assert [c.command for c in store.slice(0, 10)] == ["G28", "G1", "M107"]

    @pytest.mark.asyncio
    async def test_large_chunks_are_rechunked(self):
        content = "\n".join(f"G1 X{i}" for i in range(200)).encode()
        chunks_seen = []
        store = CommandStore()
        ingestor = StreamingIngestor(
            store, config=PlaybackConfig(chunk_size=64), on_chunk=chunks_seen.append,
        )
        await ingestor.ingest([content])
        assert store.loaded_count == 200
        assert len(chunks_seen) > 10

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_completes(self):
        content = "\n".join(f"G1 X{i} E0.1" for i in range(500)).encode()
        progress = []
        store = CommandStore()
        ingestor = StreamingIngestor(store, config=PlaybackConfig(chunk_size=256), on_progress=progress.append)
        await ingestor.ingest(stream_from_bytes(content, 256), total_bytes=len(content))

        assert progress == sorted(progress)
        assert progress[-1] == 100.0

    @pytest.mark.asyncio
    async def test_total_never_decreases_while_streaming(self):
        lines = []
        for i in range(300):
            lines.append(f"G1 X{i}")
            if i % 3 == 0:
                lines.append("; comment")
        content = "\n".join(lines).encode()

        store = CommandStore()
        observations = []

        def on_chunk(loaded):
            observations.append((store.loaded_count, store.total()))

        ingestor = StreamingIngestor(store, config=PlaybackConfig(chunk_size=100), on_chunk=on_chunk)
        await ingestor.ingest(stream_from_bytes(content, 100))

        loaded = [o[0] for o in observations]
        totals = [o[1] for o in observations]
        assert loaded == sorted(loaded)
        assert totals == sorted(totals)
        assert all(total >= count for count, total in observations)
        assert store.total() == 300

    @pytest.mark.asyncio
    async def test_comment_only_input(self):
        store = CommandStore()
        count = await ingest_source(store, stream_from_string("; comment only\n"))
        assert count == 0
        assert store.is_finished
        assert store.total() == 0

    @pytest.mark.asyncio
    async def test_source_failure_keeps_loaded_commands(self):
        async def failing_source():
            yield b"G1 X1\nG1 X2\n"
            raise OSError("connection reset")

        store = CommandStore()
        ingestor = StreamingIngestor(store)
        with pytest.raises(IngestionError) as exc_info:
            await ingestor.ingest(failing_source())

        assert exc_info.value.bytes_consumed == 12
        assert exc_info.value.lines_seen == 2
        assert store.loaded_count == 2
        assert store.is_finished
        assert "connection reset" in store.error

    @pytest.mark.asyncio
    async def test_cancel_between_chunks(self):
        store = CommandStore()
        ingestor = StreamingIngestor(store, config=PlaybackConfig(chunk_size=6))
        ingestor.on_chunk = lambda loaded: ingestor.cancel()

        await ingestor.ingest(stream_from_bytes(b"G1 X1\nG1 X2\nG1 X3\n", 6))

        assert ingestor.cancelled
        assert store.loaded_count == 1
        assert store.is_finished

    @pytest.mark.asyncio
    async def test_file_source(self, tmp_path):
        path = tmp_path / "part.gcode"
        path.write_text("G28\nG1 X1 Y1 E1\nM107\n", encoding="utf-8")

        store = CommandStore()
        await ingest_source(store, stream_from_file(str(path), chunk_size=4))
        assert store.loaded_count == 3


def _gcode_transport(content: bytes, headers=None):
    def handler(request):
        return httpx.Response(200, content=content, headers=headers)
    return httpx.MockTransport(handler)


class TestUrlSource:

    @pytest.mark.asyncio
    async def test_progress_uses_content_length(self):
        """URL 적재도 Content-Length 기준으로 중간 진행률을 보고"""
        content = ("".join(f"G1 X{i} E0.1\n" for i in range(200))).encode()
        source = UrlChunkSource("http://files.test/part.gcode", chunk_size=256,
                                transport=_gcode_transport(content))
        store = CommandStore()
        reported = []
        ingestor = StreamingIngestor(store, config=PlaybackConfig(chunk_size=256),
                                     on_progress=reported.append)

        assert await ingestor.ingest(source) == 200

        assert source.total_bytes == len(content)
        assert any(0.0 < p < 100.0 for p in reported)
        assert reported == sorted(reported)
        assert reported[-1] == 100.0

    @pytest.mark.asyncio
    async def test_compressed_response_has_unknown_size(self):
        content = b"G28\nG1 X1\n"
        source = UrlChunkSource("http://files.test/part.gcode",
                                transport=_gcode_transport(content, {"content-encoding": "identity"}))
        store = CommandStore()
        await ingest_source(store, source)
        assert source.total_bytes is None
        assert store.loaded_count == 2

    @pytest.mark.asyncio
    async def test_http_error_is_ingestion_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        store = CommandStore()
        with pytest.raises(IngestionError):
            await ingest_source(store, UrlChunkSource("http://files.test/missing.gcode", transport=transport))
        assert store.is_finished
        assert store.error is not None
