"""
Streaming Ingestor - 청크 단위 G-code 로딩

바이트 청크 -> 라인 -> 명령 -> Command Store
- 다음 청크는 이전 청크가 파싱/저장된 후에만 요청 (pull 기반 backpressure)
- 청크 사이에 이벤트 루프에 양보하여 재생/탐색이 굶지 않도록 함
"""
import asyncio
import codecs
import logging
import re
from typing import AsyncIterable, Callable, Iterable, List, Optional, Union

from .command_store import CommandStore
from .config import PlaybackConfig, get_default_config
from .errors import IngestionError
from .parser import is_command_line, parse_line

logger = logging.getLogger(__name__)

_NEWLINE_RE = re.compile(r"\r\n|\r|\n")

ChunkSource = Union[Iterable[bytes], AsyncIterable[bytes]]
LoadProgressCallback = Callable[[float], None]
ChunkCallback = Callable[[int], None]


async def _iterate(source: ChunkSource):
    if hasattr(source, "__aiter__"):
        async for chunk in source:
            yield chunk
    else:
        for chunk in source:
            yield chunk


class StreamingIngestor:
    """
    청크 소스를 Command Store로 스트리밍

    on_progress: 0~100 로드 진행률 (total_bytes를 알 때 바이트 기준)
    on_chunk: 청크 처리 후 호출 (loaded_count 전달) - 메모리 정리 훅
    """

    def __init__(self, store: CommandStore, config: Optional[PlaybackConfig] = None,
                 on_progress: Optional[LoadProgressCallback] = None,
                 on_chunk: Optional[ChunkCallback] = None):
        self.store = store
        self.config = config or get_default_config()
        self.on_progress = on_progress
        self.on_chunk = on_chunk

        self.bytes_consumed = 0
        self.lines_seen = 0
        self.dropped_lines = 0
        self.progress = 0.0
        self._cancelled = False

    def cancel(self):
        """다음 청크 경계에서 로딩 중단"""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _report(self, progress: float):
        # 진행률은 감소하지 않음
        progress = max(self.progress, min(100.0, progress))
        if progress == self.progress and progress != 0.0:
            return
        self.progress = progress
        if self.on_progress:
            self.on_progress(progress)

    def _ingest_lines(self, lines: List[str]):
        candidates = sum(1 for line in lines if is_command_line(line))
        # 선언 먼저, 파싱 후 append - total()이 loaded보다 작아지지 않음
        self.store.declare(candidates)

        commands = []
        start_line = self.lines_seen + 1
        for offset, line in enumerate(lines):
            command = parse_line(line, start_line + offset)
            if command is not None:
                commands.append(command)
        self.lines_seen += len(lines)
        self.dropped_lines += len(lines) - len(commands)

        self.store.append(commands)

    @staticmethod
    def _split(buffer: str):
        """완성된 라인과 나머지(다음 청크로 넘길 부분) 분리"""
        # CR로 끝나면 다음 청크의 LF와 합쳐질 수 있으므로 보류
        held = ''
        if buffer.endswith('\r'):
            buffer, held = buffer[:-1], '\r'
        parts = _NEWLINE_RE.split(buffer)
        return parts[:-1], parts[-1] + held

    async def ingest(self, source: ChunkSource, total_bytes: Optional[int] = None) -> int:
        """
        소스를 끝까지 읽어 Command Store에 적재

        Returns:
            로드된 명령 수

        Raises:
            IngestionError: 소스 실패 (이미 로드된 명령은 유지)
        """
        decoder = codecs.getincrementaldecoder(self.config.encoding)(errors="replace")
        carry = ""
        chunk_size = self.config.chunk_size
        self.store.begin()
        self._report(0.0)

        try:
            async for chunk in _iterate(source):
                if self._cancelled:
                    break
                if total_bytes is None:
                    # URL 소스는 응답 헤더를 받은 뒤에야 크기를 안다
                    total_bytes = getattr(source, "total_bytes", None)
                # 큰 청크는 chunk_size 단위로 다시 나눔
                for start in range(0, max(len(chunk), 1), chunk_size):
                    piece = chunk[start:start + chunk_size]
                    if not piece:
                        continue
                    self.bytes_consumed += len(piece)
                    lines, carry = self._split(carry + decoder.decode(piece))
                    self._ingest_lines(lines)

                    if total_bytes:
                        self._report(self.bytes_consumed / total_bytes * 100.0)
                    if self.on_chunk:
                        self.on_chunk(self.store.loaded_count)

                    await asyncio.sleep(0)
                    if self._cancelled:
                        break
        except asyncio.CancelledError:
            self.store.finish(error="ingestion cancelled")
            raise
        except Exception as e:
            message = f"chunk source failed: {e}"
            logger.error(f"[Ingestor] {message} (bytes={self.bytes_consumed}, lines={self.lines_seen})")
            self.store.finish(error=message)
            raise IngestionError(message, self.bytes_consumed, self.lines_seen) from e

        if self._cancelled:
            logger.info(f"[Ingestor] Cancelled after {self.store.loaded_count} commands")
            self.store.finish(error="ingestion cancelled")
            return self.store.loaded_count

        # 마지막 줄 (개행 없이 끝난 경우)
        tail = carry + decoder.decode(b"", final=True)
        if tail.endswith('\r'):
            tail = tail[:-1]
        if tail:
            self._ingest_lines([tail])

        self.store.finish()
        self._report(100.0)

        logger.info(
            f"[Ingestor] Load complete: {self.store.loaded_count} commands, "
            f"{self.lines_seen} lines, {self.bytes_consumed} bytes"
        )
        if self.dropped_lines:
            logger.debug(f"[Ingestor] Dropped {self.dropped_lines} non-command lines")
        return self.store.loaded_count


async def ingest_source(store: CommandStore, source: ChunkSource, total_bytes: Optional[int] = None,
                        config: Optional[PlaybackConfig] = None) -> int:
    """편의 함수 - 인제스터 생성 후 바로 실행"""
    ingestor = StreamingIngestor(store, config=config)
    return await ingestor.ingest(source, total_bytes)
