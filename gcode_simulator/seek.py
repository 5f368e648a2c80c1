"""
Seek/Replay Engine - 전체 리플레이 기반 탐색

seek(target) 결과는 명령 target 까지 실행한 직후의 Printer State 및 Geometry Buffer 와 같다.
Printer State는 결정적이므로 [0, target] 을 초기 상태에서 다시 실행해 재구성한다.
"""
import asyncio
import logging
from typing import Callable, Optional

from .command_store import CommandStore
from .config import PlaybackConfig, get_default_config
from .errors import SeekCancelledError, SeekTimeoutError
from .events import EventBus, SeekProgress
from .geometry import GeometryBuffer
from .models import PlaybackState, PrinterSnapshot, SeekResult
from .playback import PlaybackController
from .printer_state import PrinterStateMachine

logger = logging.getLogger(__name__)


class CancelToken:
    """탐색 취소 플래그 - 배치 경계마다 확인"""

    def __init__(self):
        self.cancelled = False
        self.reason = ""

    def cancel(self, reason: str = "cancelled"):
        self.cancelled = True
        self.reason = reason

    def check(self, target: int):
        if self.cancelled:
            raise SeekCancelledError(f"Seek to {target} {self.reason}")


class SeekEngine:
    def __init__(self, store: CommandStore, machine: PrinterStateMachine, geometry: GeometryBuffer,
                 controller: PlaybackController, events: Optional[EventBus] = None,
                 config: Optional[PlaybackConfig] = None,
                 snapshot: Optional[Callable[[], PrinterSnapshot]] = None):
        self.store = store
        self.machine = machine
        self.geometry = geometry
        self.controller = controller
        self.events = events or controller.events
        self.config = config or get_default_config()
        self.snapshot = snapshot

        self.is_seeking = False
        self.target = -1
        self.progress = 0.0
        self._token: Optional[CancelToken] = None

    def cancel(self, reason: str = "cancelled"):
        if self._token is not None:
            self._token.cancel(reason)

    def _report(self, target: int, progress: float, phase: str):
        # 같은 탐색 안에서는 감소하지 않음
        self.progress = max(self.progress, min(100.0, progress))
        self.events.publish(SeekProgress(target=target, progress=self.progress, phase=phase))

    async def _wait_for_buffer(self, target: int, token: CancelToken):
        """target 이 로드되거나 스트림이 끝날 때까지 폴링"""
        loop = asyncio.get_running_loop()
        poll = self.config.seek_poll_interval
        last_loaded = self.store.loaded_count
        last_growth = loop.time()

        logger.info(f"[Seek] Waiting for command {target} (loaded={last_loaded})")
        while target >= self.store.loaded_count and self.store.has_pending:
            token.check(target)
            loaded = self.store.loaded_count
            self._report(target, loaded / (target + 1) * 100.0, "waiting")

            await asyncio.sleep(poll)

            loaded = self.store.loaded_count
            now = loop.time()
            if loaded > last_loaded:
                last_loaded = loaded
                last_growth = now
            elif now - last_growth >= self.config.seek_stall_timeout:
                logger.warning(f"[Seek] Loading stalled at {loaded} commands, giving up on {target}")
                raise SeekTimeoutError(
                    f"Command {target} not loaded within {self.config.seek_stall_timeout}s",
                    target=target,
                    loaded=loaded,
                    retry_after=poll * 10,
                )
        token.check(target)

    async def seek(self, target: int) -> Optional[SeekResult]:
        """
        명령 target 을 마지막으로 실행한 상태로 이동

        Returns:
            SeekResult, 음수 target 이나 빈 저장소면 None

        Raises:
            SeekTimeoutError: 스트리밍이 멈춰 target 이 로드되지 않음
            SeekCancelledError: stop()/reset() 또는 새 탐색으로 취소됨
        """
        if target < 0:
            logger.info(f"[Seek] Ignored negative target {target}")
            return None

        if self._token is not None:
            self._token.cancel("superseded")
        token = CancelToken()
        self._token = token
        self.is_seeking = True
        self.target = target
        self.progress = 0.0

        try:
            if target >= self.store.loaded_count and self.store.has_pending:
                await self._wait_for_buffer(target, token)

            loaded = self.store.loaded_count
            if loaded == 0:
                logger.warning("[Seek] No commands available")
                return None
            actual = min(target, loaded - 1)

            was_running = self.controller.state == PlaybackState.RUNNING
            if self.controller.state in (PlaybackState.RUNNING, PlaybackState.COMPLETED):
                self.controller.stop()

            self.machine.reset()
            self.geometry.clear(notify=False)

            batch_size = self.config.replay_batch_size
            stop = actual + 1
            batches = 0
            emitted = 0
            for batch_start in range(0, stop, batch_size):
                token.check(target)
                batch_end = min(batch_start + batch_size, stop)
                for command in self.store.slice(batch_start, batch_end):
                    segment = self.machine.apply(command)
                    if segment is not None:
                        self.geometry.append(segment)
                        emitted += 1
                batches += 1
                self._report(target, batch_end / stop * 100.0, "replaying")
                if batch_end < stop:
                    await asyncio.sleep(0)

            self.geometry.notify()
            self._report(target, 100.0, "done")
            logger.info(f"[Seek] Jumped to command {actual} ({emitted} segments, {batches} batches)")

            self._token = None
            self.is_seeking = False
            self.target = -1

            if was_running and actual < self.store.total() - 1:
                self.controller.start()

            snapshot = self.snapshot() if self.snapshot else None
            return SeekResult(target=actual, snapshot=snapshot, segments_emitted=emitted, batches=batches)
        finally:
            if self._token is token:
                self._token = None
                self.is_seeking = False
                self.target = -1
