"""
Playback Controller - 재생 상태 머신 + 틱 루프

Idle -> Loading -> Idle            (로딩 시작/완료)
Idle/Loading -> Running            (start, 명령 1개 이상)
Running <-> Paused                 (pause 토글 / resume)
Running -> Completed               (모든 명령 적용 + 스트림 종료 확인)
Completed -> Running               (start: 암묵적 전체 리셋)
any -> Error -> Idle               (치명적 오류 / reset)
"""
import asyncio
import logging
import time
from typing import Callable, Dict, FrozenSet, Optional

from .command_store import CommandStore
from .config import PlaybackConfig, get_default_config
from .events import EventBus, SegmentsEmitted, StateChanged
from .geometry import GeometryBuffer
from .models import PlaybackState
from .printer_state import PrinterStateMachine

logger = logging.getLogger(__name__)

S = PlaybackState

TRANSITIONS: Dict[PlaybackState, FrozenSet[PlaybackState]] = {
    S.IDLE: frozenset({S.LOADING, S.RUNNING, S.ERROR}),
    S.LOADING: frozenset({S.IDLE, S.RUNNING, S.ERROR}),
    S.RUNNING: frozenset({S.PAUSED, S.COMPLETED, S.IDLE, S.ERROR}),
    S.PAUSED: frozenset({S.RUNNING, S.IDLE, S.ERROR}),
    S.COMPLETED: frozenset({S.RUNNING, S.IDLE, S.ERROR}),
    S.ERROR: frozenset({S.IDLE}),
}


def tick_interval_ms(total_commands: int, speed: float) -> float:
    """틱 간격 (ms) - 큰 파일일수록 짧게, 속도로 나눔"""
    if total_commands > 100_000:
        base = 16
    elif total_commands > 50_000:
        base = 25
    elif total_commands > 10_000:
        base = 33
    else:
        base = 50
    return max(1.0, base / speed)


def tick_batch_size(total_commands: int, speed: float) -> int:
    """틱당 처리할 명령 수"""
    if total_commands > 100_000:
        size = min(50, int(speed / 5))
    elif total_commands > 50_000:
        size = min(20, int(speed / 10))
    elif total_commands > 10_000:
        size = min(10, int(speed / 20))
    else:
        size = min(5, int(speed / 10))
    return max(1, size)


class PlaybackController:
    """Running 상태에서 틱마다 명령 배치를 Printer State Machine에 적용"""

    def __init__(self, store: CommandStore, machine: PrinterStateMachine, geometry: GeometryBuffer,
                 events: Optional[EventBus] = None, config: Optional[PlaybackConfig] = None,
                 autorun: bool = True):
        self.store = store
        self.machine = machine
        self.geometry = geometry
        self.events = events or EventBus()
        self.config = config or get_default_config()
        self.autorun = autorun

        self._state = S.IDLE
        self.error_message: Optional[str] = None
        self.speed = self.config.default_playback_speed
        self.stalled = False
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None
        self._clock: Callable[[], float] = time.perf_counter

    # -------------------------
    # State
    # -------------------------

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == S.RUNNING

    def _transition(self, new_state: PlaybackState, error: Optional[str] = None) -> bool:
        previous = self._state
        if new_state == previous:
            return False
        if new_state not in TRANSITIONS[previous]:
            logger.warning(f"[Playback] Ignored transition {previous.value} -> {new_state.value}")
            return False

        self._state = new_state
        if new_state == S.ERROR:
            self.error_message = error
        elif new_state == S.IDLE and previous == S.ERROR:
            self.error_message = None

        logger.info(f"[Playback] {previous.value} -> {new_state.value}")
        self.events.publish(StateChanged(
            previous=previous.value,
            current=new_state.value,
            error_message=self.error_message,
        ))
        return True

    def begin_loading(self):
        self._transition(S.LOADING)

    def loading_finished(self):
        # Running 중이면 그대로 유지 (재생이 인제스터를 따라가는 중)
        if self._state == S.LOADING:
            self._transition(S.IDLE)

    def fail(self, message: str):
        """치명적 오류 - reset() 전까지 재생 불가"""
        self._cancel_task()
        if self._state != S.ERROR:
            logger.error(f"[Playback] Fatal: {message}")
            self._transition(S.ERROR, error=message)

    # -------------------------
    # Controls
    # -------------------------

    def start(self) -> bool:
        state = self._state
        if state == S.RUNNING:
            logger.info("[Playback] Already running")
            return False
        if state == S.PAUSED:
            return self.resume()
        if state == S.ERROR:
            logger.warning("[Playback] start() ignored in error state, reset() first")
            return False
        if self.store.loaded_count == 0:
            logger.warning("[Playback] start() ignored, no commands loaded")
            return False
        if state == S.COMPLETED:
            logger.info("[Playback] Completed, restarting from the beginning")
            self.rewind()

        self._transition(S.RUNNING)
        self._spawn()
        return True

    def pause(self) -> bool:
        """Running <-> Paused 토글"""
        if self._state == S.RUNNING:
            self._cancel_task()
            return self._transition(S.PAUSED)
        if self._state == S.PAUSED:
            return self.resume()
        logger.info(f"[Playback] pause() ignored in {self._state.value}")
        return False

    def resume(self) -> bool:
        if self._state != S.PAUSED:
            logger.info(f"[Playback] resume() ignored in {self._state.value}")
            return False
        self._transition(S.RUNNING)
        self._spawn()
        return True

    def stop(self) -> bool:
        """틱 중단, Idle 로 복귀. Printer State는 유지"""
        self._cancel_task()
        if self._state in (S.RUNNING, S.PAUSED, S.COMPLETED, S.LOADING):
            return self._transition(S.IDLE)
        return False

    def rewind(self):
        """Printer State와 지오메트리를 초기 상태로"""
        self.machine.reset()
        self.geometry.clear()
        self.stalled = False

    def reset(self):
        """정지 + Printer State 초기화 + 지오메트리 비움 (명령은 유지)"""
        self._cancel_task()
        self.rewind()
        if self._state != S.IDLE:
            self._transition(S.IDLE)

    def set_speed(self, multiplier: float) -> float:
        speed = max(self.config.min_playback_speed, min(self.config.max_playback_speed, float(multiplier)))
        self.speed = speed
        self.geometry.set_playback_speed(speed)
        return speed

    # -------------------------
    # Ticking
    # -------------------------

    def tick_interval(self) -> float:
        """다음 틱까지 대기 시간 (초)"""
        return tick_interval_ms(self.store.total(), self.speed) / 1000.0

    def _check_completion(self) -> bool:
        if self.machine.state.command_index < self.store.loaded_count:
            return False
        if self.store.has_pending:
            # 인제스터가 아직 적재 중 - 완료 선언 금지
            if not self.stalled:
                logger.debug(f"[Playback] Stalled at {self.machine.state.command_index}, waiting for commands")
            self.stalled = True
            return False
        self.stalled = False
        logger.info(f"[Playback] Completed {self.machine.state.command_index} commands")
        self._transition(S.COMPLETED)
        return True

    def tick(self) -> int:
        """
        한 틱 처리 - 명령 배치 적용

        Returns:
            적용한 명령 수
        """
        if self._state != S.RUNNING:
            return 0

        self.ticks += 1
        batch = tick_batch_size(self.store.total(), self.speed)
        deadline = self._clock() + self.config.tick_budget_ms / 1000.0

        processed = 0
        emitted = 0
        for _ in range(batch):
            if self._state != S.RUNNING:
                break
            index = self.machine.state.command_index
            if index >= self.store.loaded_count:
                break
            self.stalled = False

            segment = self.machine.apply(self.store.get(index))
            processed += 1
            if segment is not None:
                self.geometry.append(segment)
                emitted += 1

            if self._clock() > deadline:
                break

        if emitted:
            self.events.publish(SegmentsEmitted(count=emitted, command_index=self.machine.state.command_index))

        self._check_completion()
        return processed

    async def run(self):
        """asyncio 틱 드라이버 - Running이 아니면 종료"""
        while self._state == S.RUNNING:
            self.tick()
            if self._state != S.RUNNING:
                break
            await asyncio.sleep(self.tick_interval())

    def _spawn(self):
        if not self.autorun:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 이벤트 루프 밖 - 호스트가 tick()을 직접 호출
            return
        if self._task is None or self._task.done():
            self._task = loop.create_task(self.run())

    def _cancel_task(self):
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def __repr__(self):
        return (f"PlaybackController(state={self._state.value}, "
                f"index={self.machine.state.command_index}, speed={self.speed})")


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
