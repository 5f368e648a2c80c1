"""
Simulation Engine - 세션 하나의 모든 구성요소를 소유

Command Store / Printer State Machine / Geometry Buffer / Playback Controller / Seek Engine
을 묶고 외부 제어 API (start, pause, jump_to ...) 와 읽기 전용 스냅샷을 제공한다.
"""
import asyncio
import logging
from typing import List, Optional

from .command_store import CommandStore
from .config import PlaybackConfig, get_default_config
from .errors import IngestionError, InvalidStateError, SimulatorError, StoreCorruptionError
from .events import EventBus, GeometryChanged, LoadProgress
from .geometry import GeometryBuffer, dynamic_limits
from .ingestor import ChunkSource, StreamingIngestor
from .models import (
    GCodeCommand,
    JumpToAction,
    PauseAction,
    PlaybackState,
    Position,
    PrinterSnapshot,
    ResetAction,
    ResumeAction,
    SeekResult,
    SetFilamentColorAction,
    SetGeometryPointCapAction,
    SetPlaybackSpeedAction,
    StartAction,
    StepBackAction,
    StepForwardAction,
    StopAction,
)
from .playback import PlaybackController
from .printer_state import PrinterStateMachine
from .seek import SeekEngine

logger = logging.getLogger(__name__)


class SimulationEngine:
    """G-code 재생/탐색 세션"""

    def __init__(self, config: Optional[PlaybackConfig] = None, autorun: bool = True):
        self.config = config or get_default_config()

        self.store = CommandStore()
        self.events = EventBus(queue_size=self.config.event_queue_size)
        self.machine = PrinterStateMachine(self.config)
        self.geometry = GeometryBuffer(self.config)
        self.geometry.add_listener(self._on_geometry_changed)

        self.controller = PlaybackController(
            self.store, self.machine, self.geometry,
            events=self.events, config=self.config, autorun=autorun,
        )
        self.seeker = SeekEngine(
            self.store, self.machine, self.geometry, self.controller,
            events=self.events, config=self.config, snapshot=self.snapshot,
        )

        self.load_progress = 0.0
        self._ingestor: Optional[StreamingIngestor] = None
        self._load_task: Optional[asyncio.Task] = None
        self._limits = None
        self._start_pending = False
        self._disposed = False

    # -------------------------
    # Loading
    # -------------------------

    def _ensure_active(self):
        if self._disposed:
            raise InvalidStateError("Engine has been disposed")

    def _on_load_progress(self, progress: float):
        self.load_progress = progress
        self.events.publish(LoadProgress(
            progress=progress,
            loaded_commands=self.store.loaded_count,
            is_streaming=self.store.is_streaming,
        ))

    def _on_chunk(self, loaded: int):
        # 파일 크기 구간이 바뀌면 지오메트리 한도 재설정 (트림 포함)
        limits = dynamic_limits(self.store.total())
        if limits != self._limits:
            self._limits = limits
            self.geometry.configure_for(self.store.total())
        if self._start_pending and loaded:
            self._start_pending = False
            logger.info(f"[Engine] Deferred start with {loaded} commands loaded")
            self.start()

    def _on_geometry_changed(self, geometry: GeometryBuffer):
        self.events.publish(GeometryChanged(
            extrusion_points=geometry.extrusion_points,
            travel_points=geometry.travel_points,
            version=geometry.version,
        ))

    async def load(self, source: ChunkSource, total_bytes: Optional[int] = None) -> int:
        """
        청크 소스를 끝까지 적재

        Returns:
            로드된 명령 수

        Raises:
            IngestionError: 소스 실패 (Error 상태로 전이, 로드된 명령은 유지)
            InvalidStateError: 이미 로드된 세션
        """
        self._ensure_active()
        if self._ingestor is not None or self.store.loaded_count:
            raise InvalidStateError("Commands already loaded, hard_reset() first")

        ingestor = StreamingIngestor(
            self.store, config=self.config,
            on_progress=self._on_load_progress, on_chunk=self._on_chunk,
        )
        self._ingestor = ingestor
        self.controller.begin_loading()
        logger.info("[Engine] Loading started")

        try:
            count = await ingestor.ingest(source, total_bytes)
        except (IngestionError, StoreCorruptionError) as e:
            self._start_pending = False
            self.controller.fail(str(e))
            self._on_load_progress(self.load_progress)
            raise

        if ingestor.cancelled:
            return count

        self.geometry.configure_for(self.store.total())
        self.controller.loading_finished()
        self._on_load_progress(100.0)
        if self._start_pending:
            # 마지막 줄이 개행 없이 끝나면 청크 훅 이후에 적재됨
            self._start_pending = False
            if self.store.loaded_count:
                self.start()
            else:
                logger.warning("[Engine] Auto start skipped, no commands were loaded")
        logger.info(f"[Engine] Loaded {count} commands ({self.store.total_layers} layers)")
        return count

    async def load_logged(self, source: ChunkSource, total_bytes: Optional[int]):
        try:
            await self.load(source, total_bytes)
        except SimulatorError as e:
            # 상태는 이미 Error 로 전이됨 - 스냅샷의 error_message 로 노출
            logger.error(f"[Engine] Background load failed: {e}")

    def load_in_background(self, source: ChunkSource, total_bytes: Optional[int] = None) -> asyncio.Task:
        """백그라운드 적재 - 적재 중에도 재생/탐색 가능"""
        self._ensure_active()
        # 태스크가 돌기 전에도 탐색이 적재를 기다리도록 시작 표시
        self.store.begin()
        self._load_task = asyncio.get_running_loop().create_task(self.load_logged(source, total_bytes))
        return self._load_task

    # -------------------------
    # Controls
    # -------------------------

    def start(self) -> PrinterSnapshot:
        self._ensure_active()
        if self.seeker.is_seeking:
            logger.warning("[Engine] start() ignored while seeking")
            return self.snapshot()
        if self.controller.state != PlaybackState.RUNNING:
            self.geometry.configure_for(self.store.total())
        self.controller.start()
        return self.snapshot()

    def start_when_ready(self) -> bool:
        """
        명령이 적재되어 있으면 바로 시작, 아니면 첫 명령이 들어올 때 시작

        Returns:
            지금 시작했으면 True
        """
        self._ensure_active()
        if self.store.loaded_count:
            self._start_pending = False
            self.start()
            return True
        self._start_pending = True
        logger.info("[Engine] Start deferred until commands are loaded")
        return False

    def pause(self) -> PrinterSnapshot:
        self._ensure_active()
        self.controller.pause()
        return self.snapshot()

    def resume(self) -> PrinterSnapshot:
        self._ensure_active()
        self.controller.resume()
        return self.snapshot()

    def stop(self) -> PrinterSnapshot:
        self._ensure_active()
        self.seeker.cancel("stopped")
        self.controller.stop()
        return self.snapshot()

    def reset(self) -> PrinterSnapshot:
        """Printer State / 지오메트리 초기화 (로드된 명령은 유지)"""
        self._ensure_active()
        self.seeker.cancel("reset")
        self.controller.reset()
        return self.snapshot()

    def _bind_store(self, store: CommandStore):
        self.store = store
        self.controller.store = store
        self.seeker.store = store

    def hard_reset(self):
        """명령 저장소까지 비우고 적재 중단"""
        self.seeker.cancel("reset")
        loading = self._ingestor is not None and self.store.is_streaming
        if self._ingestor is not None:
            self._ingestor.cancel()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = None
        self._ingestor = None
        self._start_pending = False

        self.controller.reset()
        if loading:
            # 중단된 인제스터가 이전 저장소를 마무리하도록 분리
            self._bind_store(CommandStore())
        else:
            self.store.clear()
        self.load_progress = 0.0
        self._limits = None
        logger.info("[Engine] Hard reset")

    def dispose(self):
        if self._disposed:
            return
        self.hard_reset()
        self._disposed = True
        logger.info("[Engine] Disposed")

    async def jump_to(self, index: int) -> Optional[SeekResult]:
        self._ensure_active()
        return await self.seeker.seek(index)

    async def step_back(self, steps: int = 1) -> Optional[SeekResult]:
        self._ensure_active()
        last = self.machine.state.command_index - 1
        if last < 0:
            return None
        return await self.seeker.seek(max(0, last - steps))

    async def step_forward(self, steps: int = 1) -> Optional[SeekResult]:
        self._ensure_active()
        last = self.machine.state.command_index - 1
        target = min(self.store.total() - 1, last + steps)
        if target < 0:
            return None
        return await self.seeker.seek(target)

    def set_playback_speed(self, multiplier: float) -> float:
        self._ensure_active()
        return self.controller.set_speed(multiplier)

    def set_geometry_point_cap(self, points: int) -> int:
        self._ensure_active()
        return self.geometry.set_point_cap(points)

    def set_filament_color(self, color: str):
        self._ensure_active()
        self.geometry.set_filament_color(color)

    async def dispatch(self, action) -> PrinterSnapshot:
        """ControlAction 모델 실행 후 스냅샷 반환"""
        if isinstance(action, StartAction):
            self.start()
        elif isinstance(action, PauseAction):
            self.pause()
        elif isinstance(action, ResumeAction):
            self.resume()
        elif isinstance(action, StopAction):
            self.stop()
        elif isinstance(action, ResetAction):
            self.reset()
        elif isinstance(action, StepBackAction):
            await self.step_back(action.steps)
        elif isinstance(action, StepForwardAction):
            await self.step_forward(action.steps)
        elif isinstance(action, JumpToAction):
            await self.jump_to(action.index)
        elif isinstance(action, SetPlaybackSpeedAction):
            self.set_playback_speed(action.multiplier)
        elif isinstance(action, SetGeometryPointCapAction):
            self.set_geometry_point_cap(action.points)
        elif isinstance(action, SetFilamentColorAction):
            self.set_filament_color(action.color)
        else:
            raise InvalidStateError(f"Unknown control action: {action!r}")
        return self.snapshot()

    # -------------------------
    # Read side
    # -------------------------

    def commands(self, start: int = 0, limit: int = 100) -> List[GCodeCommand]:
        return self.store.slice(start, start + limit)

    def snapshot(self) -> PrinterSnapshot:
        state = self.machine.state
        total = self.store.total()
        cursor = state.command_index

        progress = min(cursor / total * 100.0, 100.0) if total else 0.0
        remaining = 0.0
        if cursor and total > cursor:
            remaining = state.elapsed_time / cursor * (total - cursor)

        current_layer = max(1, state.layer)
        return PrinterSnapshot(
            state=self.controller.state,
            error_message=self.controller.error_message,
            position=Position(x=state.x, y=state.y, z=state.z),
            extruder_position=state.e,
            feed_rate=state.feed_rate,
            hotend_temperature=state.hotend_temperature,
            bed_temperature=state.bed_temperature,
            fan_speed=state.fan_speed,
            absolute_positioning=state.absolute_positioning,
            absolute_extrusion=state.absolute_extrusion,
            is_extruding=state.is_extruding,
            current_command_index=cursor,
            last_executed_index=cursor - 1,
            total_commands=total,
            loaded_commands=self.store.loaded_count,
            progress=progress,
            current_layer=current_layer,
            total_layers=max(current_layer, self.store.total_layers),
            elapsed_time=state.elapsed_time,
            estimated_time_remaining=remaining,
            playback_speed=self.controller.speed,
            load_progress=self.load_progress,
            is_streaming=self.is_streaming,
            is_seeking=self.seeker.is_seeking,
            seek_target=self.seeker.target,
            seek_progress=self.seeker.progress,
            extrusion_points=self.geometry.extrusion_points,
            travel_points=self.geometry.travel_points,
            model_bounds=self.store.bounds.to_model(),
        )

    @property
    def state(self) -> PlaybackState:
        return self.controller.state

    @property
    def is_streaming(self) -> bool:
        """적재가 시작되었고 아직 끝나지 않음"""
        return self.store.is_streaming

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def __repr__(self):
        return f"SimulationEngine(state={self.controller.state.value}, store={self.store!r})"
