"""
Command Store - append-only 명령 저장소

인제스터가 append 하는 동안 재생/탐색 경로가 읽을 수 있어야 한다.
배치 append는 lock 안에서 한 번에 반영되므로 읽는 쪽은 반쯤 추가된 배치를 볼 수 없다.
"""
import dataclasses
import threading
from typing import Iterable, List, Optional, Set

from .errors import CommandIndexError, StoreCorruptionError
from .models import BoundingBox, GCodeCommand

_MOTION_COMMANDS = ("G0", "G1", "G2", "G3")


class CommandStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._commands: List[GCodeCommand] = []
        self._declared = 0
        self._finished = False
        self._error: Optional[str] = None
        self._z_levels: Set[float] = set()
        self._started = False

        # 바운딩 박스 추적용 논리 위치 (G90/G91, G92 반영)
        self._bounds = BoundingBox()
        self._bounds_position = (0.0, 0.0, 0.0)
        self._bounds_absolute = True

    # -------------------------
    # Writers (ingestion path)
    # -------------------------

    def begin(self):
        """적재 시작 표시 - 이후 finish() 전까지 has_pending"""
        with self._lock:
            self._started = True

    def declare(self, count: int) -> int:
        """인제스터가 발견한 (아직 파싱 전) 명령 라인 수를 누적"""
        if count < 0:
            raise ValueError("declared count must be non-negative")
        with self._lock:
            self._started = True
            self._declared += count
            return self._declared

    def append(self, commands: Iterable[GCodeCommand]) -> int:
        batch = list(commands)
        if not batch:
            return len(self._commands)

        z_levels = set()
        for cmd in batch:
            if cmd.command in _MOTION_COMMANDS and "Z" in cmd.params:
                z_levels.add(round(cmd.params["Z"], 2))
        # 단일 writer (인제스터) - 복사본에 계산 후 lock 안에서 반영
        bounds, position, absolute = self._track_bounds(batch)

        with self._lock:
            if self._finished:
                raise StoreCorruptionError("append after the store was finished")
            self._started = True
            self._commands.extend(batch)
            self._z_levels.update(z_levels)
            self._bounds = bounds
            self._bounds_position = position
            self._bounds_absolute = absolute
            return len(self._commands)

    def _track_bounds(self, batch: List[GCodeCommand]):
        bounds = dataclasses.replace(self._bounds)
        x, y, z = self._bounds_position
        absolute = self._bounds_absolute
        for cmd in batch:
            name = cmd.command
            params = cmd.params
            if name in _MOTION_COMMANDS:
                if absolute:
                    x = params.get("X", x)
                    y = params.get("Y", y)
                    z = params.get("Z", z)
                else:
                    x += params.get("X", 0.0)
                    y += params.get("Y", 0.0)
                    z += params.get("Z", 0.0)
                bounds.update(x, y, z)
            elif name == "G90":
                absolute = True
            elif name == "G91":
                absolute = False
            elif name == "G92":
                x = params.get("X", x)
                y = params.get("Y", y)
                z = params.get("Z", z)
        return bounds, (x, y, z), absolute

    def finish(self, error: Optional[str] = None):
        """스트림 종료 표시. 이후 더 이상 명령이 들어오지 않는다."""
        with self._lock:
            self._started = True
            self._finished = True
            self._error = error
            loaded = len(self._commands)
            mismatch = self._declared > loaded
            # 파싱되지 않은 선언분은 더 이상 오지 않음
            self._declared = loaded
        if mismatch and error is None:
            raise StoreCorruptionError(
                f"stream finished with fewer commands than declared (loaded={loaded})"
            )

    def clear(self):
        """전체 리셋 전용"""
        with self._lock:
            self._commands = []
            self._declared = 0
            self._finished = False
            self._error = None
            self._z_levels = set()
            self._started = False
            self._bounds = BoundingBox()
            self._bounds_position = (0.0, 0.0, 0.0)
            self._bounds_absolute = True

    # -------------------------
    # Readers
    # -------------------------

    def get(self, index: int) -> GCodeCommand:
        commands = self._commands
        if index < 0 or index >= len(commands):
            raise CommandIndexError(index, len(commands))
        return commands[index]

    def __getitem__(self, index: int) -> GCodeCommand:
        return self.get(index)

    def slice(self, start: int, stop: int) -> List[GCodeCommand]:
        with self._lock:
            return self._commands[max(0, start):max(0, stop)]

    def __len__(self) -> int:
        return len(self._commands)

    @property
    def loaded_count(self) -> int:
        return len(self._commands)

    @property
    def declared_total(self) -> int:
        return self._declared

    def total(self) -> int:
        """진행률/ETA 계산용 분모 - 스트리밍 중에도 감소하지 않는다"""
        with self._lock:
            return max(len(self._commands), self._declared)

    @property
    def is_finished(self) -> bool:
        return self._finished

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_streaming(self) -> bool:
        return self._started and not self._finished

    @property
    def has_pending(self) -> bool:
        """더 많은 명령이 들어올 예정인지 (적재가 시작되지 않았으면 False)"""
        with self._lock:
            if not self._started:
                return False
            return not self._finished or self._declared > len(self._commands)

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def bounds(self) -> BoundingBox:
        """이동 명령 좌표의 최소/최대 (복사본)"""
        with self._lock:
            return dataclasses.replace(self._bounds)

    @property
    def total_layers(self) -> int:
        return max(1, len(self._z_levels))

    def __repr__(self):
        return (f"CommandStore(loaded={len(self._commands)}, declared={self._declared}, "
                f"finished={self._finished})")
