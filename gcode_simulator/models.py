import math
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator

Point = Tuple[float, float, float]


class FrozenParams(dict):
    """읽기 전용 파라미터 맵 - 저장된 명령은 변경되지 않는다"""

    def _readonly(self, *args, **kwargs):
        raise TypeError("command parameters are read-only")

    __setitem__ = _readonly
    __delitem__ = _readonly
    clear = _readonly
    pop = _readonly
    popitem = _readonly
    setdefault = _readonly
    update = _readonly
    __ior__ = _readonly

    def __reduce__(self):
        return (FrozenParams, (dict(self),))


# --- From Parser ---
class GCodeCommand(BaseModel):
    command: str                # G1, G0, M104, etc.
    params: Dict[str, float]    # {"X": 10.2, "E": 42.123}
    line_number: int            # 1-based line number (원본 라인 번호)
    raw: str                    # Original string

    model_config = {"frozen": True}

    @field_validator("params", mode="after")
    @classmethod
    def _freeze_params(cls, value: Dict[str, float]) -> Dict[str, float]:
        return FrozenParams(value)

    def get(self, letter: str, default: Optional[float] = None) -> Optional[float]:
        return self.params.get(letter, default)


# --- From Printer State Machine ---
@dataclass(frozen=True)
class PathSegment:
    """단일 이동 명령에서 생성된 직선 세그먼트"""
    start: Point
    end: Point
    extrusion_amount: float
    is_extrusion: bool
    is_travel: bool
    is_arc: bool = False        # G2/G3 (직선 근사)
    line_number: int = -1

    @property
    def length(self) -> float:
        return math.dist(self.start, self.end)

    def to_list(self) -> list:
        """[x1, y1, z1, x2, y2, z2]"""
        return [*self.start, *self.end]


# --- Playback ---
class PlaybackState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class ModelBounds(BaseModel):
    """모델 프레이밍용 XYZ 범위"""
    min: Position
    max: Position
    size: Position


@dataclass
class BoundingBox:
    """이동 명령 좌표의 3D 바운딩 박스"""
    min_x: float = math.inf
    max_x: float = -math.inf
    min_y: float = math.inf
    max_y: float = -math.inf
    min_z: float = math.inf
    max_z: float = -math.inf

    def update(self, x: float, y: float, z: float):
        self.min_x = min(self.min_x, x)
        self.max_x = max(self.max_x, x)
        self.min_y = min(self.min_y, y)
        self.max_y = max(self.max_y, y)
        self.min_z = min(self.min_z, z)
        self.max_z = max(self.max_z, z)

    @property
    def is_empty(self) -> bool:
        return self.min_x == math.inf

    def to_model(self) -> Optional[ModelBounds]:
        if self.is_empty:
            return None
        return ModelBounds(
            min=Position(x=self.min_x, y=self.min_y, z=self.min_z),
            max=Position(x=self.max_x, y=self.max_y, z=self.max_z),
            size=Position(
                x=self.max_x - self.min_x,
                y=self.max_y - self.min_y,
                z=self.max_z - self.min_z,
            ),
        )


class PrinterSnapshot(BaseModel):
    """UI에서 폴링하는 읽기 전용 상태"""
    state: PlaybackState
    error_message: Optional[str] = None

    position: Position
    extruder_position: float
    feed_rate: float
    hotend_temperature: float
    bed_temperature: float
    fan_speed: float
    absolute_positioning: bool
    absolute_extrusion: bool
    is_extruding: bool

    current_command_index: int      # 적용된 명령 수 (다음에 실행할 인덱스)
    last_executed_index: int        # -1 = 아무것도 실행되지 않음
    total_commands: int
    loaded_commands: int
    progress: float                 # 0 ~ 100

    current_layer: int
    total_layers: int

    elapsed_time: float             # 시뮬레이션 기준 초
    estimated_time_remaining: float

    playback_speed: float
    load_progress: float            # 0 ~ 100
    is_streaming: bool
    is_seeking: bool = False
    seek_target: int = -1
    seek_progress: float = 0.0

    extrusion_points: int = 0
    travel_points: int = 0
    model_bounds: Optional[ModelBounds] = None


@dataclass
class SeekResult:
    target: int
    snapshot: PrinterSnapshot
    segments_emitted: int
    batches: int


# ============================================================
# Control actions (tagged union)
# ============================================================

class StartAction(BaseModel):
    action: Literal["start"] = "start"


class PauseAction(BaseModel):
    action: Literal["pause"] = "pause"


class ResumeAction(BaseModel):
    action: Literal["resume"] = "resume"


class StopAction(BaseModel):
    action: Literal["stop"] = "stop"


class ResetAction(BaseModel):
    action: Literal["reset"] = "reset"


class StepBackAction(BaseModel):
    action: Literal["step_back"] = "step_back"
    steps: int = Field(1, ge=1)


class StepForwardAction(BaseModel):
    action: Literal["step_forward"] = "step_forward"
    steps: int = Field(1, ge=1)


class JumpToAction(BaseModel):
    action: Literal["jump_to"] = "jump_to"
    index: int


class SetPlaybackSpeedAction(BaseModel):
    action: Literal["set_playback_speed"] = "set_playback_speed"
    multiplier: float = Field(..., gt=0)


class SetGeometryPointCapAction(BaseModel):
    action: Literal["set_geometry_point_cap"] = "set_geometry_point_cap"
    points: int = Field(..., gt=0)


class SetFilamentColorAction(BaseModel):
    action: Literal["set_filament_color"] = "set_filament_color"
    color: str = Field(..., pattern=r"^#?[0-9A-Fa-f]{6}$")


ControlAction = Annotated[
    Union[
        StartAction,
        PauseAction,
        ResumeAction,
        StopAction,
        ResetAction,
        StepBackAction,
        StepForwardAction,
        JumpToAction,
        SetPlaybackSpeedAction,
        SetGeometryPointCapAction,
        SetFilamentColorAction,
    ],
    Field(discriminator="action"),
]
