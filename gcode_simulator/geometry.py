"""
Geometry Buffer - 압출/이동 경로 포인트 저장 및 메모리 제어

- 세그먼트 하나 = 포인트 2개 (start, end)
- 채널별 포인트 캡의 1.2배를 넘으면 오래된 포인트부터 제거하여 캡의 75%만 유지
- N개 세그먼트마다 "버퍼 변경" 알림 (N은 파일 크기/재생 속도에 따라 조정)
"""
import base64
import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import PlaybackConfig, get_default_config
from .models import PathSegment, Point

logger = logging.getLogger(__name__)

Color = Tuple[float, float, float]
GeometryListener = Callable[["GeometryBuffer"], None]

MIN_POINT_CAP = 1_000
MAX_POINT_CAP = 500_000
TRIM_THRESHOLD = 1.2
KEEP_RATIO = 0.75
MAX_NOTIFY_BATCH = 1000
BYTES_PER_POINT = 12        # float32 x 3


def floats_to_float32_base64(values: List[float]) -> str:
    """
    float 리스트를 Float32 (little-endian) 바이너리로 패킹 후 Base64 인코딩

    Returns:
        Base64 문자열 (빈 리스트면 "")
    """
    if not values:
        return ""
    packed = struct.pack(f'<{len(values)}f', *values)
    return base64.b64encode(packed).decode('ascii')


def parse_hex_color(color: str) -> Color:
    """'#RRGGBB' -> (r, g, b) 0~1"""
    text = color.lstrip('#')
    if len(text) != 6:
        raise ValueError(f"Invalid color: {color}")
    r, g, b = (int(text[i:i + 2], 16) / 255.0 for i in (0, 2, 4))
    return (r, g, b)


def extrusion_intensity(extrusion_amount: float) -> float:
    """압출량에 따른 밝기 계수 (0.7 ~ 1.0)"""
    return 0.7 + min(extrusion_amount * 10, 1.0) * 0.3


def dynamic_limits(total_commands: int) -> Tuple[int, int]:
    """전체 명령 수 -> (포인트 캡, 알림 배치 크기)"""
    if total_commands > 1_000_000:
        return 500_000, 1000
    if total_commands > 500_000:
        return 300_000, 500
    if total_commands > 100_000:
        return 200_000, 200
    if total_commands > 20_000:
        return 100_000, 100
    return 50_000, 50


@dataclass
class PathChannel:
    """단일 채널 (압출 또는 이동)"""
    name: str
    points: List[Point] = field(default_factory=list)
    colors: List[Color] = field(default_factory=list)
    intensities: List[float] = field(default_factory=list)
    trimmed_points: int = 0

    def __len__(self):
        return len(self.points)

    def clear(self):
        self.points = []
        self.colors = []
        self.intensities = []
        self.trimmed_points = 0

    def trim(self, keep: int) -> int:
        """가장 오래된 포인트 제거 (세그먼트 쌍 유지)"""
        keep -= keep % 2
        remove = len(self.points) - keep
        if remove <= 0:
            return 0
        del self.points[:remove]
        if self.colors:
            del self.colors[:remove]
            del self.intensities[:remove]
        self.trimmed_points += remove
        return remove

    def flat(self) -> List[float]:
        return [v for point in self.points for v in point]

    def flat_colors(self) -> List[float]:
        return [v for color in self.colors for v in color]

    @property
    def memory_bytes(self) -> int:
        return (len(self.points) + len(self.colors)) * BYTES_PER_POINT


class GeometryBuffer:
    """압출/이동 경로 버퍼"""

    def __init__(self, config: Optional[PlaybackConfig] = None):
        self.config = config or get_default_config()
        self.extrusion = PathChannel("extrusion")
        self.travel = PathChannel("travel")

        self.point_cap = self.config.default_point_cap
        self.batch_size = 50
        self.total_commands = 0
        self.playback_speed = self.config.default_playback_speed
        self._manual_cap = False

        self.filament_color = self.config.filament_color
        self._base_color = parse_hex_color(self.filament_color)

        self.emitted_segments = 0
        self._pending_notify = 0
        self.version = 0
        self._listeners: List[GeometryListener] = []

    # -------------------------
    # Listeners
    # -------------------------

    def add_listener(self, listener: GeometryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def notify(self):
        """버퍼 변경 알림 (배치 카운터 초기화)"""
        self._pending_notify = 0
        self.version += 1
        for listener in list(self._listeners):
            listener(self)

    # -------------------------
    # Limits
    # -------------------------

    def configure_for(self, total_commands: int):
        """파일 크기에 맞춰 포인트 캡/배치 크기 설정"""
        self.total_commands = total_commands
        cap, batch = dynamic_limits(total_commands)
        self.batch_size = batch
        if not self._manual_cap:
            self.point_cap = cap
        logger.debug(
            f"[Geometry] Limits for {total_commands} commands: cap={self.point_cap}, batch={self.batch_size}"
        )
        self.trim_if_over_budget()

    def set_point_cap(self, points: int) -> int:
        """포인트 캡 수동 설정 (1,000 ~ 500,000)"""
        self.point_cap = max(MIN_POINT_CAP, min(MAX_POINT_CAP, int(points)))
        self._manual_cap = True
        logger.info(f"[Geometry] Point cap set to {self.point_cap}")
        if self.trim_if_over_budget():
            self.notify()
        return self.point_cap

    def set_playback_speed(self, speed: float):
        self.playback_speed = speed

    def notify_batch_size(self) -> int:
        """파일 크기와 재생 속도에 따른 알림 배치 크기"""
        size = self.batch_size
        if self.total_commands > 50_000:
            size *= 4
        elif self.total_commands > 10_000:
            size *= 2

        speed = self.playback_speed
        if speed > 500:
            size *= 8
        elif speed > 100:
            size *= 4
        elif speed > 10:
            size *= 2
        return min(size, MAX_NOTIFY_BATCH)

    # -------------------------
    # Colors
    # -------------------------

    def _color_for(self, intensity: float) -> Color:
        r, g, b = self._base_color
        return (r * intensity, g * intensity, b * intensity)

    def set_filament_color(self, color: str):
        """필라멘트 색상 변경 - 기존 압출 포인트도 다시 칠함"""
        base = parse_hex_color(color)
        self.filament_color = color if color.startswith('#') else f"#{color}"
        self._base_color = base
        self.extrusion.colors = [self._color_for(i) for i in self.extrusion.intensities]
        self.notify()

    # -------------------------
    # Mutation
    # -------------------------

    def append(self, segment: PathSegment):
        channel = self.extrusion if segment.is_extrusion else self.travel
        channel.points.append(segment.start)
        channel.points.append(segment.end)
        if segment.is_extrusion:
            intensity = extrusion_intensity(segment.extrusion_amount)
            color = self._color_for(intensity)
            channel.intensities.extend((intensity, intensity))
            channel.colors.extend((color, color))

        if len(channel.points) > self.point_cap * TRIM_THRESHOLD:
            self._trim(channel)

        self.emitted_segments += 1
        self._pending_notify += 1
        if self._pending_notify >= self.notify_batch_size():
            self.notify()

    def _trim(self, channel: PathChannel) -> int:
        before_mb = channel.memory_bytes / (1024 * 1024)
        removed = channel.trim(int(self.point_cap * KEEP_RATIO))
        if removed:
            logger.info(
                f"[Geometry] Trimmed {removed} {channel.name} points "
                f"({before_mb:.1f}MB -> {channel.memory_bytes / (1024 * 1024):.1f}MB)"
            )
        return removed

    def trim_if_over_budget(self) -> int:
        """채널별로 캡의 1.2배를 넘으면 트림. 제거한 포인트 수 반환"""
        removed = 0
        for channel in (self.extrusion, self.travel):
            if len(channel.points) > self.point_cap * TRIM_THRESHOLD:
                removed += self._trim(channel)
        return removed

    def clear(self, notify: bool = True):
        self.extrusion.clear()
        self.travel.clear()
        self.emitted_segments = 0
        self._pending_notify = 0
        if notify:
            self.notify()

    # -------------------------
    # Export
    # -------------------------

    @property
    def extrusion_points(self) -> int:
        return len(self.extrusion.points)

    @property
    def travel_points(self) -> int:
        return len(self.travel.points)

    def memory_usage_mb(self) -> float:
        return (self.extrusion.memory_bytes + self.travel.memory_bytes) / (1024 * 1024)

    def to_float32_base64(self) -> Dict[str, Any]:
        """Float32 바이너리 (base64) 형식으로 채널 내보내기"""
        return {
            "encoding": "float32-le-base64",
            "extrusion": floats_to_float32_base64(self.extrusion.flat()),
            "extrusionColors": floats_to_float32_base64(self.extrusion.flat_colors()),
            "travel": floats_to_float32_base64(self.travel.flat()),
            "extrusionPoints": self.extrusion_points,
            "travelPoints": self.travel_points,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "extrusion": self.extrusion.flat(),
            "extrusionColors": self.extrusion.flat_colors(),
            "travel": self.travel.flat(),
            "extrusionPoints": self.extrusion_points,
            "travelPoints": self.travel_points,
        }

    def stats(self) -> Dict[str, Any]:
        return {
            "extrusion_points": self.extrusion_points,
            "travel_points": self.travel_points,
            "trimmed_points": self.extrusion.trimmed_points + self.travel.trimmed_points,
            "emitted_segments": self.emitted_segments,
            "point_cap": self.point_cap,
            "notify_batch_size": self.notify_batch_size(),
            "memory_mb": round(self.memory_usage_mb(), 3),
            "filament_color": self.filament_color,
        }

    def __repr__(self):
        return (f"GeometryBuffer(extrusion={self.extrusion_points}, travel={self.travel_points}, "
                f"cap={self.point_cap})")
