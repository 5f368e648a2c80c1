"""
Printer State Machine - G-code 명령 해석기

명령 하나를 적용하고 이동이 있으면 PathSegment를 반환한다.
벽시계 시간이나 재생 상태에 의존하지 않으므로
동일한 명령 시퀀스는 항상 동일한 상태를 만든다.
"""
import dataclasses
import math
from dataclasses import dataclass
from typing import Optional, Set

from .config import PlaybackConfig, get_default_config
from .models import GCodeCommand, PathSegment

MOVEMENT_THRESHOLD = 0.001
EXTRUSION_THRESHOLD = 0.001


@dataclass
class PrinterState:
    """프린터 상태 (재생 커서 포함)"""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    e: float = 0.0
    feed_rate: float = 1500.0           # mm/min
    hotend_temperature: float = 0.0
    bed_temperature: float = 0.0
    fan_speed: float = 0.0              # 0 ~ 100 (%)
    absolute_positioning: bool = True   # G90/G91
    absolute_extrusion: bool = False    # M82/M83
    command_index: int = 0              # 적용된 명령 수
    elapsed_time: float = 0.0           # 시뮬레이션 초
    is_extruding: bool = False
    layer: int = 0                      # 압출이 일어난 서로 다른 Z 높이 수

    @property
    def position(self):
        return (self.x, self.y, self.z)


class PrinterStateMachine:
    """G-code 명령을 PrinterState에 적용"""

    def __init__(self, config: Optional[PlaybackConfig] = None):
        self.config = config or get_default_config()
        self.state = self._initial_state()
        self._extrusion_heights: Set[float] = set()

    def _initial_state(self) -> PrinterState:
        return PrinterState(
            feed_rate=self.config.default_feed_rate,
            absolute_positioning=self.config.absolute_positioning_default,
            absolute_extrusion=self.config.absolute_extrusion_default,
        )

    def reset(self):
        """초기 상태로 복원"""
        self.state = self._initial_state()
        self._extrusion_heights = set()

    def snapshot(self) -> PrinterState:
        return dataclasses.replace(self.state)

    def apply(self, command: GCodeCommand) -> Optional[PathSegment]:
        """
        명령 하나를 적용하고 커서를 1 증가

        Returns:
            이동이 있었으면 PathSegment, 아니면 None
        """
        segment = None
        cmd = command.command
        params = command.params
        state = self.state

        if cmd in ('G0', 'G1'):
            segment = self._process_move(command)
        elif cmd in ('G2', 'G3'):
            # 원호는 끝점까지 직선으로 근사
            segment = self._process_move(command, is_arc=True)
        elif cmd == 'G4':
            # 드웰: P는 ms, S는 초
            if 'P' in params:
                state.elapsed_time += params['P'] / 1000.0
            elif 'S' in params:
                state.elapsed_time += params['S']
        elif cmd == 'G90':
            state.absolute_positioning = True
        elif cmd == 'G91':
            state.absolute_positioning = False
        elif cmd == 'G92':
            # 논리 위치 재설정 (지오메트리 없음)
            if 'X' in params:
                state.x = params['X']
            if 'Y' in params:
                state.y = params['Y']
            if 'Z' in params:
                state.z = params['Z']
            if 'E' in params:
                state.e = params['E']
        elif cmd == 'M82':
            state.absolute_extrusion = True
        elif cmd == 'M83':
            state.absolute_extrusion = False
        elif cmd in ('M104', 'M109'):
            if 'S' in params:
                state.hotend_temperature = params['S']
        elif cmd in ('M140', 'M190'):
            if 'S' in params:
                state.bed_temperature = params['S']
        elif cmd == 'M106':
            if 'S' in params:
                # S: 0~255 -> %
                state.fan_speed = float(round(params['S'] / 255 * 100))
            else:
                state.fan_speed = 100.0
        elif cmd == 'M107':
            state.fan_speed = 0.0

        state.command_index += 1
        return segment

    def _process_move(self, command: GCodeCommand, is_arc: bool = False) -> Optional[PathSegment]:
        """G0/G1 (및 근사된 G2/G3) 이동 처리"""
        params = command.params
        state = self.state
        absolute = state.absolute_positioning

        start = (state.x, state.y, state.z)

        new_x, new_y, new_z = start
        if 'X' in params:
            new_x = params['X'] if absolute else state.x + params['X']
        if 'Y' in params:
            new_y = params['Y'] if absolute else state.y + params['Y']
        if 'Z' in params:
            new_z = params['Z'] if absolute else state.z + params['Z']

        e_delta = 0.0
        if 'E' in params:
            new_e = params['E'] if state.absolute_extrusion else state.e + params['E']
            e_delta = new_e - state.e
            state.e = new_e

        if 'F' in params and params['F'] > 0:
            state.feed_rate = params['F']

        end = (new_x, new_y, new_z)
        state.x, state.y, state.z = end

        is_extrusion = e_delta > EXTRUSION_THRESHOLD
        state.is_extruding = is_extrusion

        # 시뮬레이션 시간: 이동 거리 / 이송 속도 (순수 압출이면 E 길이)
        distance = math.dist(start, end)
        travel = distance if distance > 0 else abs(e_delta)
        if state.feed_rate > 0:
            state.elapsed_time += travel / state.feed_rate * 60.0

        has_movement = any(abs(b - a) > MOVEMENT_THRESHOLD for a, b in zip(start, end))
        if not has_movement:
            return None

        if is_extrusion:
            height = round(new_z, 2)
            if height not in self._extrusion_heights:
                self._extrusion_heights.add(height)
                state.layer = len(self._extrusion_heights)

        return PathSegment(
            start=start,
            end=end,
            extrusion_amount=abs(e_delta),
            is_extrusion=is_extrusion,
            is_travel=not is_extrusion,
            is_arc=is_arc,
            line_number=command.line_number,
        )
