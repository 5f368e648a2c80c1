"""
공용 테스트 픽스처
"""
import pytest

from gcode_simulator.command_store import CommandStore
from gcode_simulator.parser import parse_lines

SCENARIO_A = [
    "G1 X10 Y0 E1",
    "G1 X10 Y10 E1",
    "G0 X0 Y0",
]


def _build_store(lines, finished=True):
    store = CommandStore()
    store.append(parse_lines(lines))
    if finished:
        store.finish()
    return store


def _make_program(count, layer_size=1000):
    """count 개의 이동 명령 (모두 실제 이동, 일정 간격으로 압출/이동 교대)"""
    lines = []
    for i in range(count):
        x = i % 100
        y = (i // 100) % 100
        z = 0.2 * (i // layer_size + 1)
        if i % 5 == 4:
            lines.append(f"G0 X{x} Y{y} Z{z:.2f} F6000")
        else:
            lines.append(f"G1 X{x} Y{y} Z{z:.2f} E0.05 F1800")
    return lines


@pytest.fixture
def scenario_a():
    return list(SCENARIO_A)


@pytest.fixture
def build_store():
    return _build_store


@pytest.fixture
def make_program():
    return _make_program
