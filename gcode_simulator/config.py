"""
G-code Simulator Configuration
하드코딩 제거를 위한 설정 파일
"""
import os
from typing import Optional

import dotenv
from pydantic import BaseModel, Field


class PlaybackConfig(BaseModel):
    """재생/탐색 설정"""
    # Ingestion
    chunk_size: int = Field(64 * 1024, gt=0)       # 스트리밍 청크 크기 (bytes)
    encoding: str = "utf-8"

    # Printer state (canonical initial values)
    default_feed_rate: float = 1500.0              # mm/min
    absolute_positioning_default: bool = True      # G90
    absolute_extrusion_default: bool = False       # M83 (relative E)

    # Playback
    tick_budget_ms: float = 16.0                   # 틱당 최대 처리 시간
    min_playback_speed: float = 0.1
    max_playback_speed: float = 10000.0
    default_playback_speed: float = 1.0

    # Seek / replay
    replay_batch_size: int = Field(1000, gt=0)     # 배치마다 yield
    seek_poll_interval: float = 0.1                # 스트리밍 대기 폴링 간격 (초)
    seek_stall_timeout: float = 10.0               # 로딩이 멈춘 것으로 판단하는 시간 (초)

    # Geometry
    default_point_cap: int = 100_000
    filament_color: str = "#FF4444"

    # Events
    event_queue_size: int = 1000                   # 구독자별 큐 크기


_ENV_PREFIX = "GCODE_SIM_"


def get_default_config() -> PlaybackConfig:
    return PlaybackConfig()


def load_config_from_env(env_file: Optional[str] = None) -> PlaybackConfig:
    """
    환경 변수에서 설정 로드

    GCODE_SIM_CHUNK_SIZE=131072 처럼 필드명을 대문자로 하고 접두사를 붙인다.
    설정되지 않은 값은 기본값을 사용한다.
    """
    dotenv.load_dotenv(env_file)

    overrides = {}
    for name in PlaybackConfig.model_fields:
        value = os.getenv(f"{_ENV_PREFIX}{name.upper()}")
        if value is not None and value != "":
            overrides[name] = value

    return PlaybackConfig(**overrides)
