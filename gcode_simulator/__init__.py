from .config import PlaybackConfig, get_default_config, load_config_from_env
from .command_store import CommandStore
from .engine import SimulationEngine
from .errors import (
    SimulatorError,
    IngestionError,
    SeekTimeoutError,
    SeekCancelledError,
    CommandIndexError,
    InvalidStateError,
    StoreCorruptionError,
)
from .models import GCodeCommand, PathSegment, PlaybackState, PrinterSnapshot
from .parser import parse_line, parse_lines

__all__ = [
    'PlaybackConfig',
    'get_default_config',
    'load_config_from_env',
    'CommandStore',
    'SimulationEngine',
    'SimulatorError',
    'IngestionError',
    'SeekTimeoutError',
    'SeekCancelledError',
    'CommandIndexError',
    'InvalidStateError',
    'StoreCorruptionError',
    'GCodeCommand',
    'PathSegment',
    'PlaybackState',
    'PrinterSnapshot',
    'parse_line',
    'parse_lines',
]
