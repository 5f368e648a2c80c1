"""
Simulator error taxonomy

- Parse 오류는 예외로 올라오지 않는다 (라인을 버림)
- Memory pressure 역시 예외가 아니다 (trim으로 복구)
"""
from typing import Optional


class SimulatorError(Exception):
    """시뮬레이터 기본 에러"""
    error_code = "simulator_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code


class IngestionError(SimulatorError):
    """바이트 소스 실패 - 세션 치명적, reset() 필요"""
    error_code = "ingestion_failed"

    def __init__(self, message: str, bytes_consumed: int = 0, lines_seen: int = 0):
        super().__init__(message)
        self.bytes_consumed = bytes_consumed
        self.lines_seen = lines_seen


class SeekTimeoutError(SimulatorError):
    """목표 명령이 제한 시간 내에 로드되지 않음 (재시도 가능)"""
    error_code = "seek_timeout"

    def __init__(self, message: str, target: int, loaded: int, retry_after: float = 0.0):
        super().__init__(message)
        self.target = target
        self.loaded = loaded
        self.retry_after = retry_after


class SeekCancelledError(SimulatorError):
    """stop()/reset() 으로 중단된 탐색"""
    error_code = "seek_cancelled"


class CommandIndexError(SimulatorError, IndexError):
    """Command Store 범위 밖 접근"""
    error_code = "command_index_out_of_range"

    def __init__(self, index: int, size: int):
        super().__init__(f"Command index {index} out of range (loaded={size})")
        self.index = index
        self.size = size


class InvalidStateError(SimulatorError):
    """현재 재생 상태에서 허용되지 않는 동작"""
    error_code = "invalid_state"


class StoreCorruptionError(SimulatorError):
    """내부 불변식 위반 - 세션 치명적"""
    error_code = "store_corruption"
