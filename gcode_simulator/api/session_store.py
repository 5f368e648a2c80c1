"""
메모리 기반 시뮬레이션 세션 저장소

엔진은 asyncio 태스크와 콜백을 가지므로 파일로 직렬화할 수 없다.
단일 워커 프로세스 안에서만 공유된다.
"""
import logging
import threading
import time
from typing import Dict, List, Optional

from gcode_simulator.engine import SimulationEngine

logger = logging.getLogger("uvicorn.error")

_sessions: Dict[str, SimulationEngine] = {}
_created_at: Dict[str, float] = {}
_lock = threading.Lock()


def set_session(session_id: str, engine: SimulationEngine):
    with _lock:
        previous = _sessions.get(session_id)
        _sessions[session_id] = engine
        _created_at[session_id] = time.time()
    if previous is not None and previous is not engine:
        previous.dispose()


def get_session(session_id: str) -> Optional[SimulationEngine]:
    return _sessions.get(session_id)


def exists(session_id: str) -> bool:
    return session_id in _sessions


def delete_session(session_id: str) -> bool:
    """
    세션 삭제 (엔진 dispose 포함)

    Returns:
        삭제 여부
    """
    with _lock:
        engine = _sessions.pop(session_id, None)
        _created_at.pop(session_id, None)
    if engine is None:
        return False
    engine.dispose()
    logger.info(f"[Simulator] Session deleted: {session_id}")
    return True


def list_sessions() -> List[str]:
    return list(_sessions.keys())


def cleanup_expired(max_age_seconds: float) -> int:
    """생성 후 max_age_seconds 가 지난 세션 정리"""
    now = time.time()
    expired = [sid for sid, created in list(_created_at.items()) if now - created > max_age_seconds]
    for session_id in expired:
        delete_session(session_id)
    if expired:
        logger.info(f"[Simulator] Cleaned up {len(expired)} expired sessions")
    return len(expired)


def clear_all():
    for session_id in list_sessions():
        delete_session(session_id)
