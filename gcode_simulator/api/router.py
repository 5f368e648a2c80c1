"""
G-code 시뮬레이터 API 라우터
main.py에 등록하여 사용
"""
import os
import json
import asyncio
import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Body, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from gcode_simulator.api.session_store import (
    cleanup_expired,
    delete_session,
    get_session,
    list_sessions,
    set_session,
)
from gcode_simulator.config import load_config_from_env
from gcode_simulator.engine import SimulationEngine
from gcode_simulator.errors import (
    CommandIndexError,
    InvalidStateError,
    SeekCancelledError,
    SeekTimeoutError,
)
from gcode_simulator.models import ControlAction, PrinterSnapshot
from gcode_simulator.sources import stream_from_bytes, stream_from_upload, stream_from_url

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api/v1/simulator", tags=["G-code Simulator"])

SESSION_TTL = float(os.getenv("GCODE_SIM_SESSION_TTL", "3600"))
STREAM_IDLE_INTERVAL = 1.0      # 이벤트가 없을 때 스냅샷 전송 간격 (초)

# ============================================================
# Request/Response Models
# ============================================================

class SessionCreateRequest(BaseModel):
    """세션 생성 요청 (JSON)

    gcode_content 또는 gcode_url 중 하나 필요
    """
    gcode_content: Optional[str] = None
    gcode_url: Optional[str] = None      # Supabase Storage 등
    session_id: Optional[str] = None
    playback_speed: Optional[float] = Field(None, gt=0)
    filament_color: Optional[str] = Field(None, pattern=r"^#?[0-9A-Fa-f]{6}$")
    auto_start: bool = False


class SessionCreateResponse(BaseModel):
    session_id: str
    status: str
    stream_url: str
    snapshot: PrinterSnapshot


# ============================================================
# Helpers
# ============================================================

def _get_engine_or_404(session_id: str) -> SimulationEngine:
    engine = get_session(session_id)
    if engine is None:
        raise HTTPException(status_code=404, detail="세션을 찾을 수 없습니다.")
    return engine


def _new_engine(request_speed: Optional[float], filament_color: Optional[str]) -> SimulationEngine:
    engine = SimulationEngine(config=load_config_from_env())
    if request_speed is not None:
        engine.set_playback_speed(request_speed)
    if filament_color:
        engine.set_filament_color(filament_color)
    return engine


def _create_response(session_id: str, engine: SimulationEngine) -> SessionCreateResponse:
    return SessionCreateResponse(
        session_id=session_id,
        status=engine.state.value,
        stream_url=f"/api/v1/simulator/sessions/{session_id}/stream",
        snapshot=engine.snapshot(),
    )


# ============================================================
# API Endpoints
# ============================================================

@router.get("/")
async def simulator_info():
    """G-code 시뮬레이터 정보"""
    return {
        "service": "G-code Simulator",
        "version": "1.0.0",
        "description": "G-code 스트리밍 로딩 + 결정적 재생/탐색 API",
        "endpoints": {
            "create": "POST /api/v1/simulator/sessions - 세션 생성 (JSON, 백그라운드 로딩)",
            "upload": "POST /api/v1/simulator/sessions/upload - 파일 업로드로 세션 생성",
            "snapshot": "GET /api/v1/simulator/sessions/{session_id}",
            "control": "POST /api/v1/simulator/sessions/{session_id}/control",
            "geometry": "GET /api/v1/simulator/sessions/{session_id}/geometry - Float32+Base64",
            "commands": "GET /api/v1/simulator/sessions/{session_id}/commands",
            "stream": "GET /api/v1/simulator/sessions/{session_id}/stream - SSE",
            "delete": "DELETE /api/v1/simulator/sessions/{session_id}",
        },
        "actions": [
            "start", "pause", "resume", "stop", "reset",
            "step_back", "step_forward", "jump_to",
            "set_playback_speed", "set_geometry_point_cap", "set_filament_color",
        ],
        "active_sessions": len(list_sessions()),
    }


@router.post("/sessions", response_model=SessionCreateResponse)
async def create_session(request: SessionCreateRequest):
    """
    시뮬레이션 세션 생성

    - gcode_content: G-code 문자열
    - gcode_url: G-code 파일 URL (스트리밍 다운로드)

    로딩은 백그라운드에서 진행되며, 로딩 중에도 재생/탐색이 가능하다.
    """
    if not request.gcode_content and not request.gcode_url:
        raise HTTPException(status_code=400, detail="gcode_content 또는 gcode_url 이 필요합니다.")

    cleanup_expired(SESSION_TTL)

    session_id = request.session_id or str(uuid.uuid4())
    engine = _new_engine(request.playback_speed, request.filament_color)
    set_session(session_id, engine)

    if request.gcode_content:
        data = request.gcode_content.encode(engine.config.encoding)
        engine.load_in_background(stream_from_bytes(data, engine.config.chunk_size), total_bytes=len(data))
    else:
        engine.load_in_background(stream_from_url(request.gcode_url, engine.config.chunk_size))

    if request.auto_start:
        # 첫 명령이 적재되는 시점에 시작 (주석 헤더만 있는 청크는 건너뜀)
        engine.start_when_ready()

    logger.info(f"[Simulator] Session created: {session_id}")
    return _create_response(session_id, engine)


@router.post("/sessions/upload", response_model=SessionCreateResponse)
async def create_session_from_upload(
    file: UploadFile = File(...),
    session_id: Optional[str] = Query(None),
    playback_speed: Optional[float] = Query(None, gt=0),
):
    """
    업로드 파일로 세션 생성

    업로드 본문은 청크 단위로 읽어 적재한다 (전체 파일을 한 번에 읽지 않음).
    """
    cleanup_expired(SESSION_TTL)

    session_id = session_id or str(uuid.uuid4())
    engine = _new_engine(playback_speed, None)
    set_session(session_id, engine)

    # 업로드 파일은 요청이 끝나면 닫히므로 응답 전에 적재를 마친다
    await engine.load_logged(stream_from_upload(file, engine.config.chunk_size), file.size)

    logger.info(f"[Simulator] Session created from upload: {session_id} ({file.filename})")
    return _create_response(session_id, engine)


@router.get("/sessions/{session_id}", response_model=PrinterSnapshot)
async def get_snapshot(session_id: str):
    """현재 상태 스냅샷"""
    return _get_engine_or_404(session_id).snapshot()


@router.post("/sessions/{session_id}/control", response_model=PrinterSnapshot)
async def control_session(session_id: str, action: ControlAction = Body(...)):
    """
    재생 제어

    body 예: {"action": "jump_to", "index": 1200}
    """
    engine = _get_engine_or_404(session_id)
    try:
        return await engine.dispatch(action)
    except SeekTimeoutError as e:
        logger.warning(f"[Simulator] Seek timeout on {session_id}: {e}")
        return JSONResponse(
            status_code=408,
            content={
                "error": e.error_code,
                "message": str(e),
                "target": e.target,
                "loaded": e.loaded,
                "retry_after": e.retry_after,
            },
            headers={"Retry-After": str(max(1, int(e.retry_after)))},
        )
    except (SeekCancelledError, InvalidStateError) as e:
        logger.warning(f"[Simulator] Control rejected on {session_id}: {e}")
        return JSONResponse(
            status_code=409,
            content={"error": e.error_code, "message": str(e)},
        )
    except CommandIndexError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/sessions/{session_id}/geometry")
async def get_geometry(session_id: str):
    """지오메트리 버퍼 (Float32Array + Base64)"""
    engine = _get_engine_or_404(session_id)
    data = engine.geometry.to_float32_base64()
    data["stats"] = engine.geometry.stats()
    bounds = engine.store.bounds.to_model()
    data["bounds"] = bounds.model_dump() if bounds else None
    return data


@router.get("/sessions/{session_id}/commands")
async def get_commands(
    session_id: str,
    start: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
):
    """명령 히스토리 (원본 라인)"""
    engine = _get_engine_or_404(session_id)
    commands = engine.commands(start, limit)
    return {
        "start": start,
        "count": len(commands),
        "loaded": engine.store.loaded_count,
        "current_index": engine.machine.state.command_index,
        "commands": [c.model_dump() for c in commands],
    }


@router.get("/sessions/{session_id}/stream")
async def stream_session(session_id: str):
    """
    SSE 스트리밍으로 엔진 이벤트 전송

    이벤트가 없으면 STREAM_IDLE_INTERVAL 마다 snapshot 이벤트 전송
    """
    engine = _get_engine_or_404(session_id)

    async def event_generator():
        queue = engine.events.queue()
        try:
            yield f"event: snapshot\ndata: {engine.snapshot().model_dump_json()}\n\n"
            while not engine.is_disposed:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=STREAM_IDLE_INTERVAL)
                except asyncio.TimeoutError:
                    yield f"event: snapshot\ndata: {engine.snapshot().model_dump_json()}\n\n"
                    continue
                yield f"event: {event.type}\ndata: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
        finally:
            engine.events.close_queue(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )


@router.delete("/sessions/{session_id}")
async def delete_simulation_session(session_id: str):
    if not delete_session(session_id):
        raise HTTPException(status_code=404, detail="세션을 찾을 수 없습니다.")
    return {"session_id": session_id, "status": "deleted"}
