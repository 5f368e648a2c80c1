import os
import logging
from typing import Any, Optional

from dotenv import load_dotenv

# Load .env BEFORE importing modules that use environment variables
load_dotenv()

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.requests import Request
from pydantic import BaseModel

from gcode_simulator.api.router import router as simulator_router
from gcode_simulator.api.session_store import list_sessions
from gcode_simulator.errors import SimulatorError

ALLOWED_ORIGINS_RAW = os.getenv("ALLOWED_ORIGINS", "*")
ALLOWED_ORIGINS = [o.strip() for o in ALLOWED_ORIGINS_RAW.split(",")] if ALLOWED_ORIGINS_RAW else ["*"]

logger = logging.getLogger("uvicorn.error")
logger.info(f"[CORS] ALLOWED_ORIGINS loaded: {ALLOWED_ORIGINS}")

app = FastAPI(title="G-code Simulator API", version="1.0.0")

# G-code 시뮬레이터 API 라우터 등록
app.include_router(simulator_router)

# CORS 설정 (개발 환경용 - 프로덕션에서는 NGINX에서 처리)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if ALLOWED_ORIGINS != ["*"] else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ApiResponse(BaseModel):
    status: str
    data: Optional[Any] = None
    error: Optional[str] = None


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "error": str(exc.detail)},
    )


@app.exception_handler(SimulatorError)
async def simulator_exception_handler(request: Request, exc: SimulatorError):
    logger.warning("Simulator error: %s", exc)
    return JSONResponse(
        status_code=400,
        content={"status": "error", "error": exc.error_code, "message": str(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "error": "Internal server error"},
    )


@app.get("/health", response_model=ApiResponse)
async def health():
    return ApiResponse(status="ok", data={"service": "alive", "sessions": len(list_sessions())})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=7000, reload=True)
