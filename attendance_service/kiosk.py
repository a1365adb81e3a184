from enum import Enum
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
import uuid
from datetime import datetime
from typing import Dict, Any, Optional
import logging

from attendance_service.attendance import AttendanceService
from attendance_service.config import settings
from attendance_service.deps import get_attendance_service
from attendance_service.exceptions import InvalidEmbeddingError
from attendance_service.models import RecognitionResult, RecognitionStatus, RecognizeRequest

router = APIRouter()
logger = logging.getLogger(__name__)

class KioskStatus(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    SUCCESS = "success"
    ALREADY_MARKED = "already-marked"
    ERROR = "error"

FINISHED = {KioskStatus.SUCCESS, KioskStatus.ALREADY_MARKED, KioskStatus.ERROR}

# Recognition outcome -> kiosk screen; no-face and no-match keep scanning
OUTCOME_STATUS = {
    RecognitionStatus.SUCCESS: KioskStatus.SUCCESS,
    RecognitionStatus.ALREADY_MARKED: KioskStatus.ALREADY_MARKED,
    RecognitionStatus.ERROR: KioskStatus.ERROR,
}

# In-memory storage for active kiosk sessions
# token -> { "status", "in_flight", "result", "device_id", "created_at" }
kiosk_sessions: Dict[str, Dict[str, Any]] = {}

class KioskStartRequest(BaseModel):
    device_id: Optional[str] = None

class KioskSessionOut(BaseModel):
    token: str
    status: KioskStatus
    expires_in: int
    result: Optional[RecognitionResult] = None

class FrameResponse(BaseModel):
    token: str
    status: str  # a KioskStatus value, or "busy" when a frame is already being processed
    result: Optional[RecognitionResult] = None


def _cleanup_sessions() -> None:
    if not kiosk_sessions:
        return

    now = datetime.utcnow()
    expired = [
        token
        for token, data in kiosk_sessions.items()
        if (now - data["created_at"]).total_seconds() > settings.KIOSK_SESSION_TTL
    ]
    for token in expired:
        logger.info("Expiring kiosk session %s", token)
        kiosk_sessions.pop(token, None)


def _get_kiosk_session(token: str) -> Dict[str, Any]:
    _cleanup_sessions()
    session = kiosk_sessions.get(token)
    if session is None:
        raise HTTPException(status_code=404, detail="Invalid or expired session")
    return session


def _session_out(token: str, session: Dict[str, Any]) -> KioskSessionOut:
    age = int((datetime.utcnow() - session["created_at"]).total_seconds())
    return KioskSessionOut(
        token=token,
        status=session["status"],
        expires_in=max(0, settings.KIOSK_SESSION_TTL - age),
        result=session["result"],
    )


@router.post("/kiosk/sessions", response_model=KioskSessionOut)
async def start_kiosk_session(request: KioskStartRequest, http_request: Request):
    """Open the camera screen; the session starts scanning right away."""
    _cleanup_sessions()
    token = str(uuid.uuid4())
    kiosk_sessions[token] = {
        "status": KioskStatus.SCANNING,
        "in_flight": False,
        "result": None,
        "device_id": request.device_id or http_request.headers.get("user-agent"),
        "created_at": datetime.utcnow(),
    }
    logger.info("Kiosk session %s started", token)
    return _session_out(token, kiosk_sessions[token])


@router.get("/kiosk/sessions/{token}", response_model=KioskSessionOut)
async def fetch_kiosk_session(token: str):
    return _session_out(token, _get_kiosk_session(token))


@router.post("/kiosk/sessions/{token}/frames", response_model=FrameResponse)
async def submit_frame(
    token: str,
    request: RecognizeRequest,
    service: AttendanceService = Depends(get_attendance_service),
):
    """
    Submit one camera frame (or a client-side embedding).

    Frames arriving while the previous one is still being recognised are
    answered with "busy" and dropped. Once a student has been recognised
    the session holds its result until it is reset.
    """
    session = _get_kiosk_session(token)
    if request.image is None and request.embedding is None:
        raise HTTPException(status_code=422, detail="Provide an image or an embedding")

    if session["status"] == KioskStatus.IDLE:
        raise HTTPException(status_code=409, detail="Camera is not scanning")

    if session["status"] in FINISHED:
        return FrameResponse(token=token, status=session["status"].value, result=session["result"])

    if session["in_flight"]:
        logger.debug("Kiosk session %s busy, frame dropped", token)
        return FrameResponse(token=token, status="busy")

    session["in_flight"] = True
    try:
        result = await run_in_threadpool(
            service.process,
            request.image,
            request.embedding,
            request.device_id or session["device_id"],
        )
    except InvalidEmbeddingError as e:
        raise HTTPException(status_code=422, detail=str(e))
    finally:
        session["in_flight"] = False

    new_status = OUTCOME_STATUS.get(result.status, KioskStatus.SCANNING)
    session["status"] = new_status
    session["result"] = result
    logger.info("Kiosk session %s: %s -> %s", token, result.status.value, new_status.value)
    return FrameResponse(token=token, status=new_status.value, result=result)


@router.post("/kiosk/sessions/{token}/reset", response_model=KioskSessionOut)
async def reset_kiosk_session(token: str):
    """Start (or restart) scanning: "Start Camera", "Try Again", "Scan Another Student"."""
    session = _get_kiosk_session(token)
    session["status"] = KioskStatus.SCANNING
    session["result"] = None
    return _session_out(token, session)


@router.post("/kiosk/sessions/{token}/stop", response_model=KioskSessionOut)
async def stop_kiosk_session(token: str):
    """Camera stopped; back to the idle screen."""
    session = _get_kiosk_session(token)
    session["status"] = KioskStatus.IDLE
    session["result"] = None
    return _session_out(token, session)


@router.delete("/kiosk/sessions/{token}")
async def end_kiosk_session(token: str):
    session = kiosk_sessions.pop(token, None)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    logger.info("Kiosk session %s terminated", token)
    return {"status": "ended"}
