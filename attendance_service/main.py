import asyncio
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.concurrency import run_in_threadpool
from typing import Optional
import logging

from attendance_service import deps
from attendance_service.admin import router as admin_router
from attendance_service.attendance import AttendanceService
from attendance_service.auth import router as auth_router
from attendance_service.config import settings
from attendance_service.dashboard import router as dashboard_router, ws_router as dashboard_ws_router
from attendance_service.deps import get_attendance_service
from attendance_service.exceptions import InvalidEmbeddingError
from attendance_service.firebase_service import FirebaseService
from attendance_service.kiosk import router as kiosk_router
from attendance_service.models import RecognitionResult, RecognizeRequest
from attendance_service.realtime import AttendanceFeed

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("attendance_service")

app = FastAPI(
    title=settings.APP_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# CORS config
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router, prefix="/auth", tags=["Auth"])
app.include_router(kiosk_router, tags=["Kiosk"])
app.include_router(admin_router, prefix="/admin", tags=["Admin"])
app.include_router(dashboard_router, tags=["Dashboard"])
app.include_router(dashboard_ws_router, tags=["Dashboard"])

attendance_feed: Optional[AttendanceFeed] = None

@app.on_event("startup")
async def startup_event():
    """Initialize Firebase and the attendance change feed on startup."""
    global attendance_feed
    try:
        deps.firebase_service = FirebaseService()
        logger.info("Firebase service initialized")
    except Exception as e:
        logger.error("Failed to initialize Firebase service: %s", e)
        logger.warning("Attendance marking will not be available")
        return

    try:
        attendance_feed = AttendanceFeed(deps.firebase_service)
        attendance_feed.start(asyncio.get_running_loop())
    except Exception as e:
        attendance_feed = None
        logger.error("Failed to subscribe to attendance changes: %s", e)
        logger.warning("Dashboards will not refresh automatically")

@app.on_event("shutdown")
async def shutdown_event():
    if attendance_feed is not None:
        attendance_feed.stop()

@app.get("/", tags=["Health"])
async def health_check():
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "firebase": deps.firebase_service is not None,
        "realtime": attendance_feed is not None,
    }

@app.post("/attendance/recognize", response_model=RecognitionResult, tags=["Attendance"])
async def recognize(
    request: RecognizeRequest,
    http_request: Request,
    service: AttendanceService = Depends(get_attendance_service),
):
    """
    Mark attendance from a single capture.

    Workflow:
    1. Extract the embedding from the frame (unless the client sent one)
    2. Compare with every enrolled student's stored embedding
    3. Mark as present if the closest one is under the threshold
    """
    if request.image is None and request.embedding is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Provide an image or an embedding"
        )

    device_id = request.device_id or http_request.headers.get("user-agent")
    try:
        result = await run_in_threadpool(service.process, request.image, request.embedding, device_id)
    except InvalidEmbeddingError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    logger.info("Recognition result: %s", result.status.value)
    return result
