import csv
import io
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from typing import List, Optional
import logging

from attendance_service.admin import backend_error, register_student
from attendance_service.attendance import current_day
from attendance_service.deps import authenticate_token, get_backend, get_recognizer, require_staff
from attendance_service.exceptions import BackendError
from attendance_service.face_recognition import FaceRecognizer
from attendance_service.firebase_service import FirebaseService
from attendance_service.models import (
    AttendanceRecord,
    AttendanceSummary,
    ClassItem,
    StudentCreate,
    StudentOut,
)
from attendance_service.realtime import ATTENDANCE_CHANNEL
from attendance_service.ws_manager import manager

router = APIRouter(prefix="/dashboard", dependencies=[Depends(require_staff)])
ws_router = APIRouter()
logger = logging.getLogger(__name__)

CSV_HEADERS = ["Name", "Roll Number", "Date", "Time", "Status"]


def filtered_attendance(backend: FirebaseService, date: Optional[str], class_id: Optional[str]) -> List[AttendanceRecord]:
    date = date or current_day()[0]
    try:
        records = backend.list_attendance(date)
    except BackendError as e:
        raise backend_error(e)
    if class_id:
        records = [r for r in records if r.class_id == class_id]
    return records


def summarize(date: str, records: List[AttendanceRecord]) -> AttendanceSummary:
    present = sum(1 for r in records if r.status == "present")
    return AttendanceSummary(date=date, present=present, absent=len(records) - present, total=len(records))


@router.get("/attendance", response_model=List[AttendanceRecord])
def list_attendance(
    date: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    class_id: Optional[str] = None,
    backend: FirebaseService = Depends(get_backend),
):
    return filtered_attendance(backend, date, class_id)


@router.get("/summary", response_model=AttendanceSummary)
def attendance_summary(
    date: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    class_id: Optional[str] = None,
    backend: FirebaseService = Depends(get_backend),
):
    date = date or current_day()[0]
    return summarize(date, filtered_attendance(backend, date, class_id))


@router.get("/attendance.csv")
def export_attendance(
    date: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    class_id: Optional[str] = None,
    backend: FirebaseService = Depends(get_backend),
):
    date = date or current_day()[0]
    records = filtered_attendance(backend, date, class_id)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for r in records:
        writer.writerow([r.student_name or "", r.roll_number or "", r.date, r.time, r.status])

    logger.info("Exported %d attendance rows for %s", len(records), date)
    return StreamingResponse(
        iter([buffer.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="attendance-{date}.csv"'},
    )


@router.get("/classes", response_model=List[ClassItem])
def list_classes(backend: FirebaseService = Depends(get_backend)):
    try:
        return backend.list_classes()
    except BackendError as e:
        raise backend_error(e)


@router.get("/students", response_model=List[StudentOut])
def list_students(class_id: Optional[str] = None, backend: FirebaseService = Depends(get_backend)):
    try:
        students = backend.list_students()
    except BackendError as e:
        raise backend_error(e)
    return [StudentOut.from_student(s) for s in students if not class_id or s.class_id == class_id]


@router.post("/students", response_model=StudentOut, status_code=status.HTTP_201_CREATED)
def create_student(
    payload: StudentCreate,
    backend: FirebaseService = Depends(get_backend),
    recognizer: FaceRecognizer = Depends(get_recognizer),
):
    if not payload.image and payload.embedding is None:
        raise HTTPException(status_code=422, detail="Face photo is required for new students")
    return register_student(payload, backend, recognizer)


@ws_router.websocket("/ws/attendance")
async def attendance_feed(websocket: WebSocket, token: str = Query(...), backend: FirebaseService = Depends(get_backend)):
    """
    Dashboards listen here and refetch when an attendance_changed event arrives.
    """
    try:
        user = authenticate_token(token, backend)
    except HTTPException as e:
        logger.warning("WebSocket rejected: %s", e.detail)
        await websocket.close(code=4003)
        return
    if user.role not in ("teacher", "admin"):
        await websocket.close(code=4003)
        return

    await manager.connect(websocket, ATTENDANCE_CHANNEL)
    try:
        while True:
            # Keep alive / Heartbeat
            msg = await websocket.receive_text()
            logger.debug("WebSocket heartbeat received: %s", msg)
    except WebSocketDisconnect:
        manager.disconnect(websocket, ATTENDANCE_CHANNEL)
    except Exception as e:
        logger.error("WebSocket error for user %s: %s", user.uid, e)
        manager.disconnect(websocket, ATTENDANCE_CHANNEL)
