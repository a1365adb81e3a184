"""Recognise-and-mark workflow.

A recognition attempt reads every enrolled embedding once, picks the
nearest student under the acceptance threshold and records one "present"
row for that student and calendar day. Repeated scans on the same day
converge to the same single row.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

import pytz

from attendance_service.config import settings
from attendance_service.embeddings import validate_query_embedding
from attendance_service.exceptions import BackendError, DuplicateAttendanceError, FaceNotDetectedError
from attendance_service.face_recognition import FaceRecognizer
from attendance_service.firebase_service import FirebaseService
from attendance_service.models import AttendanceRecord, RecognitionResult, RecognitionStatus, Student

logger = logging.getLogger(__name__)


@dataclass
class AttendanceOutcome:
    status: RecognitionStatus
    record: Optional[AttendanceRecord] = None


def current_day(now: Optional[datetime] = None, timezone: str = None):
    """Return (ISO date, HH:MM:SS) in the attendance timezone."""
    tz = pytz.timezone(timezone or settings.TIMEZONE)
    now = now.astimezone(tz) if now else datetime.now(tz)
    return now.date().isoformat(), now.strftime("%H:%M:%S")


def truncate_device_id(device_id: Optional[str]) -> Optional[str]:
    if not device_id:
        return None
    return device_id[:settings.DEVICE_ID_MAX_LENGTH]


class AttendanceService:
    def __init__(self, backend: FirebaseService, recognizer: FaceRecognizer, clock=None):
        self.backend = backend
        self.recognizer = recognizer
        self.clock = clock or current_day

    def mark_attendance(self, student: Student, device_id: Optional[str] = None) -> AttendanceOutcome:
        """
        Record ``student`` as present today.

        Check first, then insert. If the insert loses a race and the backend
        reports the row as existing, the result is the same as the check
        finding it: ALREADY_MARKED.
        """
        today, now = self.clock()
        logger.info("Checking attendance for %s on %s...", student.name, today)

        existing = self.backend.find_attendance(student.id, today)
        if existing is not None:
            logger.info("Attendance already marked for %s today", student.name)
            return AttendanceOutcome(RecognitionStatus.ALREADY_MARKED, existing)

        try:
            record = self.backend.insert_attendance(
                student.id, today, now, device_id=truncate_device_id(device_id)
            )
        except DuplicateAttendanceError:
            logger.info("Attendance already marked for %s today (caught duplicate error)", student.name)
            return AttendanceOutcome(RecognitionStatus.ALREADY_MARKED, self.backend.find_attendance(student.id, today))

        logger.info("Attendance marked successfully for %s", student.name)
        return AttendanceOutcome(RecognitionStatus.SUCCESS, record)

    def recognize_and_mark(self, embedding: Sequence[float], device_id: Optional[str] = None) -> RecognitionResult:
        """
        Match an embedding against enrolled students and mark attendance.

        Raises InvalidEmbeddingError for a malformed query and BackendError
        when Firebase fails; every other outcome is a RecognitionResult.
        """
        query = validate_query_embedding(embedding, self.recognizer.dimension)
        students = self.backend.list_students(with_embedding_only=True)
        if not students:
            logger.info("No students with face embeddings found")
            return RecognitionResult(status=RecognitionStatus.NO_MATCH, message="No enrolled faces to compare against")

        match = self.recognizer.recognize(query, students)
        if match is None:
            return RecognitionResult(status=RecognitionStatus.NO_MATCH, message="No matching student found")

        student = match.student
        outcome = self.mark_attendance(student, device_id)
        if outcome.status == RecognitionStatus.ALREADY_MARKED:
            message = f"{student.name} is already present today"
        else:
            message = f"Welcome, {student.name}!"

        return RecognitionResult(
            status=outcome.status,
            student_id=student.id,
            student_name=student.name,
            roll_number=student.roll_number,
            class_name=student.class_name or "Unknown",
            distance=match.distance,
            message=message,
        )

    def recognize_image_and_mark(self, image: str, device_id: Optional[str] = None) -> RecognitionResult:
        """Same as recognize_and_mark, starting from a base64 webcam frame."""
        try:
            embedding = self.recognizer.embedding_from_base64(image)
        except FaceNotDetectedError as e:
            logger.info("No face in submitted frame: %s", e)
            return RecognitionResult(status=RecognitionStatus.NO_FACE,
                                     message="No face detected. Please position your face clearly in the camera frame.")
        return self.recognize_and_mark(embedding, device_id)

    def process(self, image: Optional[str], embedding: Optional[Sequence[float]],
                device_id: Optional[str] = None) -> RecognitionResult:
        """Entry point shared by the recognition endpoint and kiosk sessions."""
        try:
            if embedding is not None:
                return self.recognize_and_mark(embedding, device_id)
            return self.recognize_image_and_mark(image, device_id)
        except BackendError as e:
            logger.error("Error marking attendance: %s", e)
            return RecognitionResult(status=RecognitionStatus.ERROR,
                                     message="Failed to mark attendance. Please try again.")
