import itertools
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from attendance_service import deps, kiosk
from attendance_service.embeddings import serialize_embedding
from attendance_service.exceptions import AuthenticationError, DuplicateAttendanceError
from attendance_service.face_recognition import FaceRecognizer
from attendance_service.firebase_service import attendance_document_id
from attendance_service.main import app
from attendance_service.models import AttendanceRecord, ClassItem, Student, Teacher

DIM = 128
TODAY = "2026-10-19"


def vector(first: float = 0.0, dim: int = DIM) -> List[float]:
    """A vector whose distance from the origin equals ``first``."""
    return [first] + [0.0] * (dim - 1)


class FakeBackend:
    """In-memory stand-in for FirebaseService, keyed like the Firestore collections."""

    def __init__(self):
        self.classes: Dict[str, ClassItem] = {}
        self.students: Dict[str, dict] = {}
        self.teachers: Dict[str, Teacher] = {}
        self.profiles: Dict[str, str] = {"admin-uid": "admin", "teacher-uid": "teacher"}
        self.tokens = {"admin-token": "admin-uid", "teacher-token": "teacher-uid", "student-token": "student-uid"}
        self.attendance: Dict[str, AttendanceRecord] = {}
        self.photos: Dict[str, bytes] = {}
        self.bucket = None
        self.insert_calls = 0
        self.list_students_calls = 0
        self.hide_existing = False
        self.fail_with = None
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    # classes
    def list_classes(self):
        self._check()
        return sorted(self.classes.values(), key=lambda c: c.name)

    def get_class_names(self):
        return {c.id: c.name for c in self.classes.values()}

    def create_class(self, name):
        item = ClassItem(id=self._next_id("class"), name=name)
        self.classes[item.id] = item
        return item

    # students
    def add_student(self, name, embedding=None, class_id="class-a", roll_number=None, raw_embedding=None,
                    photo_path=None):
        student_id = self._next_id("student")
        self.students[student_id] = {
            "name": name,
            "roll_number": roll_number or f"R{student_id}",
            "class_id": class_id,
            "face_embedding": raw_embedding if raw_embedding is not None else (
                serialize_embedding(embedding) if embedding is not None else None),
            "photo_path": photo_path,
        }
        return self.get_student(student_id)

    def get_student(self, student_id) -> Optional[Student]:
        data = self.students.get(student_id)
        if data is None:
            return None
        class_name = self.classes[data["class_id"]].name if data["class_id"] in self.classes else None
        return Student(id=student_id, class_name=class_name, **data)

    def list_students(self, with_embedding_only=False):
        self._check()
        self.list_students_calls += 1
        students = sorted((self.get_student(i) for i in self.students), key=lambda s: s.name)
        if with_embedding_only:
            students = [s for s in students if s.has_embedding]
        return students

    def create_student(self, fields):
        student_id = self._next_id("student")
        self.students[student_id] = {"face_embedding": None, "photo_path": None, **fields}
        return self.get_student(student_id)

    def update_student(self, student_id, fields):
        if student_id not in self.students:
            return None
        self.students[student_id].update(fields)
        return self.get_student(student_id)

    def delete_student(self, student_id):
        return self.students.pop(student_id, None) is not None

    def upload_face_image(self, image_bytes, roll_number):
        path = f"face-images/1-{roll_number}.jpg"
        self.photos[path] = image_bytes
        return path

    def download_face_image(self, path):
        return self.photos[path]

    # teachers and auth
    def list_teachers(self):
        return sorted(self.teachers.values(), key=lambda t: t.name)

    def create_teacher(self, name, email, password, subject):
        uid = self._next_id("uid")
        teacher = Teacher(id=uid, name=name, email=email, subject=subject)
        self.teachers[uid] = teacher
        self.profiles[uid] = "teacher"
        return teacher

    def delete_teacher(self, teacher_id):
        self.profiles.pop(teacher_id, None)
        return self.teachers.pop(teacher_id, None) is not None

    def get_profile_role(self, uid):
        return self.profiles.get(uid)

    def verify_id_token(self, token):
        if token not in self.tokens:
            raise AuthenticationError("Invalid or expired token")
        return {"uid": self.tokens[token], "email": f"{self.tokens[token]}@school.test"}

    # attendance
    def find_attendance(self, student_id, date):
        self._check()
        if self.hide_existing:
            # simulate another kiosk inserting between our check and our insert
            self.hide_existing = False
            return None
        return self.attendance.get(attendance_document_id(student_id, date))

    def insert_attendance(self, student_id, date, time_of_day, device_id=None, status="present"):
        self.insert_calls += 1
        doc_id = attendance_document_id(student_id, date)
        if doc_id in self.attendance:
            raise DuplicateAttendanceError(student_id, date)
        record = AttendanceRecord(id=doc_id, student_id=student_id, date=date, time=time_of_day,
                                  status=status, device_id=device_id)
        self.attendance[doc_id] = record
        return record

    def list_attendance(self, date):
        self._check()
        records = []
        for record in self.attendance.values():
            if record.date != date:
                continue
            student = self.get_student(record.student_id)
            records.append(record.model_copy(update={
                "student_name": student.name if student else None,
                "roll_number": student.roll_number if student else None,
                "class_id": student.class_id if student else None,
            }))
        return sorted(records, key=lambda r: r.time, reverse=True)

    def watch_attendance(self, callback):
        raise NotImplementedError


class StubRecognizer(FaceRecognizer):
    """Skips deepface: every decodable image yields ``next_embedding``."""

    def __init__(self, next_embedding=None):
        super().__init__(threshold=0.45, dimension=DIM)
        self.next_embedding = next_embedding

    def extract_embedding(self, image_input):
        return self.next_embedding


def fixed_clock(date=TODAY, time="09:00:00"):
    return lambda: (date, time)


@pytest.fixture
def backend():
    fake = FakeBackend()
    fake.classes["class-a"] = ClassItem(id="class-a", name="Class A")
    fake.classes["class-b"] = ClassItem(id="class-b", name="Class B")
    return fake


@pytest.fixture
def recognizer():
    return StubRecognizer(next_embedding=vector(0.0))


@pytest.fixture
def client(backend, recognizer, monkeypatch):
    monkeypatch.setattr("attendance_service.attendance.current_day", lambda *a, **k: (TODAY, "09:00:00"))
    monkeypatch.setattr("attendance_service.dashboard.current_day", lambda *a, **k: (TODAY, "09:00:00"))
    app.dependency_overrides[deps.get_backend] = lambda: backend
    app.dependency_overrides[deps.get_recognizer] = lambda: recognizer
    kiosk.kiosk_sessions.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()
    kiosk.kiosk_sessions.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": "Bearer admin-token"}


@pytest.fixture
def teacher_headers():
    return {"Authorization": "Bearer teacher-token"}
