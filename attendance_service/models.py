from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, List, Optional
from datetime import datetime

# Records mirrored from Firestore
class ClassItem(BaseModel):
    id: str
    name: str

class Student(BaseModel):
    id: str
    name: str
    roll_number: str
    class_id: str
    face_embedding: Optional[Any] = Field(default=None, description="JSON-encoded float list, or a stored array")
    photo_path: Optional[str] = None
    class_name: Optional[str] = None

    @property
    def has_embedding(self) -> bool:
        return bool(self.face_embedding)

class Teacher(BaseModel):
    id: str
    name: str
    email: str
    subject: str

class AttendanceRecord(BaseModel):
    id: str
    student_id: str
    date: str
    time: str
    status: str = "present"
    device_id: Optional[str] = None
    student_name: Optional[str] = None
    roll_number: Optional[str] = None
    class_id: Optional[str] = None

# Public views
class StudentOut(BaseModel):
    id: str
    name: str
    roll_number: str
    class_id: str
    class_name: Optional[str] = None
    has_embedding: bool = False
    photo_path: Optional[str] = None

    @classmethod
    def from_student(cls, student: Student) -> "StudentOut":
        return cls(
            id=student.id,
            name=student.name,
            roll_number=student.roll_number,
            class_id=student.class_id,
            class_name=student.class_name,
            has_embedding=student.has_embedding,
            photo_path=student.photo_path,
        )

# Requests
class ClassCreate(BaseModel):
    name: str = Field(..., min_length=1)

class StudentCreate(BaseModel):
    name: str = Field(..., min_length=1)
    roll_number: str = Field(..., min_length=1)
    class_id: str = Field(..., min_length=1)
    image: Optional[str] = Field(default=None, description="Base64 encoded face photo")
    embedding: Optional[List[float]] = Field(default=None, description="Embedding computed client-side")

class StudentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    roll_number: Optional[str] = Field(default=None, min_length=1)
    class_id: Optional[str] = Field(default=None, min_length=1)
    image: Optional[str] = None
    embedding: Optional[List[float]] = None

class TeacherCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    subject: str = Field(..., min_length=1)

class RecognizeRequest(BaseModel):
    image: Optional[str] = Field(default=None, description="Base64 encoded webcam frame")
    embedding: Optional[List[float]] = Field(default=None, description="Face descriptor computed client-side")
    device_id: Optional[str] = None

class LoginRequest(BaseModel):
    email: str
    password: str
    role: str = Field(..., pattern="^(admin|teacher)$")

class LoginResponse(BaseModel):
    id_token: str
    refresh_token: str
    expires_in: int
    user_id: str
    role: str

class CurrentUser(BaseModel):
    uid: str
    email: Optional[str] = None
    role: Optional[str] = None

# Results
class RecognitionStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_MARKED = "already-marked"
    NO_MATCH = "no-match"
    NO_FACE = "no-face"
    ERROR = "error"

class MatchResult(BaseModel):
    student: Student
    distance: float

class RecognitionResult(BaseModel):
    status: RecognitionStatus
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    roll_number: Optional[str] = None
    class_name: Optional[str] = None
    distance: Optional[float] = None
    message: str
    timestamp: str = Field(default_factory=lambda: datetime.utcnow().isoformat())

class AttendanceSummary(BaseModel):
    date: str
    present: int
    absent: int
    total: int
