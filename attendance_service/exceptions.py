"""Errors raised by the attendance services.

Routes translate these into HTTP responses; none of them is fatal to the
process.
"""


class AttendanceServiceError(Exception):
    """Base class for every error raised by this package."""


class FaceNotDetectedError(AttendanceServiceError):
    """No face could be found in a captured or uploaded image."""


class BackendError(AttendanceServiceError):
    """A Firebase call (auth, Firestore, Storage) failed."""


class DuplicateAttendanceError(BackendError):
    """The backend rejected an attendance insert because the row exists."""

    def __init__(self, student_id: str, date: str):
        super().__init__(f"Attendance already recorded for {student_id} on {date}")
        self.student_id = student_id
        self.date = date


class MalformedEmbeddingError(AttendanceServiceError):
    """A stored embedding could not be parsed into a usable vector."""


class InvalidEmbeddingError(AttendanceServiceError):
    """A submitted embedding has the wrong shape or non-numeric values."""


class AuthenticationError(AttendanceServiceError):
    """An ID token or password sign-in was rejected."""
