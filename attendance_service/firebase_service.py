import time
import firebase_admin
from contextlib import contextmanager
from firebase_admin import auth, credentials, firestore, storage
from firebase_admin.exceptions import FirebaseError
from google.api_core.exceptions import AlreadyExists, GoogleAPIError, NotFound
from typing import Any, Callable, Dict, Iterator, List, Optional
import logging
from attendance_service.config import settings
from attendance_service.exceptions import AuthenticationError, BackendError, DuplicateAttendanceError
from attendance_service.models import AttendanceRecord, ClassItem, Student, Teacher

logger = logging.getLogger(__name__)

STUDENTS = 'students'
CLASSES = 'classes'
TEACHERS = 'teachers'
PROFILES = 'profiles'
ATTENDANCE = 'attendance'


@contextmanager
def backend_call(action: str) -> Iterator[None]:
    """Log and wrap SDK failures so callers only deal with BackendError."""
    try:
        yield
    except (GoogleAPIError, FirebaseError) as e:
        logger.error("Error %s: %s", action, e)
        raise BackendError(f"Failed {action}") from e


def attendance_document_id(student_id: str, date: str) -> str:
    """One document per student per day; the id doubles as the uniqueness constraint."""
    return f"{student_id}_{date}"


class FirebaseService:
    def __init__(self, db=None, bucket=None):
        """Initialize Firebase Admin SDK, or wrap an already built client."""
        self.db = db
        self.bucket = bucket
        if self.db is None:
            self.initialize_firebase()

    def initialize_firebase(self):
        """Initialize Firebase connection."""
        try:
            if not firebase_admin._apps:
                options = {}
                if settings.FIREBASE_STORAGE_BUCKET:
                    options['storageBucket'] = settings.FIREBASE_STORAGE_BUCKET

                if settings.FIREBASE_CREDENTIALS_PATH:
                    cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
                    firebase_admin.initialize_app(cred, options or None)
                else:
                    # Use default credentials (for deployment environments)
                    firebase_admin.initialize_app(options=options or None)

                logger.info("Firebase Admin SDK initialized successfully")

            self.db = firestore.client()
            if settings.FIREBASE_STORAGE_BUCKET:
                self.bucket = storage.bucket()

        except Exception as e:
            logger.error("Failed to initialize Firebase: %s", e)
            raise

    # Classes

    def list_classes(self) -> List[ClassItem]:
        with backend_call("fetching classes"):
            docs = self.db.collection(CLASSES).order_by('name').stream()
            return [ClassItem(id=doc.id, name=(doc.to_dict() or {}).get('name', '')) for doc in docs]

    def get_class_names(self) -> Dict[str, str]:
        return {c.id: c.name for c in self.list_classes()}

    def create_class(self, name: str) -> ClassItem:
        with backend_call("creating class"):
            _, ref = self.db.collection(CLASSES).add({'name': name})
        logger.info("Created class %s (%s)", name, ref.id)
        return ClassItem(id=ref.id, name=name)

    # Students

    @staticmethod
    def _student_from_doc(doc, class_names: Dict[str, str]) -> Student:
        data = doc.to_dict() or {}
        class_id = str(data.get('class_id') or '')
        return Student(
            id=doc.id,
            name=str(data.get('name') or ''),
            roll_number=str(data.get('roll_number') or ''),
            class_id=class_id,
            face_embedding=data.get('face_embedding'),
            photo_path=data.get('photo_path'),
            class_name=class_names.get(class_id),
        )

    def list_students(self, with_embedding_only: bool = False) -> List[Student]:
        """
        Fetch students ordered by name with their class name attached.

        ``with_embedding_only`` drops students that were enrolled without a
        usable face photo; the recognition path reads this list on every
        attempt.
        """
        class_names = self.get_class_names()
        with backend_call("fetching students"):
            docs = self.db.collection(STUDENTS).order_by('name').stream()
            students = [self._student_from_doc(doc, class_names) for doc in docs]

        if with_embedding_only:
            students = [s for s in students if s.has_embedding]
        logger.info("Found %d students%s", len(students), " with face embeddings" if with_embedding_only else "")
        return students

    def get_student(self, student_id: str) -> Optional[Student]:
        """Fetch a single student by ID."""
        with backend_call(f"fetching student {student_id}"):
            doc = self.db.collection(STUDENTS).document(student_id).get()
        if not doc.exists:
            return None
        return self._student_from_doc(doc, self.get_class_names())

    def create_student(self, fields: Dict[str, Any]) -> Student:
        with backend_call("creating student"):
            _, ref = self.db.collection(STUDENTS).add(fields)
        logger.info("Registered student %s (%s)", fields.get('name'), ref.id)
        return self.get_student(ref.id)

    def update_student(self, student_id: str, fields: Dict[str, Any]) -> Optional[Student]:
        try:
            with backend_call(f"updating student {student_id}"):
                self.db.collection(STUDENTS).document(student_id).update(fields)
        except BackendError as e:
            if isinstance(e.__cause__, NotFound):
                return None
            raise
        return self.get_student(student_id)

    def delete_student(self, student_id: str) -> bool:
        ref = self.db.collection(STUDENTS).document(student_id)
        with backend_call(f"deleting student {student_id}"):
            if not ref.get().exists:
                return False
            ref.delete()
        logger.info("Deleted student %s", student_id)
        return True

    # Storage

    def upload_face_image(self, image_bytes: bytes, roll_number: str) -> str:
        """Store an enrollment photo and return its object path."""
        if self.bucket is None:
            raise BackendError("Storage bucket is not configured")

        path = f"{settings.FACE_IMAGES_PREFIX}/{int(time.time() * 1000)}-{roll_number}.jpg"
        with backend_call(f"uploading {path}"):
            self.bucket.blob(path).upload_from_string(image_bytes, content_type="image/jpeg")
        logger.info("Uploaded enrollment photo %s", path)
        return path

    def download_face_image(self, path: str) -> bytes:
        if self.bucket is None:
            raise BackendError("Storage bucket is not configured")
        with backend_call(f"downloading {path}"):
            return self.bucket.blob(path).download_as_bytes()

    # Teachers and profiles

    def list_teachers(self) -> List[Teacher]:
        with backend_call("fetching teachers"):
            docs = self.db.collection(TEACHERS).order_by('name').stream()
            teachers = []
            for doc in docs:
                data = doc.to_dict() or {}
                teachers.append(Teacher(
                    id=doc.id,
                    name=data.get('name', ''),
                    email=data.get('email', ''),
                    subject=data.get('subject', ''),
                ))
        logger.info("Retrieved %d teachers", len(teachers))
        return teachers

    def create_teacher(self, name: str, email: str, password: str, subject: str) -> Teacher:
        """Create the auth account, the teacher row and the teacher profile."""
        with backend_call(f"creating auth user {email}"):
            user = auth.create_user(email=email, password=password, display_name=name)

        teacher = Teacher(id=user.uid, name=name, email=email, subject=subject)
        try:
            with backend_call(f"creating teacher {user.uid}"):
                self.db.collection(TEACHERS).document(user.uid).set(teacher.model_dump(exclude={'id'}))
                self.db.collection(PROFILES).document(user.uid).set({'role': 'teacher'}, merge=True)
        except BackendError:
            # An auth account never outlives a failed teacher write
            try:
                auth.delete_user(user.uid)
            except FirebaseError as e:
                logger.error("Auth account %s left without a teacher row: %s", user.uid, e)
            raise
        logger.info("Created teacher %s (%s)", name, user.uid)
        return teacher

    def delete_teacher(self, teacher_id: str) -> bool:
        ref = self.db.collection(TEACHERS).document(teacher_id)
        with backend_call(f"deleting teacher {teacher_id}"):
            if not ref.get().exists:
                return False
            ref.delete()
            self.db.collection(PROFILES).document(teacher_id).delete()

        try:
            auth.delete_user(teacher_id)
        except auth.UserNotFoundError:
            logger.debug("No auth account left for teacher %s", teacher_id)
        except FirebaseError as e:
            logger.warning("Teacher %s removed but auth account remains: %s", teacher_id, e)
        return True

    def get_profile_role(self, uid: str) -> Optional[str]:
        with backend_call(f"fetching profile {uid}"):
            doc = self.db.collection(PROFILES).document(uid).get()
        if not doc.exists:
            return None
        return (doc.to_dict() or {}).get('role')

    def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        try:
            return auth.verify_id_token(id_token)
        except (ValueError, auth.InvalidIdTokenError, auth.ExpiredIdTokenError,
                auth.RevokedIdTokenError, auth.UserDisabledError) as e:
            logger.info("Rejected ID token: %s", e)
            raise AuthenticationError("Invalid or expired token") from e
        except FirebaseError as e:
            logger.error("Error verifying ID token: %s", e)
            raise BackendError("Failed verifying ID token") from e

    # Attendance

    @staticmethod
    def _attendance_from_doc(doc) -> AttendanceRecord:
        data = doc.to_dict() or {}
        return AttendanceRecord(
            id=doc.id,
            student_id=str(data.get('student_id', '')),
            date=str(data.get('date', '')),
            time=str(data.get('time', '')),
            status=data.get('status', 'present'),
            device_id=data.get('device_id'),
        )

    def find_attendance(self, student_id: str, date: str) -> Optional[AttendanceRecord]:
        """Return the attendance record for (student, date) if one exists."""
        with backend_call(f"checking attendance for {student_id}"):
            query = self.db.collection(ATTENDANCE)\
                           .where('student_id', '==', student_id)\
                           .where('date', '==', date)\
                           .limit(1)\
                           .stream()
            for doc in query:
                return self._attendance_from_doc(doc)
        return None

    def insert_attendance(self, student_id: str, date: str, time_of_day: str,
                          device_id: Optional[str] = None, status: str = 'present') -> AttendanceRecord:
        """
        Create the attendance document for (student, date).

        Raises DuplicateAttendanceError when the document already exists.
        """
        doc_id = attendance_document_id(student_id, date)
        fields = {
            'student_id': student_id,
            'date': date,
            'time': time_of_day,
            'status': status,
            'device_id': device_id,
        }
        try:
            with backend_call(f"marking attendance for {student_id}"):
                self.db.collection(ATTENDANCE).document(doc_id).create(
                    dict(fields, created_at=firestore.SERVER_TIMESTAMP)
                )
        except BackendError as e:
            if isinstance(e.__cause__, AlreadyExists):
                raise DuplicateAttendanceError(student_id, date) from e.__cause__
            raise

        logger.info("Created attendance record %s", doc_id)
        return AttendanceRecord(id=doc_id, **fields)

    def list_attendance(self, date: str) -> List[AttendanceRecord]:
        """Attendance for one day joined with student details, latest first."""
        with backend_call(f"fetching attendance for {date}"):
            docs = self.db.collection(ATTENDANCE).where('date', '==', date).stream()
            records = [self._attendance_from_doc(doc) for doc in docs]

        students = {s.id: s for s in self.list_students()}
        for record in records:
            student = students.get(record.student_id)
            if student is not None:
                record.student_name = student.name
                record.roll_number = student.roll_number
                record.class_id = student.class_id

        records.sort(key=lambda r: r.time, reverse=True)
        return records

    def watch_attendance(self, callback: Callable[[list, list, Any], None]):
        """Subscribe to attendance changes; returns the watch handle (call ``unsubscribe``)."""
        with backend_call("subscribing to attendance changes"):
            return self.db.collection(ATTENDANCE).on_snapshot(callback)
