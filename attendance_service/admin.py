from fastapi import APIRouter, Depends, HTTPException, status
from typing import Any, Dict, List, Union
import logging

from attendance_service.deps import get_backend, get_recognizer, require_admin
from attendance_service.embeddings import serialize_embedding, validate_query_embedding
from attendance_service.exceptions import BackendError, FaceNotDetectedError, InvalidEmbeddingError
from attendance_service.face_recognition import FaceRecognizer
from attendance_service.firebase_service import FirebaseService
from attendance_service.models import (
    ClassCreate,
    ClassItem,
    StudentCreate,
    StudentOut,
    StudentUpdate,
    Teacher,
    TeacherCreate,
)

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


def backend_error(e: BackendError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


def enrollment_fields(
    payload: Union[StudentCreate, StudentUpdate],
    backend: FirebaseService,
    recognizer: FaceRecognizer,
) -> Dict[str, Any]:
    """
    Turn a create/update payload into Firestore fields.

    The stored embedding is only touched when the payload carries a new
    photo or embedding. A photo without a detectable face is rejected.
    """
    fields = payload.model_dump(exclude_none=True, exclude={'image', 'embedding'})

    if 'class_id' in fields and fields['class_id'] not in backend.get_class_names():
        raise HTTPException(status_code=400, detail="Unknown class")

    if payload.embedding is not None:
        try:
            vector = validate_query_embedding(payload.embedding, recognizer.dimension)
        except InvalidEmbeddingError as e:
            raise HTTPException(status_code=422, detail=str(e))
        fields['face_embedding'] = serialize_embedding(vector)

    elif payload.image:
        logger.info("Analyzing face for %s...", fields.get('name') or fields.get('roll_number') or 'student')
        try:
            embedding = recognizer.embedding_from_base64(payload.image)
        except FaceNotDetectedError as e:
            raise HTTPException(status_code=422, detail=f"No face detected in the image: {e}")
        fields['face_embedding'] = serialize_embedding(embedding)

        if backend.bucket is not None:
            roll_number = fields.get('roll_number') or 'student'
            fields['photo_path'] = backend.upload_face_image(recognizer.decode_base64(payload.image), roll_number)
        else:
            logger.warning("Storage bucket not configured, enrollment photo not kept")

    return fields


def register_student(payload: StudentCreate, backend: FirebaseService, recognizer: FaceRecognizer) -> StudentOut:
    try:
        fields = enrollment_fields(payload, backend, recognizer)
        fields.setdefault('face_embedding', None)
        student = backend.create_student(fields)
    except BackendError as e:
        raise backend_error(e)
    return StudentOut.from_student(student)


# Classes

@router.get("/classes", response_model=List[ClassItem])
def list_classes(backend: FirebaseService = Depends(get_backend)):
    try:
        return backend.list_classes()
    except BackendError as e:
        raise backend_error(e)


@router.post("/classes", response_model=ClassItem, status_code=status.HTTP_201_CREATED)
def create_class(payload: ClassCreate, backend: FirebaseService = Depends(get_backend)):
    try:
        return backend.create_class(payload.name.strip())
    except BackendError as e:
        raise backend_error(e)


# Students

@router.get("/students", response_model=List[StudentOut])
def list_students(backend: FirebaseService = Depends(get_backend)):
    try:
        return [StudentOut.from_student(s) for s in backend.list_students()]
    except BackendError as e:
        raise backend_error(e)


@router.post("/students", response_model=StudentOut, status_code=status.HTTP_201_CREATED)
def create_student(
    payload: StudentCreate,
    backend: FirebaseService = Depends(get_backend),
    recognizer: FaceRecognizer = Depends(get_recognizer),
):
    return register_student(payload, backend, recognizer)


@router.patch("/students/{student_id}", response_model=StudentOut)
def update_student(
    student_id: str,
    payload: StudentUpdate,
    backend: FirebaseService = Depends(get_backend),
    recognizer: FaceRecognizer = Depends(get_recognizer),
):
    try:
        fields = enrollment_fields(payload, backend, recognizer)
        if not fields:
            raise HTTPException(status_code=400, detail="Nothing to update")
        student = backend.update_student(student_id, fields)
    except BackendError as e:
        raise backend_error(e)

    if student is None:
        raise HTTPException(status_code=404, detail="Student not found")
    return StudentOut.from_student(student)


@router.delete("/students/{student_id}")
def delete_student(student_id: str, backend: FirebaseService = Depends(get_backend)):
    try:
        deleted = backend.delete_student(student_id)
    except BackendError as e:
        raise backend_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Student not found")
    return {"status": "deleted", "id": student_id}


# Teachers

@router.get("/teachers", response_model=List[Teacher])
def list_teachers(backend: FirebaseService = Depends(get_backend)):
    try:
        return backend.list_teachers()
    except BackendError as e:
        raise backend_error(e)


@router.post("/teachers", response_model=Teacher, status_code=status.HTTP_201_CREATED)
def create_teacher(payload: TeacherCreate, backend: FirebaseService = Depends(get_backend)):
    try:
        return backend.create_teacher(payload.name, payload.email, payload.password, payload.subject)
    except ValueError as e:
        # firebase_admin validates email/password format before calling out
        raise HTTPException(status_code=400, detail=str(e))
    except BackendError as e:
        raise backend_error(e)


@router.delete("/teachers/{teacher_id}")
def delete_teacher(teacher_id: str, backend: FirebaseService = Depends(get_backend)):
    try:
        deleted = backend.delete_teacher(teacher_id)
    except BackendError as e:
        raise backend_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Teacher not found")
    return {"status": "deleted", "id": teacher_id}
