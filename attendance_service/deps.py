from fastapi import Depends, Header, HTTPException, status
from typing import Optional
import logging

from attendance_service.attendance import AttendanceService
from attendance_service.exceptions import AuthenticationError, BackendError
from attendance_service.face_recognition import FaceRecognizer
from attendance_service.firebase_service import FirebaseService
from attendance_service.models import CurrentUser

logger = logging.getLogger(__name__)

# Filled in by the startup hook in main
firebase_service: Optional[FirebaseService] = None
recognizer = FaceRecognizer()


def get_backend() -> FirebaseService:
    if firebase_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Firebase service not available"
        )
    return firebase_service


def get_recognizer() -> FaceRecognizer:
    return recognizer


def get_attendance_service(
    backend: FirebaseService = Depends(get_backend),
    face_recognizer: FaceRecognizer = Depends(get_recognizer),
) -> AttendanceService:
    return AttendanceService(backend, face_recognizer)


def authenticate_token(token: str, backend: FirebaseService) -> CurrentUser:
    """Verify a Firebase ID token and attach the profile role."""
    try:
        claims = backend.verify_id_token(token)
        role = backend.get_profile_role(claims["uid"])
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except BackendError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return CurrentUser(uid=claims["uid"], email=claims.get("email"), role=role)


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    backend: FirebaseService = Depends(get_backend),
) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return authenticate_token(authorization[7:].strip(), backend)


def require_roles(*roles: str):
    """Dependency factory: allow only users whose profile role is in ``roles``."""
    def checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            logger.info("User %s with role %s denied (needs %s)", current_user.uid, current_user.role, roles)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
        return current_user
    return checker


require_admin = require_roles("admin")
require_staff = require_roles("teacher", "admin")
