from fastapi import APIRouter, Depends, HTTPException, status
import httpx
import logging

from attendance_service.config import settings
from attendance_service.deps import get_backend, get_current_user
from attendance_service.exceptions import AuthenticationError, BackendError
from attendance_service.firebase_service import FirebaseService
from attendance_service.models import CurrentUser, LoginRequest, LoginResponse

router = APIRouter()
logger = logging.getLogger(__name__)

SIGN_IN_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signInWithPassword"


async def sign_in_with_password(email: str, password: str, client: httpx.AsyncClient = None) -> dict:
    """Password sign-in against Firebase Authentication's REST API."""
    if not settings.FIREBASE_WEB_API_KEY:
        raise BackendError("FIREBASE_WEB_API_KEY is not configured")

    timeout = httpx.Timeout(10.0, read=15.0)
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout)
    try:
        resp = await client.post(
            SIGN_IN_URL,
            params={"key": settings.FIREBASE_WEB_API_KEY},
            json={"email": email, "password": password, "returnSecureToken": True},
        )
    except httpx.HTTPError as e:
        logger.error("Sign-in request failed: %s", e)
        raise BackendError("Authentication service unreachable") from e
    finally:
        if owns_client:
            await client.aclose()

    if resp.status_code == 400:
        reason = resp.json().get("error", {}).get("message", "INVALID_LOGIN_CREDENTIALS")
        logger.info("Sign-in rejected for %s: %s", email, reason)
        raise AuthenticationError("Invalid email or password")
    if resp.status_code != 200:
        logger.error("Sign-in failed with HTTP %s: %s", resp.status_code, resp.text[:200])
        raise BackendError("Authentication service error")
    return resp.json()


@router.post("/login", response_model=LoginResponse)
async def login(form: LoginRequest, backend: FirebaseService = Depends(get_backend)):
    """Sign in and make sure the account holds the requested role."""
    try:
        data = await sign_in_with_password(form.email, form.password)
        role = backend.get_profile_role(data["localId"])
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except BackendError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    if role is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User profile not found")
    if role != form.role:
        logger.info("User %s has role %s, %s login refused", data["localId"], role, form.role)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Access denied. {form.role.capitalize()} only.")

    return LoginResponse(
        id_token=data["idToken"],
        refresh_token=data["refreshToken"],
        expires_in=int(data.get("expiresIn", 3600)),
        user_id=data["localId"],
        role=role,
    )


@router.get("/me", response_model=CurrentUser)
def me(current_user: CurrentUser = Depends(get_current_user)):
    return current_user
