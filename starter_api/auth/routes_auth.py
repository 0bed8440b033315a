from fastapi import APIRouter, Depends, status

from .dependencies import get_auth_service, get_current_user
from .service import AuthResult, AuthService
from ..models import User
from ..schemas import AuthResponse, Credentials, UserRead

router = APIRouter(prefix="/auth", tags=["auth"])


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(token=result.token, user=UserRead.model_validate(result.user))


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"description": "Invalid request"}, 409: {"description": "Email already registered"}},
)
def register(body: Credentials, auth: AuthService = Depends(get_auth_service)) -> AuthResponse:
    return _auth_response(auth.register(body.email, body.password))


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

@router.post(
    "/login",
    response_model=AuthResponse,
    responses={401: {"description": "Invalid credentials"}},
)
def login(body: Credentials, auth: AuthService = Depends(get_auth_service)) -> AuthResponse:
    return _auth_response(auth.login(body.email, body.password))


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------

@router.get("/me", response_model=UserRead)
def me(current_user: User = Depends(get_current_user)) -> UserRead:
    return UserRead.model_validate(current_user)
