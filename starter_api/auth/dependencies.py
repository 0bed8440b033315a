from __future__ import annotations

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .service import AuthService
from ..exceptions import MissingTokenError
from ..models import User

bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


# ---------------------------------------------------------------------------
# Resolve current user from the Authorization header
# ---------------------------------------------------------------------------

def get_current_user(
    bearer: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
    auth: AuthService = Depends(get_auth_service),
) -> User:
    """
    Requires ``Authorization: Bearer <jwt>``. Missing, malformed, forged
    or expired tokens raise an AuthenticationError (401).
    """
    if bearer is None or not bearer.credentials:
        raise MissingTokenError()
    return auth.authenticate(bearer.credentials)
