"""
Registration and login.

Composes the credential hasher, token service and user repository.
Raises API exceptions only; HTTP translation happens in the routes layer.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError

from .core import CredentialHasher, TokenService
from .repository import UserRepository, normalize_email
from ..database import Database
from ..exceptions import (
    DuplicateEmailError,
    InvalidCredentialsError,
    MalformedTokenError,
    UserNotFoundError,
    ValidationError,
)
from ..models import User

logger = logging.getLogger(__name__)

PASSWORD_MAX_LENGTH = 256


@dataclass(frozen=True)
class AuthResult:
    token: str
    user: User


class AuthService:
    def __init__(
        self,
        db: Database,
        hasher: CredentialHasher,
        tokens: TokenService,
        password_min_length: int = 8,
    ):
        self._db = db
        self._hasher = hasher
        self._tokens = tokens
        self._password_min_length = password_min_length
        self._decoy_hash: Optional[str] = None
        self._decoy_lock = Lock()

    # -- validation -------------------------------------------------------

    def _validate_email(self, email: str) -> str:
        email = normalize_email(email)
        try:
            validate_email(email, check_deliverability=False)
        except EmailNotValidError as exc:
            raise ValidationError("Invalid email address.", details={"field": "email", "reason": str(exc)})
        return email

    def _validate_password(self, password: str) -> None:
        if not password:
            raise ValidationError("Password must not be empty.", details={"field": "password"})
        if len(password) < self._password_min_length:
            raise ValidationError(
                f"Password must be at least {self._password_min_length} characters.",
                details={"field": "password"},
            )
        if len(password) > PASSWORD_MAX_LENGTH:
            raise ValidationError(
                f"Password must be at most {PASSWORD_MAX_LENGTH} characters.",
                details={"field": "password"},
            )

    def _decoy(self) -> str:
        # Unknown emails still pay for one hash verification.
        with self._decoy_lock:
            if self._decoy_hash is None:
                self._decoy_hash = self._hasher.hash(uuid.uuid4().hex)
            return self._decoy_hash

    # -- operations -------------------------------------------------------

    def register(self, email: str, password: str) -> AuthResult:
        email = self._validate_email(email)
        self._validate_password(password)

        with self._db.session() as session:
            users = UserRepository(session)
            if users.find_by_email(email) is not None:
                raise DuplicateEmailError()
            password_hash = self._hasher.hash(password)
            try:
                user = users.create(email, password_hash)
            except IntegrityError:
                # Lost a race with a concurrent registration.
                raise DuplicateEmailError()

        token = self._tokens.issue(str(user.id))
        logger.info("Registered user %s", user.id)
        return AuthResult(token=token, user=user)

    def login(self, email: str, password: str) -> AuthResult:
        with self._db.session() as session:
            users = UserRepository(session)
            user = users.find_by_email(email)
            if user is None:
                self._hasher.verify(password, self._decoy())
                logger.info("Failed login: unknown email")
                raise InvalidCredentialsError()
            if not self._hasher.verify(password, user.password_hash):
                logger.info("Failed login for user %s: wrong password", user.id)
                raise InvalidCredentialsError()
            if self._hasher.needs_rehash(user.password_hash):
                users.update_password_hash(user, self._hasher.hash(password))
                logger.info("Upgraded password hash for user %s", user.id)

        token = self._tokens.issue(str(user.id))
        logger.info("Login: user %s", user.id)
        return AuthResult(token=token, user=user)

    def authenticate(self, token: str) -> User:
        """Resolve a bearer token to its user. Raises TokenError or UserNotFoundError."""
        subject = self._tokens.verify(token)
        try:
            user_id = uuid.UUID(subject)
        except ValueError:
            raise MalformedTokenError("Token subject is not a user id.")
        with self._db.session() as session:
            user = UserRepository(session).find_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user
