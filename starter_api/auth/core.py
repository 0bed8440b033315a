from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import bcrypt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from jose import jws, jwt
from jose.exceptions import JWSError

from ..exceptions import BadSignatureError, ExpiredTokenError, MalformedTokenError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

# Hashes written by earlier deployments. Still accepted, upgraded on login.
_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")

SALT_BYTES = 16


class CredentialHasher:
    """
    Argon2id password hashing.

    Hashes are PHC strings (``$argon2id$v=19$m=...,t=...,p=...$salt$hash``)
    so cost parameters travel with each hash and can be raised later
    without invalidating stored credentials.
    """

    def __init__(
        self,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ):
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            salt_len=SALT_BYTES,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        """Constant-time check. Malformed or unknown hashes verify as False."""
        if hashed.startswith(_BCRYPT_PREFIXES):
            try:
                return bcrypt.checkpw(password.encode(), hashed.encode())
            except ValueError:
                return False
        try:
            return self._hasher.verify(hashed, password)
        except (VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, hashed: str) -> bool:
        if hashed.startswith(_BCRYPT_PREFIXES):
            return True
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHashError:
            return True


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

ALGORITHM = "HS256"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    issued_at: datetime
    expires_at: datetime


class TokenService:
    """
    Issues and verifies HS256-signed bearer tokens.

    The secret and TTL are passed in; ``clock`` returns an aware UTC
    datetime and exists so expiry can be exercised without sleeping.
    """

    def __init__(
        self,
        secret: str,
        ttl: timedelta,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not secret:
            raise ValueError("Token signing secret must not be empty")
        self._secret = secret
        self._ttl_seconds = int(ttl.total_seconds())
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._ttl_seconds)

    def issue(self, subject: str) -> str:
        issued_at = int(self._clock().timestamp())
        payload = {
            "sub": str(subject),
            "iat": issued_at,
            "exp": issued_at + self._ttl_seconds,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def decode(self, token: str) -> TokenClaims:
        """
        Verify ``token`` and return its claims.

        The signature is checked before any claim is read. Raises
        MalformedTokenError, BadSignatureError or ExpiredTokenError.
        """
        # Structure and algorithm first. Once the header parses and names
        # our algorithm, the only way jws.verify can still fail is a MAC
        # mismatch, which python-jose reports as a plain JWSError.
        try:
            header = jws.get_unverified_header(token)
        except JWSError as exc:
            logger.debug("Rejected malformed token: %s", exc)
            raise MalformedTokenError()
        if header.get("alg") != ALGORITHM:
            logger.debug("Rejected token with alg=%r", header.get("alg"))
            raise MalformedTokenError()

        try:
            raw = jws.verify(token, self._secret, algorithms=[ALGORITHM])
        except JWSError as exc:
            logger.debug("Token signature check failed: %s", exc)
            raise BadSignatureError()

        try:
            payload = json.loads(raw)
        except ValueError:
            raise MalformedTokenError()
        if not isinstance(payload, dict):
            raise MalformedTokenError()

        subject = payload.get("sub")
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not isinstance(subject, str) or not subject:
            raise MalformedTokenError("Token has no subject.")
        if not _is_timestamp(iat) or not _is_timestamp(exp):
            raise MalformedTokenError("Token has no valid iat/exp claims.")

        now = self._clock().timestamp()
        if now >= exp:
            raise ExpiredTokenError()
        if now < iat:
            raise MalformedTokenError("Token was issued in the future.")

        return TokenClaims(
            subject=subject,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def verify(self, token: str) -> str:
        """Verify ``token`` and return its subject."""
        return self.decode(token).subject


def _is_timestamp(value) -> bool:
    # bool is an int subclass
    return isinstance(value, int) and not isinstance(value, bool)
