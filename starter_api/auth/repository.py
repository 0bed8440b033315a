from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import User


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserRepository:
    """Data access for the ``users`` table within one session."""

    def __init__(self, session: Session):
        self._session = session

    def find_by_email(self, email: str) -> Optional[User]:
        return self._session.execute(
            select(User).where(User.email == normalize_email(email))
        ).scalar_one_or_none()

    def find_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        return self._session.get(User, user_id)

    def create(self, email: str, password_hash: str) -> User:
        """Insert a user. Raises IntegrityError if the email is taken."""
        user = User(email=normalize_email(email), password_hash=password_hash)
        self._session.add(user)
        self._session.flush()
        self._session.refresh(user)
        return user

    def update_password_hash(self, user: User, password_hash: str) -> User:
        user.password_hash = password_hash
        self._session.flush()
        return user
