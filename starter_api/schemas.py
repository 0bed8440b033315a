from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class Credentials(BaseModel):
    """Body of both register and login requests."""

    email: str = Field(..., max_length=255, examples=["user@example.com"])
    password: str = Field(..., max_length=1024, examples=["password123"])


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    email: str
    created_at: datetime


class AuthResponse(BaseModel):
    token: str
    user: UserRead


class HealthResponse(BaseModel):
    status: str
    database: str | None = None
