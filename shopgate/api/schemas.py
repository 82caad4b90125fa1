from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

# Request fields default to "" so a missing field reaches the field
# validators and is reported as blank rather than as a decode error.


class SignupRequest(BaseModel):
    nickname: str = ""
    email: str = ""
    password: str = ""


class SignupConfirmRequest(BaseModel):
    token: str = ""


class LoginRequest(BaseModel):
    nickname: Optional[str] = None
    email: Optional[str] = None
    password: str = ""


class AuthResponse(BaseModel):
    token: str
    role: str
    uuid: str
    nickname: str
    email: str
    registration_method: str
    avatar_url: str


class ProfileResponse(BaseModel):
    uuid: str
    role: str
    nickname: str
    email: str
    state: str
    registration_method: str
    avatar_url: str
    created_at: datetime
    last_activity: Optional[datetime] = None


class ErrorBody(BaseModel):
    """Body of every 4xx and 5xx response."""

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status_code": 404,
            "message": "Not found",
            "description": "The requested resource could not be found",
        }
    })

    status_code: int
    message: str
    description: str


class HealthResponse(BaseModel):
    status: str
    checks: Dict[str, Dict[str, object]]
    version: str
    build: str
    timestamp: datetime
