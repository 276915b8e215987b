"""
Pydantic schemas for the love_health API.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

USERNAME_PATTERN = r"^[A-Za-z0-9]{3,30}$"
PHONE_PATTERN = r"^1[3-9]\d{9}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _check_password_strength(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    if not (
        re.search(r"[a-z]", value)
        and re.search(r"[A-Z]", value)
        and re.search(r"\d", value)
    ):
        raise ValueError(
            "password must contain an uppercase letter, a lowercase letter and a digit"
        )
    if not re.fullmatch(r"[A-Za-z\d]+", value):
        raise ValueError("password may only contain letters and digits")
    return value


class ApiResponse(BaseModel):
    code: int
    success: bool
    message: str
    data: Optional[Any] = None
    timestamp: int


class RegisterRequest(BaseModel):
    username: str = Field(..., pattern=USERNAME_PATTERN)
    password: str = Field(..., min_length=6, max_length=30)
    email: Optional[str] = Field(default=None, max_length=100, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    nickname: Optional[str] = Field(default=None, max_length=50)
    gender: Optional[int] = Field(default=None, ge=0, le=2)

    @field_validator("password")
    @classmethod
    def check_password(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_strength(value)


class LoginRequest(BaseModel):
    # Username, email or phone number.
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    remember: bool = False


class ProfileUpdateRequest(BaseModel):
    password: Optional[str] = Field(default=None, min_length=6, max_length=30)
    email: Optional[str] = Field(default=None, max_length=100, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    avatar: Optional[str] = Field(default=None, max_length=500)

    nickname: Optional[str] = Field(default=None, min_length=1, max_length=50)
    gender: Optional[int] = Field(default=None, ge=0, le=2)
    birthday: Optional[date] = None
    height: Optional[float] = Field(default=None, gt=0, le=300)
    weight: Optional[float] = Field(default=None, gt=0, le=500)
    bio: Optional[str] = Field(default=None, max_length=500)
    preference: Optional[dict] = None

    @field_validator("password")
    @classmethod
    def check_password(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_strength(value)
