"""
Pydantic schemas for the PDF tools backend.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class AuthResponse(ApiModel):
    token: str
    id: str
    name: str
    email: str


class VisitRequest(ApiModel):
    page: str = Field(..., min_length=1, max_length=512)


class ToolUsageRequest(ApiModel):
    tool_name: str = Field(..., min_length=1, max_length=128)


class ToolUsageOut(ApiModel):
    tool_name: str
    count: int
    last_used_at: Optional[float] = None
    last_user_id: Optional[str] = None


class ToolUsageResponse(ApiModel):
    message: str
    tool_usage: ToolUsageOut


class ToolUsageStat(ApiModel):
    tool_name: str
    count: int


class MessageResponse(ApiModel):
    message: str


class HealthResponse(ApiModel):
    backend: Literal["ok"]
    database: Literal["ok", "unavailable"]
