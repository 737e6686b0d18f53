"""
HTTP routes for the PDF tools backend API.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request

from pdftools_backend.auth import AuthService, bearer_token
from pdftools_backend.db import DbClient
from pdftools_backend.dependencies import (
    client_ip,
    get_auth_service,
    get_db_client,
    get_usage_service,
)
from pdftools_backend.schemas import (
    AuthResponse,
    HealthResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ToolUsageOut,
    ToolUsageRequest,
    ToolUsageResponse,
    ToolUsageStat,
    VisitRequest,
)
from pdftools_backend.usage import UsageService

router = APIRouter()


@router.post("/register", response_model=AuthResponse, status_code=201)
def register(
    payload: RegisterRequest, auth: AuthService = Depends(get_auth_service)
):
    result = auth.register(payload.name, str(payload.email), payload.password)
    return AuthResponse(**result.as_dict())


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest, auth: AuthService = Depends(get_auth_service)):
    result = auth.login(str(payload.email), payload.password)
    return AuthResponse(**result.as_dict())


@router.post("/visit", response_model=MessageResponse, status_code=201)
def record_visit(
    payload: VisitRequest,
    request: Request,
    usage: UsageService = Depends(get_usage_service),
):
    usage.record_visit(
        payload.page,
        user_agent=request.headers.get("user-agent"),
        ip=client_ip(request),
    )
    return MessageResponse(message="Visit recorded successfully")


@router.post("/tool-usage", response_model=ToolUsageResponse)
def record_tool_usage(
    payload: ToolUsageRequest,
    authorization: str | None = Header(default=None),
    auth: AuthService = Depends(get_auth_service),
    usage: UsageService = Depends(get_usage_service),
):
    """
    Increment the counter for a tool. A bearer token is optional; a bad one
    only drops the user association.
    """
    user_id = auth.try_identify(bearer_token(authorization))
    record = usage.record_tool_usage(payload.tool_name, user_id=user_id)
    return ToolUsageResponse(
        message="Tool usage recorded",
        tool_usage=ToolUsageOut(**record.as_dict()),
    )


@router.get("/tool-usage/stats", response_model=list[ToolUsageStat])
def tool_usage_stats(usage: UsageService = Depends(get_usage_service)):
    return [
        ToolUsageStat(tool_name=record.tool_name, count=record.count)
        for record in usage.get_usage_stats()
    ]


@router.get("/health", response_model=HealthResponse)
def health(db: DbClient = Depends(get_db_client)):
    return HealthResponse(
        backend="ok", database="ok" if db.ping() else "unavailable"
    )
