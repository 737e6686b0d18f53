"""
Dependency wiring for the FastAPI app.

The store client and services are built once in ``create_app`` and kept on
``app.state``; these accessors hand them to route handlers.
"""

from __future__ import annotations

from fastapi import Request

from pdftools_backend.auth import AuthService
from pdftools_backend.db import DbClient
from pdftools_backend.usage import UsageService


def get_db_client(request: Request) -> DbClient:
    return request.app.state.db


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_usage_service(request: Request) -> UsageService:
    return request.app.state.usage_service


def client_ip(request: Request) -> str | None:
    """First hop of X-Forwarded-For when behind a proxy, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None
