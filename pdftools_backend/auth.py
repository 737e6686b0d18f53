"""
User registration, login and bearer token handling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from passlib.context import CryptContext

from pdftools_backend.db import DbClient, UserRecord
from pdftools_backend.errors import (
    ConfigurationError,
    DuplicateUserError,
    InvalidCredentialsError,
)

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = timedelta(days=1)
BEARER_PREFIX = "Bearer "


@dataclass
class AuthResult:
    token: str
    user_id: str
    name: str
    email: str

    def as_dict(self) -> dict:
        return {
            "token": self.token,
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
        }


def bearer_token(authorization: str | None) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


class AuthService:
    """Registers users, checks passwords and issues signed tokens."""

    def __init__(
        self,
        db: DbClient,
        secret: str | None,
        *,
        token_ttl: timedelta = DEFAULT_TOKEN_TTL,
        bcrypt_rounds: int = 10,
    ):
        if not secret:
            raise ConfigurationError("JWT_SECRET must be set to issue tokens")
        self.db = db
        self.secret = secret
        self.token_ttl = token_ttl
        self.pwd_context = CryptContext(
            schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=bcrypt_rounds
        )

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        try:
            return self.pwd_context.verify(password, password_hash)
        except (ValueError, TypeError):
            # Unrecognised or corrupt stored hash.
            return False

    def issue_token(self, user: UserRecord, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        payload = {
            "id": user.user_id,
            "email": user.email,
            "iat": int(now.timestamp()),
            "exp": int((now + self.token_ttl).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=JWT_ALGORITHM)

    def _result(self, user: UserRecord) -> AuthResult:
        return AuthResult(
            token=self.issue_token(user),
            user_id=user.user_id,
            name=user.name,
            email=user.email,
        )

    def register(self, name: str, email: str, password: str) -> AuthResult:
        if self.db.find_user_by_email(email):
            raise DuplicateUserError(email)
        user = self.db.create_user(name, email, self.hash_password(password))
        logger.info("Registered user %s", user.user_id)
        return self._result(user)

    def login(self, email: str, password: str) -> AuthResult:
        user = self.db.find_user_by_email(email)
        if not user or not self.verify_password(password, user.password_hash):
            raise InvalidCredentialsError()
        return self._result(user)

    def try_identify(self, token: str | None) -> Optional[str]:
        """
        Return the user id embedded in a valid token, or None. Expired,
        malformed or foreign-signed tokens are logged and treated as anonymous.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "id"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Ignoring expired bearer token")
            return None
        except jwt.InvalidTokenError as exc:
            logger.info("Ignoring invalid bearer token: %s", exc)
            return None
        user_id = payload.get("id")
        return str(user_id) if user_id else None
