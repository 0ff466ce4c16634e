"""Authentication helpers for the booking API and the integration endpoints."""
from __future__ import annotations

import base64
import binascii
import secrets
from typing import Callable, Iterable, List, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer

from .database import Database
from .models import User


class TokenAuth:
    """Bearer token authentication using constant-time comparisons."""

    def __init__(self, tokens: Iterable[str]):
        token_list: List[str] = [token.strip() for token in tokens if token.strip()]
        if not token_list:
            raise ValueError("At least one integration token must be provided")
        self._tokens = token_list
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> None:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

        provided = credentials.credentials
        for token in self._tokens:
            if secrets.compare_digest(provided, token):
                return None

        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid integration token")


def parse_basic_authorization(header: Optional[str]) -> Optional[tuple[str, str]]:
    """Split an ``Authorization: Basic ...`` header into email and password."""

    if not header:
        return None
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, separator, password = decoded.partition(":")
    if not separator:
        return None
    return username, password


def authenticate_basic_header(database: Database, header: Optional[str]) -> Optional[User]:
    credentials = parse_basic_authorization(header)
    if credentials is None:
        return None
    return database.authenticate_user(*credentials)


def build_user_dependency(database: Database) -> Callable[..., User]:
    basic_security = HTTPBasic(auto_error=False)

    def dependency(credentials: HTTPBasicCredentials | None = Depends(basic_security)) -> User:
        if credentials is not None:
            user = database.authenticate_user(credentials.username, credentials.password)
            if user is not None:
                return user

        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

    return dependency


__all__ = [
    "TokenAuth",
    "authenticate_basic_header",
    "build_user_dependency",
    "parse_basic_authorization",
]
