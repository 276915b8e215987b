"""
Dependency wiring for the FastAPI app.

Resources (database, storage, cache) are built once by the application
lifespan and kept on ``app.state``; the dependencies below only hand them out.
The authenticated principal is resolved per request and passed to handlers
as an explicit argument.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.exc import SQLAlchemyError

from love_health.cache import CacheClient, InMemoryCache, RedisCache
from love_health.config import Settings
from love_health.db import Database
from love_health.errors import Forbidden, Unauthorized
from love_health.security import decode_token, extract_bearer
from love_health.storage import InMemoryStorageClient, S3StorageClient, StorageClient
from love_health.users import UserStore

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    """The authenticated actor behind a request."""

    id: int
    username: str
    role: str = "user"
    status: int = 1

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @classmethod
    def from_record(cls, user: Mapping[str, Any]) -> "Principal":
        return cls(
            id=int(user["id"]),
            username=user["username"],
            role=user.get("role") or "user",
            status=int(user.get("status", 1)),
        )


def build_storage_client(settings: Settings) -> StorageClient:
    if settings.use_in_memory_backends or not settings.s3_endpoint:
        return InMemoryStorageClient(
            public_bucket=settings.s3_public_bucket,
            private_bucket=settings.s3_private_bucket,
        )
    return S3StorageClient(
        endpoint=settings.s3_endpoint,
        region=settings.s3_region,
        access_key_id=settings.s3_access_key_id or "",
        secret_access_key=settings.s3_secret_access_key or "",
        public_bucket=settings.s3_public_bucket,
        private_bucket=settings.s3_private_bucket,
        public_base_url=settings.s3_public_base_url,
    )


def build_cache_client(settings: Settings) -> CacheClient:
    if settings.use_in_memory_backends or not settings.redis_url:
        return InMemoryCache()
    return RedisCache(url=settings.redis_url)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_user_store(request: Request) -> UserStore:
    return request.app.state.user_store


def get_storage_client(request: Request) -> StorageClient:
    return request.app.state.storage


def get_cache_client(request: Request) -> CacheClient:
    return request.app.state.cache


def get_current_principal(
    authorization: Optional[str] = Header(None),
    store: UserStore = Depends(get_user_store),
    settings: Settings = Depends(get_app_settings),
) -> Principal:
    """
    Reject unless the request carries a valid token for an existing,
    not soft-deleted user.
    """
    token = extract_bearer(authorization)
    if token is None:
        raise Unauthorized("No bearer token supplied")

    claims = decode_token(token, settings)
    if claims is None:
        raise Unauthorized("Invalid or expired token")

    user = store.get(claims.principal_id)
    if user is None:
        raise Unauthorized("User does not exist or has been disabled")
    return Principal.from_record(user)


def get_optional_principal(
    authorization: Optional[str] = Header(None),
    store: UserStore = Depends(get_user_store),
    settings: Settings = Depends(get_app_settings),
) -> Optional[Principal]:
    """Like :func:`get_current_principal` but never rejects."""
    token = extract_bearer(authorization)
    if token is None:
        return None
    claims = decode_token(token, settings)
    if claims is None:
        return None
    try:
        user = store.get(claims.principal_id)
    except SQLAlchemyError as exc:
        logger.error("Optional authentication lookup failed: %s", exc)
        return None
    return Principal.from_record(user) if user else None


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise Forbidden("Admin privileges required")
    return principal
