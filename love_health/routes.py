"""
HTTP routes for user accounts and profiles.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.encoders import jsonable_encoder

from love_health.cache import CacheClient, profile_key
from love_health.config import Settings
from love_health.dependencies import (
    Principal,
    get_app_settings,
    get_cache_client,
    get_current_principal,
    get_optional_principal,
    get_storage_client,
    get_user_store,
    require_admin,
)
from love_health.errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationFailed
from love_health.responses import success_response
from love_health.schemas import (
    ApiResponse,
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
)
from love_health.security import hash_password, issue_token, verify_password
from love_health.storage import StorageClient
from love_health.users import PROFILE_FIELDS, UserStore, public_user

logger = logging.getLogger(__name__)

router = APIRouter()

STATUS_ACTIVE = 1

USER_UPDATE_FIELDS = ("email", "phone", "avatar")

# What anyone may see about another user.
PUBLIC_CARD_FIELDS = ("id", "username", "avatar", "nickname", "gender", "bio")


def _ensure_unique(store: UserStore, field: str, value: Optional[str], user_id=None):
    if not value:
        return
    finders = {
        "username": (store.find_by_username, "Username already exists"),
        "email": (store.find_by_email, "Email is already in use"),
        "phone": (store.find_by_phone, "Phone number is already in use"),
    }
    finder, message = finders[field]
    existing = finder(value)
    if existing and existing["id"] != user_id:
        raise Conflict(message)


def _forget_profile(cache: CacheClient, settings: Settings, user_id: int) -> None:
    cache.delete(profile_key(settings.cache_prefix, user_id))


@router.post("/register", response_model=ApiResponse, status_code=201)
def register(
    payload: RegisterRequest,
    store: UserStore = Depends(get_user_store),
    settings: Settings = Depends(get_app_settings),
):
    _ensure_unique(store, "username", payload.username)
    _ensure_unique(store, "email", payload.email)
    _ensure_unique(store, "phone", payload.phone)

    user_fields = {
        "username": payload.username,
        "password_hash": hash_password(payload.password, settings.bcrypt_rounds),
        "email": payload.email,
        "phone": payload.phone,
        "role": "user",
        "status": STATUS_ACTIVE,
        "is_deleted": 0,
    }
    profile_fields = {
        "nickname": payload.nickname or payload.username,
        "gender": payload.gender,
    }
    user = store.create_with_profile(user_fields, profile_fields)
    token = issue_token(user["id"], user["username"], settings)
    logger.info("Registered user %s (%s)", user["id"], user["username"])
    return success_response(
        {"user": public_user(user), "token": token},
        message="Registration successful",
        code=201,
    )


@router.post("/login", response_model=ApiResponse)
def login(
    payload: LoginRequest,
    store: UserStore = Depends(get_user_store),
    settings: Settings = Depends(get_app_settings),
):
    user = store.find_by_login(payload.username)
    if user is None:
        raise NotFound("User does not exist or has been disabled")
    if not verify_password(payload.password, user["password_hash"]):
        raise Unauthorized("Incorrect password")
    if user["status"] != STATUS_ACTIVE:
        raise Forbidden("Account has been disabled")

    expires_in = settings.jwt_refresh_expires_in if payload.remember else None
    token = issue_token(user["id"], user["username"], settings, expires_in=expires_in)
    return success_response(
        {"user": public_user(user), "token": token, "remember": payload.remember},
        message="Login successful",
    )


@router.get("/profile", response_model=ApiResponse)
def get_profile(
    principal: Principal = Depends(get_current_principal),
    store: UserStore = Depends(get_user_store),
    cache: CacheClient = Depends(get_cache_client),
    settings: Settings = Depends(get_app_settings),
):
    key = profile_key(settings.cache_prefix, principal.id)
    cached = cache.get_json(key)
    if cached is not None:
        return success_response({"user": cached})

    user = store.get_user_with_profile(principal.id)
    if user is None:
        raise NotFound("User not found")
    view = jsonable_encoder(public_user(user))
    cache.set_json(key, view, ttl=settings.profile_cache_ttl)
    return success_response({"user": view})


@router.put("/profile", response_model=ApiResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    store: UserStore = Depends(get_user_store),
    cache: CacheClient = Depends(get_cache_client),
    settings: Settings = Depends(get_app_settings),
):
    changes = payload.model_dump(exclude_none=True)
    user_fields = {name: changes[name] for name in USER_UPDATE_FIELDS if name in changes}
    if "password" in changes:
        user_fields["password_hash"] = hash_password(
            changes["password"], settings.bcrypt_rounds
        )
    profile_fields = {name: changes[name] for name in PROFILE_FIELDS if name in changes}

    _ensure_unique(store, "email", user_fields.get("email"), principal.id)
    _ensure_unique(store, "phone", user_fields.get("phone"), principal.id)

    updated = store.update_with_profile(principal.id, user_fields, profile_fields)
    if updated is None:
        raise NotFound("User does not exist or has been deleted")
    _forget_profile(cache, settings, principal.id)
    return success_response(
        {"user": public_user(updated)}, message="Profile updated"
    )


@router.post("/avatar", response_model=ApiResponse)
def upload_avatar(
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    store: UserStore = Depends(get_user_store),
    storage: StorageClient = Depends(get_storage_client),
    cache: CacheClient = Depends(get_cache_client),
    settings: Settings = Depends(get_app_settings),
):
    if not file.filename:
        raise ValidationFailed("File name required")
    if not (file.content_type or "").startswith("image/"):
        raise ValidationFailed("Avatar must be an image")

    data = file.file.read()
    if not data:
        raise ValidationFailed("Uploaded file is empty")
    stored = storage.upload(data, file.filename, file.content_type, public=True)

    updated = store.update_with_profile(principal.id, {"avatar": stored.url})
    if updated is None:
        storage.delete(stored.bucket, stored.object_name)
        raise NotFound("User does not exist or has been deleted")
    _forget_profile(cache, settings, principal.id)
    return success_response(
        {"url": stored.url, "object_name": stored.object_name},
        message="Avatar uploaded",
    )


@router.delete("/account", response_model=ApiResponse)
def delete_account(
    principal: Principal = Depends(get_current_principal),
    store: UserStore = Depends(get_user_store),
    cache: CacheClient = Depends(get_cache_client),
    settings: Settings = Depends(get_app_settings),
):
    result = store.soft_delete(principal.id)
    if result.affected_rows == 0:
        raise NotFound("User does not exist or has been deleted")
    _forget_profile(cache, settings, principal.id)
    logger.info("User %s deleted their account", principal.id)
    return success_response(message="Account deleted")


@router.get("/list", response_model=ApiResponse)
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    with_deleted: bool = Query(False),
    admin: Principal = Depends(require_admin),
    store: UserStore = Depends(get_user_store),
):
    users, pagination = store.list_users(
        page=page, limit=limit, include_deleted=with_deleted
    )
    return success_response(
        {"users": [public_user(user) for user in users], "pagination": pagination}
    )


@router.post("/{user_id}/restore", response_model=ApiResponse)
def restore_user(
    user_id: int,
    admin: Principal = Depends(require_admin),
    store: UserStore = Depends(get_user_store),
    cache: CacheClient = Depends(get_cache_client),
    settings: Settings = Depends(get_app_settings),
):
    result = store.restore(user_id)
    if result.affected_rows == 0:
        raise NotFound("User does not exist")
    _forget_profile(cache, settings, user_id)
    logger.info("Admin %s restored user %s", admin.id, user_id)
    return success_response(message="User restored")


@router.get("/{user_id}", response_model=ApiResponse)
def get_user_card(
    user_id: int,
    viewer: Optional[Principal] = Depends(get_optional_principal),
    store: UserStore = Depends(get_user_store),
):
    """Public card for anyone; the owner and admins get the full record."""
    user = store.get_user_with_profile(user_id)
    if user is None:
        raise NotFound("User not found")
    if viewer is not None and (viewer.id == user_id or viewer.is_admin):
        return success_response({"user": public_user(user)})
    return success_response({"user": {name: user.get(name) for name in PUBLIC_CARD_FIELDS}})
