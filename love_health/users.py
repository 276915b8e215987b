"""
User accounts: a user row plus its 1:1 profile row, written atomically.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from love_health.db import Database, UserProfileRow, UserRow
from love_health.repository import QueryOptions, Repository, WriteResult

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "nickname",
    "gender",
    "birthday",
    "height",
    "weight",
    "bio",
    "preference",
)


class UserStore:
    """
    Data access for users and their profiles.

    Generic CRUD goes through the two composed repositories; the composite
    create/update run inside one dedicated transaction.
    """

    def __init__(self, db: Database):
        self.db = db
        self.users: Repository[UserRow] = Repository(db, UserRow)
        self.profiles: Repository[UserProfileRow] = Repository(db, UserProfileRow)

    def _log_stage(self, operation: str, stage: str, stmt) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            compiled = stmt.compile()
            logger.debug(
                "Transaction stage [%s] %s: %s params=%s",
                stage,
                operation,
                compiled,
                compiled.params,
            )

    def _find_active_by(self, column: str, value: str) -> Optional[dict]:
        if not value:
            return None
        return self.users.find_one({column: value})

    def find_by_username(self, username: str) -> Optional[dict]:
        return self._find_active_by("username", username)

    def find_by_email(self, email: str) -> Optional[dict]:
        return self._find_active_by("email", email)

    def find_by_phone(self, phone: str) -> Optional[dict]:
        return self._find_active_by("phone", phone)

    def find_by_login(self, identifier: str) -> Optional[dict]:
        """
        Resolve an ambiguous login identifier: username first, then email when
        it contains ``@``, then phone when it is all digits. First match wins.
        """
        user = self.find_by_username(identifier)
        if user is None and "@" in identifier:
            user = self.find_by_email(identifier)
        if user is None and identifier.isascii() and identifier.isdigit():
            user = self.find_by_phone(identifier)
        return user

    def get(self, user_id: int, include_deleted: bool = False) -> Optional[dict]:
        return self.users.find_by_id(user_id, include_deleted=include_deleted)

    def get_user_with_profile(
        self, user_id: int, *, session: Optional[Session] = None
    ) -> Optional[dict]:
        u = UserRow.__table__
        p = UserProfileRow.__table__
        stmt = (
            select(u, *(p.c[name] for name in PROFILE_FIELDS))
            .select_from(u.outerjoin(p, u.c.id == p.c.user_id))
            .where(u.c.id == user_id)
        )
        stmt = self.users.apply_active_filter(stmt)
        if session is not None:
            row = session.execute(stmt).mappings().first()
            return dict(row) if row else None
        rows = self.users.query(stmt)
        return rows[0] if rows else None

    def create_with_profile(
        self, user_fields: Mapping[str, Any], profile_fields: Mapping[str, Any]
    ) -> Optional[dict]:
        """Insert the user and its profile in one transaction."""
        logger.info("Creating user %s with profile", user_fields.get("username"))
        try:
            with self.db.transaction() as session:
                user_stmt = self.users.build_insert(user_fields)
                self._log_stage("INSERT", "create user", user_stmt)
                result = session.execute(user_stmt)
                user_id = result.inserted_primary_key[0]

                profile_stmt = self.profiles.build_insert(
                    {**profile_fields, "user_id": user_id}
                )
                self._log_stage("INSERT", "create profile", profile_stmt)
                session.execute(profile_stmt)
        except Exception as exc:
            logger.error("User creation rolled back: %s", exc)
            raise
        logger.info("User %s created", user_id)
        return self.get_user_with_profile(user_id)

    def update_with_profile(
        self,
        user_id: int,
        user_fields: Optional[Mapping[str, Any]] = None,
        profile_fields: Optional[Mapping[str, Any]] = None,
    ) -> Optional[dict]:
        """
        Update the user and upsert its profile in one transaction. Updates
        against a soft-deleted user touch nothing and return None.
        """
        user_fields = user_fields or {}
        profile_fields = profile_fields or {}
        try:
            with self.db.transaction() as session:
                u = UserRow.__table__
                active_stmt = self.users.apply_active_filter(
                    select(u.c.id).where(u.c.id == user_id)
                )
                if session.execute(active_stmt).first() is None:
                    logger.info("Skipping update of missing or deleted user %s", user_id)
                    return None

                if user_fields:
                    user_stmt = self.users.build_update(
                        user_id, user_fields, active_only=True
                    )
                    self._log_stage("UPDATE", "update user", user_stmt)
                    session.execute(user_stmt)

                if profile_fields:
                    check_stmt = select(UserProfileRow.__table__.c.id).where(
                        UserProfileRow.__table__.c.user_id == user_id
                    )
                    self._log_stage("SELECT", "check profile", check_stmt)
                    existing = session.execute(check_stmt).first()
                    if existing:
                        profile_stmt = self.profiles.build_update(
                            existing.id, profile_fields
                        )
                        self._log_stage("UPDATE", "update profile", profile_stmt)
                    else:
                        profile_stmt = self.profiles.build_insert(
                            {**profile_fields, "user_id": user_id}
                        )
                        self._log_stage("INSERT", "create profile", profile_stmt)
                    session.execute(profile_stmt)
        except Exception as exc:
            logger.error("User %s update rolled back: %s", user_id, exc)
            raise
        return self.get_user_with_profile(user_id)

    def list_users(
        self, page: int = 1, limit: int = 10, include_deleted: bool = False
    ) -> tuple[list[dict], dict]:
        page = max(int(page), 1)
        limit = int(limit)
        rows = self.users.find_all(
            QueryOptions(
                limit=limit,
                offset=(page - 1) * limit,
                include_deleted=include_deleted,
            )
        )
        total = self.users.count(include_deleted=include_deleted)
        pagination = {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if limit else 0,
        }
        return rows, pagination

    def soft_delete(self, user_id: int) -> WriteResult:
        return self.users.soft_delete(user_id)

    def restore(self, user_id: int) -> WriteResult:
        return self.users.restore(user_id)


def public_user(user: Optional[Mapping[str, Any]]) -> Optional[dict]:
    """Strip credential material from a user record before it leaves the API."""
    if user is None:
        return None
    return {key: value for key, value in user.items() if key != "password_hash"}
