"""
Database handle and table definitions.

The :class:`Database` object owns the SQLAlchemy engine (and therefore the
connection pool). It is built once at process start, handed to whoever needs
it, and disposed at shutdown.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    func,
    text,
)
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def _engine_options(
    database_url: str, *, pool_size: int, max_overflow: int, pool_timeout: float
) -> dict:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        options: dict = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            # One shared connection, otherwise every pooled connection would
            # see its own empty in-memory database.
            options["poolclass"] = StaticPool
        return options
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_timeout": pool_timeout,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


class Database:
    """
    SQLAlchemy engine plus session factory. Accepts any SQLAlchemy URL
    (MySQL/Postgres in production, SQLite for tests).
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 10,
        max_overflow: int = 0,
        pool_timeout: float = 30.0,
        echo: bool = False,
    ):
        if not database_url:
            raise ValueError("DATABASE_URL is required for Database")
        self.engine = create_engine(
            database_url,
            future=True,
            echo=echo,
            **_engine_options(
                database_url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
            ),
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            echo=settings.db_echo,
        )

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        """Pooled connection for single statements; commits when the block exits."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Yield a session bound to one dedicated pooled connection inside a
        transaction. Commits on success; on any error rolls back and re-raises.
        The connection goes back to the pool clean in every case.
        """
        session = self.Session()
        try:
            session.begin()
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        try:
            with self.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.error("Database connectivity check failed: %s", exc)
            return False


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    email = Column(String(100), nullable=True, index=True)
    phone = Column(String(20), nullable=True, index=True)
    avatar = Column(String(500), nullable=True)
    role = Column(String(20), nullable=False, default="user")
    # 0 disabled, 1 active, 2 pending
    status = Column(Integer, nullable=False, default=1)
    is_deleted = Column(Integer, nullable=False, default=0, index=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())


class UserProfileRow(Base):
    __tablename__ = "user_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id"), nullable=False, unique=True, index=True
    )
    nickname = Column(String(50), nullable=True)
    # 0 unknown, 1 male, 2 female
    gender = Column(Integer, nullable=True)
    birthday = Column(Date, nullable=True)
    height = Column(Float, nullable=True)
    weight = Column(Float, nullable=True)
    bio = Column(Text, nullable=True)
    preference = Column(JSON, nullable=True)
    is_deleted = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())
