"""
Generic, soft-delete aware data access over a single mapped table.

A :class:`Repository` is parameterised by a declarative model and the name of
its primary-key column. Records come back as plain ``dict`` objects. Filters
are structured (column/value mappings or SQLAlchemy boolean expressions) and
always compiled to bound parameters.

Tables that carry an ``is_deleted`` column are soft-deletable: every read path
(``find_by_id``, ``find_all``, ``count``) hides flagged rows unless the caller
passes ``include_deleted=True``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterator, List, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import JSON, delete, func, insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql import ColumnElement
from sqlalchemy.sql.expression import Delete, Insert, Select, Update

from love_health.db import Database

logger = logging.getLogger(__name__)

SOFT_DELETE_COLUMN = "is_deleted"
TOUCH_COLUMN = "updated_at"

DEFAULT_LIMIT = 100

ModelT = TypeVar("ModelT")


class RepositoryError(Exception):
    """Base class for data-access errors raised before touching the database."""


class EmptyUpdateError(RepositoryError):
    """Raised when an update is requested with no fields."""


class SoftDeleteNotSupported(RepositoryError):
    """Raised when soft delete/restore is used on a table without the flag."""


class UnknownColumnError(RepositoryError):
    """Raised when a caller names a column the table does not have."""


@dataclass(frozen=True)
class WriteResult:
    affected_rows: int
    changed_rows: int = 0


@dataclass
class QueryOptions:
    """
    Query description for :meth:`Repository.find_all`.

    ``filters`` maps column names to values (equality, ``None`` means IS NULL).
    ``where`` holds extra SQLAlchemy boolean expressions, e.g.
    ``UserRow.status == 1``. ``order_by`` lists column names; prefix a name
    with ``-`` for descending order. Defaults to primary key descending.
    """

    filters: Mapping[str, Any] = field(default_factory=dict)
    where: Sequence[ColumnElement] = ()
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    order_by: Optional[Sequence[str]] = None
    include_deleted: bool = False


class Repository(Generic[ModelT]):
    """CRUD primitives for one table, composed into entity-specific stores."""

    def __init__(
        self,
        db: Database,
        model: type[ModelT],
        primary_key: str = "id",
        soft_delete: Optional[bool] = None,
    ):
        self.db = db
        self.model = model
        self.table = model.__table__
        if primary_key not in self.table.c:
            raise UnknownColumnError(
                f"Table {self.table.name} has no primary key column {primary_key!r}"
            )
        self.primary_key = primary_key

        has_flag = SOFT_DELETE_COLUMN in self.table.c
        if soft_delete is None:
            soft_delete = has_flag
        elif soft_delete and not has_flag:
            raise SoftDeleteNotSupported(
                f"Table {self.table.name} has no {SOFT_DELETE_COLUMN} column"
            )
        self.soft_delete_enabled = soft_delete

    @property
    def table_name(self) -> str:
        return self.table.name

    @property
    def pk(self):
        return self.table.c[self.primary_key]

    def column(self, name: str):
        try:
            return self.table.c[name]
        except KeyError:
            raise UnknownColumnError(
                f"Table {self.table.name} has no column {name!r}"
            ) from None

    # ------------------------------------------------------------------
    # Statement builders
    # ------------------------------------------------------------------

    def apply_active_filter(self, stmt, include_deleted: bool = False):
        """Single place where the soft-delete predicate is added to a read."""
        if include_deleted or not self.soft_delete_enabled:
            return stmt
        return stmt.where(self.table.c[SOFT_DELETE_COLUMN] == 0)

    def apply_filters(
        self,
        stmt,
        filters: Optional[Mapping[str, Any]] = None,
        where: Sequence[ColumnElement] = (),
    ):
        for name, value in (filters or {}).items():
            column = self.column(name)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        for clause in where:
            stmt = stmt.where(clause)
        return stmt

    def order_clauses(self, order_by: Optional[Sequence[str]]) -> list:
        if order_by is None:
            return [self.pk.desc()]
        clauses = []
        for name in order_by:
            if name.startswith("-"):
                clauses.append(self.column(name[1:]).desc())
            else:
                clauses.append(self.column(name).asc())
        return clauses

    def values(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        return {self.column(name).key: value for name, value in fields.items()}

    def build_select(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        where: Sequence[ColumnElement] = (),
        include_deleted: bool = False,
    ) -> Select:
        stmt = self.apply_filters(select(self.table), filters, where)
        return self.apply_active_filter(stmt, include_deleted)

    def build_insert(self, fields: Mapping[str, Any]) -> Insert:
        return insert(self.table).values(self.values(fields))

    def build_update(
        self, record_id: Any, fields: Mapping[str, Any], *, active_only: bool = False
    ) -> Update:
        if not fields:
            raise EmptyUpdateError(f"No fields supplied to update {self.table.name}")
        values = self.values(fields)
        if TOUCH_COLUMN in self.table.c and TOUCH_COLUMN not in values:
            values[TOUCH_COLUMN] = func.now()
        stmt = update(self.table).where(self.pk == record_id).values(values)
        if active_only:
            stmt = self.apply_active_filter(stmt)
        return stmt

    def build_delete(self, record_id: Any) -> Delete:
        return delete(self.table).where(self.pk == record_id)

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _logged(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("%s on %s failed: %s", action, self.table.name, exc)
            raise

    @contextmanager
    def _session(self, session: Optional[Session]) -> Iterator[Session]:
        """Use the caller's session (caller owns the transaction) or a fresh one."""
        if session is not None:
            yield session
            return
        with self.db.Session() as own:
            yield own
            own.commit()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_id(
        self,
        record_id: Any,
        include_deleted: bool = False,
        *,
        session: Optional[Session] = None,
    ) -> Optional[dict]:
        stmt = self.build_select(include_deleted=include_deleted).where(
            self.pk == record_id
        )
        with self._logged("find_by_id"), self._session(session) as s:
            row = s.execute(stmt).mappings().first()
        return dict(row) if row else None

    def find_one(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        where: Sequence[ColumnElement] = (),
        include_deleted: bool = False,
    ) -> Optional[dict]:
        rows = self.find_all(
            QueryOptions(
                filters=filters or {},
                where=where,
                limit=1,
                include_deleted=include_deleted,
            )
        )
        return rows[0] if rows else None

    def find_all(self, options: Optional[QueryOptions] = None) -> List[dict]:
        options = options or QueryOptions()
        limit = int(options.limit)
        offset = int(options.offset)
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")

        stmt = (
            self.build_select(options.filters, options.where, options.include_deleted)
            .order_by(*self.order_clauses(options.order_by))
            .limit(limit)
            .offset(offset)
        )
        with self._logged("find_all"), self.db.Session() as session:
            rows = session.execute(stmt).mappings().all()
        return [dict(row) for row in rows]

    def count(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        where: Sequence[ColumnElement] = (),
        include_deleted: bool = False,
    ) -> int:
        stmt = self.apply_filters(
            select(func.count()).select_from(self.table), filters, where
        )
        stmt = self.apply_active_filter(stmt, include_deleted)
        with self._logged("count"), self.db.Session() as session:
            return int(session.execute(stmt).scalar_one())

    def query(self, stmt) -> List[dict]:
        """Run a caller-built SQLAlchemy select and return rows as dicts."""
        with self._logged("query"), self.db.Session() as session:
            rows = session.execute(stmt).mappings().all()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(
        self, fields: Mapping[str, Any], *, session: Optional[Session] = None
    ) -> Any:
        """Insert one row and return its generated primary key (or None)."""
        stmt = self.build_insert(fields)
        with self._logged("insert"), self._session(session) as s:
            result = s.execute(stmt)
        generated = result.inserted_primary_key
        if generated and generated[0] is not None:
            return generated[0]
        return fields.get(self.primary_key)

    def create(
        self, fields: Mapping[str, Any], *, session: Optional[Session] = None
    ) -> dict:
        record_id = self.insert(fields, session=session)
        if record_id is None:
            return dict(fields)
        created = self.find_by_id(record_id, include_deleted=True, session=session)
        return created if created is not None else dict(fields)

    def update(
        self,
        record_id: Any,
        fields: Mapping[str, Any],
        *,
        active_only: bool = False,
        session: Optional[Session] = None,
    ) -> WriteResult:
        """
        Write only the supplied columns. Returns matched (``affected_rows``)
        and actually modified (``changed_rows``) counts.
        """
        stmt = self.build_update(record_id, fields, active_only=active_only)
        changed_stmt = self._changed_rows_select(record_id, fields, active_only)
        with self._logged("update"), self._session(session) as s:
            changed = s.execute(changed_stmt).scalar_one()
            result = s.execute(stmt)
        return WriteResult(affected_rows=result.rowcount, changed_rows=int(changed))

    def _changed_rows_select(
        self, record_id: Any, fields: Mapping[str, Any], active_only: bool
    ) -> Select:
        comparisons = []
        for name, value in self.values(fields).items():
            column = self.table.c[name]
            if isinstance(column.type, JSON):
                # JSON has no portable equality; treat the row as changed.
                comparisons = []
                break
            comparisons.append(column.is_distinct_from(value))
        stmt = select(func.count()).select_from(self.table).where(self.pk == record_id)
        if comparisons:
            stmt = stmt.where(or_(*comparisons))
        if active_only:
            stmt = self.apply_active_filter(stmt)
        return stmt

    def soft_delete(
        self, record_id: Any, *, session: Optional[Session] = None
    ) -> WriteResult:
        return self._set_deleted_flag(record_id, 1, "soft_delete", session)

    def restore(
        self, record_id: Any, *, session: Optional[Session] = None
    ) -> WriteResult:
        return self._set_deleted_flag(record_id, 0, "restore", session)

    def _set_deleted_flag(
        self, record_id: Any, flag: int, action: str, session: Optional[Session]
    ) -> WriteResult:
        if not self.soft_delete_enabled:
            raise SoftDeleteNotSupported(
                f"Table {self.table.name} does not support {action}; "
                "use hard_delete instead"
            )
        column = self.table.c[SOFT_DELETE_COLUMN]
        stmt = (
            update(self.table).where(self.pk == record_id).values({column.key: flag})
        )
        changed_stmt = (
            select(func.count())
            .select_from(self.table)
            .where(self.pk == record_id, column != flag)
        )
        with self._logged(action), self._session(session) as s:
            changed = s.execute(changed_stmt).scalar_one()
            result = s.execute(stmt)
        return WriteResult(affected_rows=result.rowcount, changed_rows=int(changed))

    def hard_delete(
        self, record_id: Any, *, session: Optional[Session] = None
    ) -> WriteResult:
        """Remove the row permanently, regardless of the soft-delete flag."""
        with self._logged("hard_delete"), self._session(session) as s:
            result = s.execute(self.build_delete(record_id))
        return WriteResult(affected_rows=result.rowcount, changed_rows=result.rowcount)
