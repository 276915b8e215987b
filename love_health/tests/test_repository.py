import unittest
from unittest.mock import patch

from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import declarative_base

from love_health.db import Database, UserRow
from love_health.repository import (
    EmptyUpdateError,
    QueryOptions,
    Repository,
    SoftDeleteNotSupported,
    UnknownColumnError,
)

AuditBase = declarative_base()


class AuditRow(AuditBase):
    """A table without the soft-delete flag."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event = Column(String(50), nullable=False)


def user_fields(username: str, **extra) -> dict:
    fields = {"username": username, "password_hash": "x", "status": 1}
    fields.update(extra)
    return fields


class RepositoryTests(unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the repository logic.
    """

    def setUp(self):
        self.db = Database("sqlite+pysqlite:///:memory:")
        self.db.create_all()
        self.addCleanup(self.db.dispose)
        self.repo = Repository(self.db, UserRow)

    def test_create_returns_record_with_generated_id(self):
        created = self.repo.create(user_fields("alice", email="a@example.com"))
        self.assertIsInstance(created["id"], int)
        self.assertEqual(created["username"], "alice")
        self.assertEqual(created["is_deleted"], 0)
        self.assertEqual(created["role"], "user")

    def test_soft_deleted_rows_hidden_from_every_read_path(self):
        kept = self.repo.create(user_fields("kept"))
        gone = self.repo.create(user_fields("gone"))
        result = self.repo.soft_delete(gone["id"])
        self.assertEqual(result.affected_rows, 1)

        self.assertIsNone(self.repo.find_by_id(gone["id"]))
        self.assertEqual(
            [row["id"] for row in self.repo.find_all()], [kept["id"]]
        )
        self.assertEqual(self.repo.count(), 1)

        self.assertIsNotNone(self.repo.find_by_id(gone["id"], include_deleted=True))
        self.assertEqual(
            len(self.repo.find_all(QueryOptions(include_deleted=True))), 2
        )
        self.assertEqual(self.repo.count(include_deleted=True), 2)

    def test_soft_delete_then_restore_round_trip(self):
        created = self.repo.create(user_fields("bob", phone="13800000000"))
        before = self.repo.find_by_id(created["id"])

        self.repo.soft_delete(created["id"])
        deleted = self.repo.find_by_id(created["id"], include_deleted=True)
        self.assertEqual(deleted["is_deleted"], 1)

        restored = self.repo.restore(created["id"])
        self.assertEqual(restored.affected_rows, 1)
        self.assertEqual(restored.changed_rows, 1)
        self.assertEqual(self.repo.find_by_id(created["id"]), before)

    def test_restore_of_active_row_changes_nothing(self):
        created = self.repo.create(user_fields("carol"))
        result = self.repo.restore(created["id"])
        self.assertEqual(result.affected_rows, 1)
        self.assertEqual(result.changed_rows, 0)

    def test_update_with_no_fields_fails_without_touching_database(self):
        created = self.repo.create(user_fields("dave"))
        with patch.object(self.db, "Session") as session_factory:
            with self.assertRaises(EmptyUpdateError):
                self.repo.update(created["id"], {})
            session_factory.assert_not_called()

    def test_update_writes_only_supplied_fields(self):
        created = self.repo.create(user_fields("erin", email="old@example.com"))
        result = self.repo.update(created["id"], {"email": "new@example.com"})
        self.assertEqual(result.affected_rows, 1)
        self.assertEqual(result.changed_rows, 1)

        updated = self.repo.find_by_id(created["id"])
        self.assertEqual(updated["email"], "new@example.com")
        self.assertEqual(updated["username"], "erin")

        same = self.repo.update(created["id"], {"email": "new@example.com"})
        self.assertEqual(same.affected_rows, 1)
        self.assertEqual(same.changed_rows, 0)

    def test_update_missing_row_affects_nothing(self):
        result = self.repo.update(999, {"email": "x@example.com"})
        self.assertEqual(result.affected_rows, 0)

    def test_hard_delete_ignores_flag(self):
        created = self.repo.create(user_fields("frank"))
        self.repo.soft_delete(created["id"])
        result = self.repo.hard_delete(created["id"])
        self.assertEqual(result.affected_rows, 1)
        self.assertIsNone(self.repo.find_by_id(created["id"], include_deleted=True))

    def test_find_all_orders_by_primary_key_descending_and_paginates(self):
        ids = [self.repo.create(user_fields(f"user{i}"))["id"] for i in range(5)]
        rows = self.repo.find_all()
        self.assertEqual([row["id"] for row in rows], sorted(ids, reverse=True))

        page = self.repo.find_all(QueryOptions(limit="2", offset="1"))
        self.assertEqual([row["id"] for row in page], sorted(ids, reverse=True)[1:3])

        ascending = self.repo.find_all(QueryOptions(order_by=["username"]))
        self.assertEqual(ascending[0]["username"], "user0")

    def test_find_all_with_structured_filters(self):
        self.repo.create(user_fields("gina", status=1))
        self.repo.create(user_fields("hank", status=0))
        self.repo.create(user_fields("ivan", status=1, email=None))

        active = self.repo.find_all(QueryOptions(filters={"status": 1}))
        self.assertEqual({row["username"] for row in active}, {"gina", "ivan"})

        disabled = self.repo.find_all(
            QueryOptions(where=[UserRow.__table__.c.status == 0])
        )
        self.assertEqual([row["username"] for row in disabled], ["hank"])
        self.assertEqual(self.repo.count(filters={"status": 1}), 2)

        # Values are bound parameters, never spliced into SQL.
        hostile = self.repo.find_all(
            QueryOptions(filters={"username": "x' OR '1'='1"})
        )
        self.assertEqual(hostile, [])

    def test_unknown_columns_are_rejected(self):
        with self.assertRaises(UnknownColumnError):
            self.repo.find_all(QueryOptions(filters={"nope": 1}))
        with self.assertRaises(UnknownColumnError):
            self.repo.find_all(QueryOptions(order_by=["-nope"]))
        with self.assertRaises(UnknownColumnError):
            self.repo.create({"username": "x", "password_hash": "x", "nope": 1})

    def test_negative_pagination_rejected(self):
        with self.assertRaises(ValueError):
            self.repo.find_all(QueryOptions(limit=-1))


class NonSoftDeleteTableTests(unittest.TestCase):
    def setUp(self):
        self.db = Database("sqlite+pysqlite:///:memory:")
        AuditBase.metadata.create_all(self.db.engine)
        self.addCleanup(self.db.dispose)
        self.repo = Repository(self.db, AuditRow)

    def test_flag_detected_from_schema(self):
        self.assertFalse(self.repo.soft_delete_enabled)
        with self.assertRaises(SoftDeleteNotSupported):
            Repository(self.db, AuditRow, soft_delete=True)

    def test_soft_delete_and_restore_fail_explicitly(self):
        created = self.repo.create({"event": "login"})
        with self.assertRaises(SoftDeleteNotSupported):
            self.repo.soft_delete(created["id"])
        with self.assertRaises(SoftDeleteNotSupported):
            self.repo.restore(created["id"])

    def test_reads_skip_flag_filter(self):
        created = self.repo.create({"event": "login"})
        self.assertEqual(self.repo.find_by_id(created["id"])["event"], "login")
        self.assertEqual(self.repo.count(), 1)
        self.assertEqual(self.repo.hard_delete(created["id"]).affected_rows, 1)


if __name__ == "__main__":
    unittest.main()
