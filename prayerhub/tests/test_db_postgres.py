import unittest
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from prayerhub.db_postgres import PostgresDbClient
from prayerhub.errors import DuplicateError, StoreError
from store_contract import StoreContract


class PostgresDbClientTests(StoreContract, unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres client logic.
    """

    def make_db(self):
        return PostgresDbClient("sqlite+pysqlite:///:memory:")

    def test_requires_url(self):
        with self.assertRaises(ValueError):
            PostgresDbClient("")

    def test_failed_cascade_rolls_back(self):
        request = self._request()
        original = self.db._delete_group_rows

        def fail_after_children(session, group_id):
            original(session, group_id)
            raise OperationalError("DELETE", {}, Exception("connection lost"))

        with patch.object(self.db, "_delete_group_rows", side_effect=fail_after_children):
            with self.assertLogs("prayerhub.db_postgres", level="ERROR"):
                with self.assertRaises(StoreError):
                    self.db.delete_group(self.group.id)

        self.assertIsNotNone(self.db.get_group(self.group.id))
        self.assertIsNotNone(self.db.get_prayer_request(request.id))
        self.assertEqual(len(self.db.get_group_members(self.group.id)), 3)

    def test_not_null_violation_is_store_error(self):
        with self.assertLogs("prayerhub.db_postgres", level="ERROR"):
            with self.assertRaises(StoreError) as ctx:
                self.db.update_user(self.bob.id, {"name": None})
        self.assertNotIsInstance(ctx.exception, DuplicateError)
        self.assertEqual(self.db.get_user(self.bob.id).name, "Bob")


if __name__ == "__main__":
    unittest.main()
