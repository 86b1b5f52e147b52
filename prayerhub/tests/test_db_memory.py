import unittest

from prayerhub.db import InMemoryDbClient, stale_cutoff
from prayerhub.records import utcnow
from store_contract import StoreContract


class InMemoryDbClientTests(StoreContract, unittest.TestCase):
    def make_db(self):
        return InMemoryDbClient()

    def test_ids_are_per_instance(self):
        other = InMemoryDbClient()
        user = other.create_user(
            username="zed", password="x", name="Zed", email="zed@example.com"
        )
        self.assertEqual(user.id, 1)

    def test_reset_clears_tables_and_counters(self):
        self.db.reset()
        self.assertEqual(self.db.get_users(), [])
        user = self.db.create_user(
            username="zed", password="x", name="Zed", email="zed@example.com"
        )
        self.assertEqual(user.id, 1)

    def test_stale_cutoff_is_start_of_day(self):
        cutoff = stale_cutoff(utcnow())
        self.assertEqual((cutoff.hour, cutoff.minute, cutoff.second), (0, 0, 0))


if __name__ == "__main__":
    unittest.main()
