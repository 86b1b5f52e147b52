import unittest
from datetime import timedelta
from unittest.mock import patch

from prayerhub.db import InMemoryDbClient
from prayerhub.records import utcnow
from prayerhub.stale_sweep import main, run_sweep


class StaleSweepTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        alice = self.db.create_user(
            username="alice", password="x", name="Alice", email="alice@example.com"
        )
        org = self.db.create_organization(name="Grace", created_by=alice.id)
        group = self.db.create_group(name="G", organization_id=org.id, created_by=alice.id)
        self.request = self.db.create_prayer_request(
            group_id=group.id,
            user_id=alice.id,
            title="Exams",
            description="D",
            follow_up_date=utcnow() - timedelta(days=1, hours=1),
        )

    def test_run_sweep_logs_count(self):
        with self.assertLogs("prayerhub.stale_sweep", level="INFO") as logs:
            self.assertEqual(run_sweep(self.db), 1)
        self.assertIn("marked 1 prayer requests", logs.output[0])
        self.assertEqual(run_sweep(self.db), 0)

    @patch("prayerhub.stale_sweep.time.sleep")
    @patch("prayerhub.stale_sweep.get_db_client")
    def test_main_once(self, get_db_client, sleep):
        get_db_client.return_value = self.db
        self.assertEqual(main(["--once"]), 0)
        sleep.assert_not_called()
        self.assertTrue(self.db.get_prayer_request(self.request.id).is_stale)


if __name__ == "__main__":
    unittest.main()
