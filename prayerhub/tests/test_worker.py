import unittest
from unittest.mock import MagicMock, patch

from redis import exceptions as redis_exceptions

from prayerhub.db import InMemoryDbClient
from prayerhub.notifications import Notifier
from prayerhub.outbox import InMemoryOutbox, NotificationIntent, RedisOutbox
from prayerhub.worker import process_next


class WorkerTests(unittest.TestCase):
    def setUp(self):
        self.outbox = InMemoryOutbox()
        self.db = InMemoryDbClient(Notifier(self.outbox, deliver_inline=False))
        self.alice = self.db.create_user(
            username="alice", password="x", name="Alice", email="alice@example.com"
        )
        self.bob = self.db.create_user(
            username="bob", password="x", name="Bob", email="bob@example.com"
        )
        org = self.db.create_organization(name="Grace", created_by=self.alice.id)
        self.group = self.db.create_group(
            name="Tuesday Group", organization_id=org.id, created_by=self.alice.id
        )
        self.db.add_group_member(self.group.id, self.bob.id)

    def test_intents_wait_for_worker(self):
        self.db.create_prayer_request(
            group_id=self.group.id, user_id=self.bob.id, title="T", description="D"
        )
        self.assertEqual(len(self.outbox), 1)
        self.assertEqual(self.db.get_user_notifications(self.alice.id), [])

        self.assertTrue(process_next(db=self.db, outbox=self.outbox, block=False))
        self.assertEqual(
            [n.type for n in self.db.get_user_notifications(self.alice.id)], ["new_request"]
        )
        self.assertFalse(process_next(db=self.db, outbox=self.outbox, block=False))

    def test_failed_delivery_is_requeued(self):
        self.outbox.enqueue(NotificationIntent(self.alice.id, "new_request", "hello", 1))
        with patch.object(
            self.db, "create_notification", side_effect=RuntimeError("db down")
        ):
            with self.assertLogs("prayerhub.notifications", level="ERROR"):
                self.assertFalse(process_next(db=self.db, outbox=self.outbox, block=False))
        self.assertEqual(len(self.outbox), 1)

        self.assertTrue(process_next(db=self.db, outbox=self.outbox, block=False))
        self.assertEqual(len(self.db.get_user_notifications(self.alice.id)), 1)

    def test_fan_out_failure_does_not_fail_write(self):
        with patch.object(self.db, "get_group_members", side_effect=RuntimeError("boom")):
            with self.assertLogs("prayerhub.notifications", level="ERROR"):
                request = self.db.create_prayer_request(
                    group_id=self.group.id, user_id=self.bob.id, title="T", description="D"
                )
        self.assertIsNotNone(self.db.get_prayer_request(request.id))
        self.assertEqual(len(self.outbox), 0)

    def test_inline_delivery_requeues_failures(self):
        notifier = Notifier(InMemoryOutbox())
        db = MagicMock()
        db.create_notification.side_effect = RuntimeError("db down")
        with self.assertLogs("prayerhub.notifications", level="ERROR"):
            published = notifier.publish(
                db, [NotificationIntent(1, "new_request", "a"), NotificationIntent(2, "new_request", "b")]
            )
        self.assertEqual(published, 2)
        self.assertEqual(len(notifier.outbox), 2)

    def test_outbox_emptied_by_another_drain(self):
        class RacingOutbox(InMemoryOutbox):
            def dequeue(self, *, block=True, timeout=None):
                self.items.clear()
                return super().dequeue(block=block, timeout=timeout)

        db = InMemoryDbClient(Notifier(RacingOutbox()))
        user = db.create_user(username="u", password="x", name="U", email="u@example.com")
        other = db.create_user(username="o", password="x", name="O", email="o@example.com")
        org = db.create_organization(name="Grace", created_by=user.id)
        group = db.create_group(name="G", organization_id=org.id, created_by=user.id)
        db.add_group_member(group.id, other.id)

        request = db.create_prayer_request(
            group_id=group.id, user_id=other.id, title="T", description="D"
        )
        self.assertIsNotNone(db.get_prayer_request(request.id))
        self.assertIsNone(RacingOutbox().dequeue(block=False))

    def test_inline_delivery_error_does_not_fail_write(self):
        notifier = Notifier(InMemoryOutbox())
        db = InMemoryDbClient(notifier)
        user = db.create_user(username="u", password="x", name="U", email="u@example.com")
        other = db.create_user(username="o", password="x", name="O", email="o@example.com")
        org = db.create_organization(name="Grace", created_by=user.id)
        group = db.create_group(name="G", organization_id=org.id, created_by=user.id)
        db.add_group_member(group.id, other.id)

        with patch.object(notifier.outbox, "dequeue", side_effect=IndexError("pop from empty list")):
            with self.assertLogs("prayerhub.notifications", level="ERROR"):
                request = db.create_prayer_request(
                    group_id=group.id, user_id=other.id, title="T", description="D"
                )
        self.assertIsNotNone(db.get_prayer_request(request.id))

    def test_unknown_type_is_dropped(self):
        notifier = Notifier(InMemoryOutbox(), deliver_inline=False)
        with self.assertLogs("prayerhub.notifications", level="WARNING"):
            published = notifier.publish(self.db, [NotificationIntent(1, "birthday", "hi")])
        self.assertEqual(published, 0)
        self.assertEqual(len(notifier.outbox), 0)


class RedisOutboxTests(unittest.TestCase):
    @patch("prayerhub.outbox.redis.Redis.from_url")
    def test_round_trip_through_list(self, from_url):
        client = from_url.return_value
        outbox = RedisOutbox(url="redis://localhost:6379/0")
        intent = NotificationIntent(3, "new_comment", "Carol commented", 7)

        outbox.enqueue(intent)
        client.rpush.assert_called_once_with("prayerhub:notifications", intent.to_json())

        client.blpop.return_value = (b"prayerhub:notifications", intent.to_json().encode())
        self.assertEqual(outbox.dequeue(timeout=1), intent)
        client.blpop.assert_called_once_with("prayerhub:notifications", timeout=1)

        client.lpop.return_value = None
        self.assertIsNone(outbox.dequeue(block=False))

    @patch("prayerhub.outbox.redis.Redis.from_url")
    def test_reconnects_after_connection_error(self, from_url):
        outbox = RedisOutbox(url="redis://localhost:6379/0")
        from_url.return_value.blpop.side_effect = redis_exceptions.ConnectionError()
        self.assertIsNone(outbox.dequeue(timeout=1))
        self.assertEqual(from_url.call_count, 2)


if __name__ == "__main__":
    unittest.main()
