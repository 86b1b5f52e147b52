import unittest

from prayerhub import policies
from prayerhub.db import InMemoryDbClient
from prayerhub.errors import AlreadyPrayingError, LastAdminError, LastLeaderError, NotPrayingError
from prayerhub.records import Comment, PrayerRequest


class PolicyTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.alice = self.db.create_user(
            username="alice", password="x", name="Alice", email="alice@example.com"
        )
        self.bob = self.db.create_user(
            username="bob", password="x", name="Bob", email="bob@example.com"
        )
        self.org = self.db.create_organization(name="Grace", created_by=self.alice.id)
        self.group = self.db.create_group(
            name="Tuesday Group", organization_id=self.org.id, created_by=self.alice.id
        )
        self.db.add_group_member(self.group.id, self.bob.id)
        self.db.add_organization_member(self.org.id, self.bob.id)

    def test_last_leader_guards(self):
        with self.assertRaises(LastLeaderError):
            policies.remove_group_member(self.db, self.group.id, self.alice.id)
        with self.assertRaises(LastLeaderError):
            policies.change_group_member_role(self.db, self.group.id, self.alice.id, "member")
        with self.assertRaises(LastLeaderError):
            policies.leave_group(self.db, self.group.id, self.alice.id)
        self.assertIsNotNone(self.db.get_group_member(self.group.id, self.alice.id))

        # Keeping the leader role is always allowed.
        policies.ensure_can_change_group_role(self.db, self.group.id, self.alice.id, "leader")
        # Plain members can always go.
        self.assertTrue(policies.leave_group(self.db, self.group.id, self.bob.id))

    def test_leader_can_step_down_once_replaced(self):
        policies.change_group_member_role(self.db, self.group.id, self.bob.id, "leader")
        member = policies.change_group_member_role(
            self.db, self.group.id, self.alice.id, "member"
        )
        self.assertEqual(member.role, "member")
        self.assertIsNone(
            policies.change_group_member_role(self.db, self.group.id, 9999, "leader")
        )

    def test_last_admin_guards(self):
        with self.assertRaises(LastAdminError):
            policies.remove_organization_member(self.db, self.org.id, self.alice.id)
        with self.assertRaises(LastAdminError):
            policies.change_organization_member_role(
                self.db, self.org.id, self.alice.id, "member"
            )
        with self.assertRaises(LastAdminError):
            policies.leave_organization(self.db, self.org.id, self.alice.id)

        policies.change_organization_member_role(self.db, self.org.id, self.bob.id, "admin")
        self.assertTrue(policies.leave_organization(self.db, self.org.id, self.alice.id))
        self.assertFalse(policies.leave_organization(self.db, self.org.id, self.alice.id))

    def test_visible_comments(self):
        request = PrayerRequest(id=1, group_id=1, user_id=1, title="T", description="D")
        comments = [
            Comment(id=1, prayer_request_id=1, user_id=2, text="public"),
            Comment(id=2, prayer_request_id=1, user_id=2, text="private", is_private=True),
        ]
        def texts(viewer):
            return [c.text for c in policies.visible_comments(comments, request, viewer)]

        self.assertEqual(texts(1), ["public", "private"])
        self.assertEqual(texts(2), ["public", "private"])
        self.assertEqual(texts(3), ["public"])
        self.assertEqual(texts(None), ["public"])

    def test_praying_for(self):
        request = self.db.create_prayer_request(
            group_id=self.group.id, user_id=self.bob.id, title="T", description="D"
        )
        record, count = policies.start_praying(self.db, request.id, self.alice.id)
        self.assertEqual((record.user_id, count), (self.alice.id, 1))
        with self.assertRaises(AlreadyPrayingError):
            policies.start_praying(self.db, request.id, self.alice.id)
        self.assertEqual(policies.stop_praying(self.db, request.id, self.alice.id), 0)
        with self.assertRaises(NotPrayingError):
            policies.stop_praying(self.db, request.id, self.alice.id)


if __name__ == "__main__":
    unittest.main()
