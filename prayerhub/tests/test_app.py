import unittest
from datetime import timedelta

from fastapi.testclient import TestClient

from prayerhub.app import create_app
from prayerhub.db import InMemoryDbClient
from prayerhub.dependencies import get_db_client
from prayerhub.records import utcnow


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        app = create_app()
        app.dependency_overrides[get_db_client] = lambda: self.db
        self.client = TestClient(app)

        self.alice = self.db.create_user(
            username="alice", password="x", name="Alice", email="alice@example.com"
        )
        self.bob = self.db.create_user(
            username="bob", password="x", name="Bob", email="bob@example.com"
        )
        self.carol = self.db.create_user(
            username="carol", password="x", name="Carol", email="carol@example.com"
        )
        self.org = self.db.create_organization(name="Grace", created_by=self.alice.id)
        self.group = self.db.create_group(
            name="Tuesday Group", organization_id=self.org.id, created_by=self.alice.id
        )

    def as_user(self, user):
        return {"X-User-Id": str(user.id)}

    def test_missing_user_header(self):
        response = self.client.get("/api/groups")
        self.assertEqual(response.status_code, 401)

    def test_create_user_and_duplicate(self):
        payload = {
            "username": "dave",
            "password": "pw",
            "name": "Dave",
            "email": "dave@example.com",
        }
        response = self.client.post("/api/users", json=payload)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["role"], "regular")
        self.assertNotIn("password", response.json())

        duplicate = self.client.post("/api/users", json=payload)
        self.assertEqual(duplicate.status_code, 409)

    def test_invalid_enum_rejected(self):
        response = self.client.post(
            "/api/groups",
            json={"name": "G", "organization_id": self.org.id, "category": "sports"},
            headers=self.as_user(self.alice),
        )
        self.assertEqual(response.status_code, 422)

    def test_create_group_makes_caller_leader(self):
        response = self.client.post(
            "/api/groups",
            json={"name": "Healing", "organization_id": self.org.id, "category": "health"},
            headers=self.as_user(self.alice),
        )
        self.assertEqual(response.status_code, 201)
        group_id = response.json()["id"]
        members = self.client.get(
            f"/api/groups/{group_id}/members", headers=self.as_user(self.alice)
        ).json()
        self.assertEqual([(m["user_id"], m["role"]) for m in members], [(self.alice.id, "leader")])

    def test_last_leader_cannot_leave_until_replaced(self):
        response = self.client.post(
            f"/api/groups/{self.group.id}/leave", headers=self.as_user(self.alice)
        )
        self.assertEqual(response.status_code, 400)

        joined = self.client.post(
            f"/api/groups/{self.group.id}/join", headers=self.as_user(self.bob)
        )
        self.assertEqual(joined.status_code, 201)
        demote = self.client.patch(
            f"/api/groups/{self.group.id}/members/{self.alice.id}",
            json={"role": "member"},
            headers=self.as_user(self.alice),
        )
        self.assertEqual(demote.status_code, 400)

        promote = self.client.patch(
            f"/api/groups/{self.group.id}/members/{self.bob.id}",
            json={"role": "leader"},
            headers=self.as_user(self.alice),
        )
        self.assertEqual(promote.status_code, 200)
        response = self.client.post(
            f"/api/groups/{self.group.id}/leave", headers=self.as_user(self.alice)
        )
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(self.db.get_group_member(self.group.id, self.alice.id))

    def test_last_admin_cannot_leave_organization(self):
        response = self.client.post(
            f"/api/organizations/{self.org.id}/leave", headers=self.as_user(self.alice)
        )
        self.assertEqual(response.status_code, 400)

        added = self.client.post(
            f"/api/organizations/{self.org.id}/members",
            json={"user_id": self.bob.id, "role": "admin"},
            headers=self.as_user(self.alice),
        )
        self.assertEqual(added.status_code, 201)
        self.assertEqual(
            [n.type for n in self.db.get_user_notifications(self.bob.id)],
            ["added_to_organization"],
        )
        response = self.client.post(
            f"/api/organizations/{self.org.id}/leave", headers=self.as_user(self.alice)
        )
        self.assertEqual(response.status_code, 200)

    def test_non_leader_cannot_add_members(self):
        self.db.add_group_member(self.group.id, self.bob.id)
        response = self.client.post(
            f"/api/groups/{self.group.id}/members",
            json={"user_id": self.carol.id},
            headers=self.as_user(self.bob),
        )
        self.assertEqual(response.status_code, 403)

    def _bob_request(self):
        self.db.add_group_member(self.group.id, self.bob.id)
        self.db.add_group_member(self.group.id, self.carol.id)
        response = self.client.post(
            "/api/prayer-requests",
            json={
                "group_id": self.group.id,
                "title": "Surgery",
                "description": "Knee surgery on Friday",
                "urgency": "high",
            },
            headers=self.as_user(self.bob),
        )
        self.assertEqual(response.status_code, 201)
        return response.json()

    def test_private_comments_visible_to_owner_and_author(self):
        request = self._bob_request()
        url = f"/api/prayer-requests/{request['id']}/comments"
        self.client.post(url, json={"text": "Public"}, headers=self.as_user(self.alice))
        private = self.client.post(
            url, json={"text": "Private", "is_private": True}, headers=self.as_user(self.carol)
        )
        self.assertEqual(private.status_code, 201)

        def texts(user):
            return {c["text"] for c in self.client.get(url, headers=self.as_user(user)).json()}

        self.assertEqual(texts(self.bob), {"Public", "Private"})
        self.assertEqual(texts(self.carol), {"Public", "Private"})
        self.assertEqual(texts(self.alice), {"Public"})

    def test_praying_for_twice_is_rejected(self):
        request = self._bob_request()
        url = f"/api/prayer-requests/{request['id']}/praying"
        first = self.client.post(url, headers=self.as_user(self.carol))
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json(), {"praying": True, "count": 1})

        again = self.client.post(url, headers=self.as_user(self.carol))
        self.assertEqual(again.status_code, 400)

        stop = self.client.delete(url, headers=self.as_user(self.carol))
        self.assertEqual(stop.json(), {"praying": False, "count": 0})
        self.assertEqual(self.client.delete(url, headers=self.as_user(self.carol)).status_code, 400)

    def test_status_update_and_notifications(self):
        request = self._bob_request()
        response = self.client.patch(
            f"/api/prayer-requests/{request['id']}",
            json={"status": "answered"},
            headers=self.as_user(self.bob),
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "answered")

        notifications = self.client.get(
            "/api/notifications", headers=self.as_user(self.carol)
        ).json()
        self.assertEqual([n["type"] for n in notifications], ["status_update", "new_request"])

        read = self.client.post(
            f"/api/notifications/{notifications[0]['id']}/read",
            headers=self.as_user(self.carol),
        )
        self.assertTrue(read.json()["read"])
        others = self.client.post(
            f"/api/notifications/{notifications[1]['id']}/read",
            headers=self.as_user(self.bob),
        )
        self.assertEqual(others.status_code, 404)

    def test_null_required_fields_rejected_on_request_patch(self):
        request = self._bob_request()
        url = f"/api/prayer-requests/{request['id']}"
        answered = self.client.patch(
            url, json={"status": "answered"}, headers=self.as_user(self.bob)
        )
        self.assertEqual(answered.status_code, 200)

        for body in ({"title": None}, {"status": None}, {"is_anonymous": None}):
            response = self.client.patch(url, json=body, headers=self.as_user(self.bob))
            self.assertEqual(response.status_code, 422, body)

        stored = self.db.get_prayer_request(request["id"])
        self.assertEqual(stored.title, "Surgery")
        self.assertEqual(stored.status, "answered")

        cleared = self.client.patch(
            url, json={"description": None}, headers=self.as_user(self.bob)
        )
        self.assertEqual(cleared.status_code, 200)
        self.assertIsNone(self.db.get_prayer_request(request["id"]).description)

    def test_null_start_time_rejected_on_meeting_patch(self):
        self.db.add_group_member(self.group.id, self.bob.id)
        meeting = self.db.create_meeting(
            group_id=self.group.id,
            title="Prayer night",
            meeting_type="zoom",
            meeting_link="https://example.com/m",
            start_time=utcnow() + timedelta(days=1),
            created_by=self.alice.id,
        )
        response = self.client.patch(
            f"/api/meetings/{meeting.id}",
            json={"start_time": None},
            headers=self.as_user(self.alice),
        )
        self.assertEqual(response.status_code, 422)
        self.assertIsNotNone(self.db.get_meeting(meeting.id).start_time)

        upcoming = self.client.get("/api/meetings/upcoming", headers=self.as_user(self.bob))
        self.assertEqual([m["id"] for m in upcoming.json()], [meeting.id])
        listed = self.client.get(
            f"/api/groups/{self.group.id}/meetings", headers=self.as_user(self.bob)
        )
        self.assertEqual(listed.status_code, 200)

    def test_invite_organization_member_by_email(self):
        url = f"/api/organizations/{self.org.id}/invite"
        missing = self.client.post(
            url, json={"email": "nobody@example.com"}, headers=self.as_user(self.alice)
        )
        self.assertEqual(missing.status_code, 404)

        denied = self.client.post(
            url, json={"email": "carol@example.com"}, headers=self.as_user(self.bob)
        )
        self.assertEqual(denied.status_code, 403)

        invited = self.client.post(
            url, json={"email": "bob@example.com"}, headers=self.as_user(self.alice)
        )
        self.assertEqual(invited.status_code, 201)
        self.assertEqual(invited.json()["role"], "member")
        self.assertEqual(
            [n.type for n in self.db.get_user_notifications(self.bob.id)],
            ["invited_to_organization"],
        )

        again = self.client.post(
            url, json={"email": "bob@example.com"}, headers=self.as_user(self.alice)
        )
        self.assertEqual(again.status_code, 409)

    def test_outsider_cannot_read_request(self):
        request = self._bob_request()
        outsider = self.db.create_user(
            username="erin", password="x", name="Erin", email="erin@example.com"
        )
        response = self.client.get(
            f"/api/prayer-requests/{request['id']}", headers=self.as_user(outsider)
        )
        self.assertEqual(response.status_code, 403)
        missing = self.client.get("/api/prayer-requests/999", headers=self.as_user(outsider))
        self.assertEqual(missing.status_code, 404)

    def test_preferences_created_lazily(self):
        self.assertIsNone(self.db.get_user_notification_preferences(self.bob.id))
        response = self.client.get(
            "/api/notification-preferences", headers=self.as_user(self.bob)
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["comments"])
        self.assertIsNotNone(self.db.get_user_notification_preferences(self.bob.id))

        patched = self.client.patch(
            "/api/notification-preferences",
            json={"comments": False},
            headers=self.as_user(self.bob),
        )
        self.assertFalse(patched.json()["comments"])
        self.assertTrue(patched.json()["status_updates"])

    def test_group_preferences_mute(self):
        self.db.add_group_member(self.group.id, self.bob.id)
        response = self.client.patch(
            f"/api/groups/{self.group.id}/notification-preferences",
            json={"muted": True},
            headers=self.as_user(self.bob),
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["muted"])
        self.db.create_prayer_request(
            group_id=self.group.id, user_id=self.alice.id, title="T", description="D"
        )
        self.assertEqual(self.db.get_user_notifications(self.bob.id), [])

    def test_meetings(self):
        self.db.add_group_member(self.group.id, self.bob.id)
        start = (utcnow() + timedelta(days=2)).isoformat() + "Z"
        response = self.client.post(
            f"/api/groups/{self.group.id}/meetings",
            json={
                "title": "Prayer night",
                "meeting_type": "zoom",
                "meeting_link": "https://example.com/m",
                "start_time": start,
            },
            headers=self.as_user(self.alice),
        )
        self.assertEqual(response.status_code, 201)
        meeting_id = response.json()["id"]

        upcoming = self.client.get("/api/meetings/upcoming", headers=self.as_user(self.bob))
        self.assertEqual([m["id"] for m in upcoming.json()], [meeting_id])

        denied = self.client.delete(f"/api/meetings/{meeting_id}", headers=self.as_user(self.bob))
        self.assertEqual(denied.status_code, 403)
        cancelled = self.client.delete(
            f"/api/meetings/{meeting_id}", headers=self.as_user(self.alice)
        )
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(
            [n.type for n in self.db.get_user_notifications(self.bob.id)],
            ["meeting_cancelled", "new_meeting"],
        )

    def test_delete_group(self):
        self._bob_request()
        denied = self.client.delete(f"/api/groups/{self.group.id}", headers=self.as_user(self.bob))
        self.assertEqual(denied.status_code, 403)
        response = self.client.delete(
            f"/api/groups/{self.group.id}", headers=self.as_user(self.alice)
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.db.get_group_prayer_requests(self.group.id), [])
        missing = self.client.get(f"/api/groups/{self.group.id}", headers=self.as_user(self.alice))
        self.assertEqual(missing.status_code, 404)

    def test_admin_stale_sweep(self):
        self.db.add_group_member(self.group.id, self.bob.id)
        self.db.create_prayer_request(
            group_id=self.group.id,
            user_id=self.bob.id,
            title="Old",
            description="D",
            follow_up_date=utcnow() - timedelta(days=3),
        )
        denied = self.client.post(
            "/api/admin/stale-requests/check", headers=self.as_user(self.bob)
        )
        self.assertEqual(denied.status_code, 403)

        self.db.update_user_role(self.carol.id, "admin")
        response = self.client.post(
            "/api/admin/stale-requests/check", headers=self.as_user(self.carol)
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"updated": 1})


if __name__ == "__main__":
    unittest.main()
