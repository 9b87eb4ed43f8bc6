import unittest
from datetime import timedelta

from sqlmodel import select

from src.core.audit import EditLog, EditOperation
from src.core.security import verify_password
from src.domain.users.models import User, UserRole, UserSession
from src.domain.users.service import purge_expired_sessions
from tests.base import DEFAULT_PASSWORD, BaseTest


class TestUserListing(BaseTest):
    """Test suite for the searchable, sortable user directory."""

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.viewer, self.headers = await self.login_as(UserRole.DEVELOPER, name="Dana Dev", email="dana@example.com")
        self.qa = await self.create_user(UserRole.QUALITY_ANALYST, name="Quinn Qa", email="quinn@example.com")
        self.pm = await self.create_user(UserRole.PRODUCT_MANAGER, name="Pat Product", email="pat@example.com")

        async with self.test_session_maker() as session:
            stored = await session.get(User, self.qa.id)
            stored.assigned_bugs = [1, 2]
            session.add(stored)
            await session.commit()

    async def _list(self, **params) -> list[dict]:
        response = await self.client.get("/api/users", params=params, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        return response.json()["users"]

    async def test_limit_zero_returns_everyone(self) -> None:
        users = await self._list()

        self.assertEqual(len(users), 3)
        self.assertNotIn("passwordHash", users[0])

    async def test_keyword_search_spans_names_and_email(self) -> None:
        self.assertEqual([u["id"] for u in await self._list(keywords="quinn")], [self.qa.id])
        self.assertEqual([u["id"] for u in await self._list(name="PAT@")], [self.pm.id])

    async def test_role_filter(self) -> None:
        users = await self._list(role="product manager")
        self.assertEqual([u["id"] for u in users], [self.pm.id])

    async def test_has_bugs_filter(self) -> None:
        with_bugs = await self._list(hasBugs="true")
        without_bugs = await self._list(hasBugs="false")

        self.assertEqual([u["id"] for u in with_bugs], [self.qa.id])
        self.assertEqual({u["id"] for u in without_bugs}, {self.viewer.id, self.pm.id})

    async def test_sort_and_paginate(self) -> None:
        ascending = await self._list(sortBy="name")
        descending = await self._list(sortBy="name", order="desc")
        second_page = await self._list(sortBy="name", limit=2, page=2)

        self.assertEqual([u["name"] for u in ascending], ["Dana Dev", "Pat Product", "Quinn Qa"])
        self.assertEqual([u["name"] for u in descending], ["Quinn Qa", "Pat Product", "Dana Dev"])
        self.assertEqual([u["name"] for u in second_page], ["Quinn Qa"])

    async def test_plain_users_cannot_browse(self) -> None:
        _, headers = await self.login_as(UserRole.USER)

        listed = await self.client.get("/api/users", headers=headers)
        fetched = await self.client.get(f"/api/users/{self.qa.id}", headers=headers)

        self.assertEqual(listed.status_code, 403)
        self.assertEqual(fetched.status_code, 403)

    async def test_get_user_by_id(self) -> None:
        found = await self.client.get(f"/api/users/{self.qa.id}", headers=self.headers)
        missing = await self.client.get("/api/users/9999", headers=self.headers)

        self.assertEqual(found.json()["assignedBugs"], [1, 2])
        self.assertEqual(missing.status_code, 404)

    async def test_assignable_users_are_developers_and_analysts(self) -> None:
        _, headers = await self.login_as(UserRole.USER)

        response = await self.client.get("/api/users/assignable", headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual({u["id"] for u in response.json()}, {self.viewer.id, self.qa.id})


class TestSelfService(BaseTest):
    """Test suite for PATCH /api/users/me."""

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.user, self.headers = await self.login_as(UserRole.USER, name="Una User")

    async def test_get_me(self) -> None:
        response = await self.client.get("/api/users/me", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["id"], self.user.id)

    async def test_update_names(self) -> None:
        response = await self.client.patch(
            "/api/users/me", json={"fullName": "Una Renamed", "givenName": "Una"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["name"], "Una Renamed")
        self.assertEqual(response.json()["givenName"], "Una")

        async with self.test_session_maker() as session:
            entry = (await session.exec(select(EditLog))).one()
        self.assertEqual(entry.collection, "user")
        self.assertEqual(entry.operation, EditOperation.UPDATE)

    async def test_cannot_change_own_role(self) -> None:
        response = await self.client.patch("/api/users/me", json={"role": "technical manager"}, headers=self.headers)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["required"], "technical manager")
        self.assertEqual(response.json()["actual"], "user")
        self.assertEqual((await self.reload(User, self.user.id)).role, UserRole.USER)

    async def test_password_change_requires_current_password(self) -> None:
        missing = await self.client.patch(
            "/api/users/me", json={"password": "newpass1", "confirmPassword": "newpass1"}, headers=self.headers
        )
        wrong = await self.client.patch(
            "/api/users/me",
            json={"password": "newpass1", "confirmPassword": "newpass1", "currentPassword": "nope-nope"},
            headers=self.headers,
        )

        self.assertEqual(missing.status_code, 400)
        self.assertEqual(wrong.status_code, 400)
        self.assertEqual(wrong.json()["field"], "currentPassword")
        self.assertTrue(verify_password(DEFAULT_PASSWORD, (await self.reload(User, self.user.id)).password_hash))

    async def test_password_change(self) -> None:
        response = await self.client.patch(
            "/api/users/me",
            json={"password": "newpass1", "confirmPassword": "newpass1", "currentPassword": DEFAULT_PASSWORD},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(verify_password("newpass1", (await self.reload(User, self.user.id)).password_hash))

        async with self.test_session_maker() as session:
            entry = (await session.exec(select(EditLog))).one()
        self.assertEqual(entry.changes, {"password": "changed"})

    async def test_empty_patch_is_rejected(self) -> None:
        response = await self.client.patch("/api/users/me", json={}, headers=self.headers)
        self.assertEqual(response.status_code, 400)


class TestUserAdministration(BaseTest):
    """Test suite for technical-manager-only user edits and deletion."""

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.manager, self.headers = await self.login_as(UserRole.TECHNICAL_MANAGER)
        self.target = await self.create_user(UserRole.USER, email="target@example.com")

    async def test_manager_changes_role(self) -> None:
        response = await self.client.patch(
            f"/api/users/{self.target.id}", json={"role": "developer"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["role"], "developer")

    async def test_other_roles_cannot_administer(self) -> None:
        for role in (UserRole.BUSINESS_ANALYST, UserRole.PRODUCT_MANAGER, UserRole.DEVELOPER):
            _, headers = await self.login_as(role)
            with self.subTest(role=role):
                patched = await self.client.patch(
                    f"/api/users/{self.target.id}", json={"role": "developer"}, headers=headers
                )
                deleted = await self.client.delete(f"/api/users/{self.target.id}", headers=headers)

                self.assertEqual(patched.status_code, 403)
                self.assertEqual(deleted.status_code, 403)

        self.assertEqual((await self.reload(User, self.target.id)).role, UserRole.USER)

    async def test_invalid_role_is_rejected(self) -> None:
        response = await self.client.patch(f"/api/users/{self.target.id}", json={"role": "admin"}, headers=self.headers)
        self.assertEqual(response.status_code, 400)

    async def test_delete_removes_user_and_sessions(self) -> None:
        target_headers = await self.auth_headers(self.target)

        response = await self.client.delete(f"/api/users/{self.target.id}", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertIsNone(await self.reload(User, self.target.id))
        async with self.test_session_maker() as session:
            statement = select(UserSession).where(UserSession.user_email == "target@example.com")
            remaining = (await session.exec(statement)).all()
        self.assertEqual(remaining, [])
        self.assertEqual((await self.client.get("/api/users/me", headers=target_headers)).status_code, 401)

    async def test_delete_missing_user_is_404(self) -> None:
        response = await self.client.delete("/api/users/9999", headers=self.headers)
        self.assertEqual(response.status_code, 404)


class TestSessionPurge(BaseTest):
    """Test suite for the expired-session cleanup job."""

    async def test_only_expired_sessions_are_removed(self) -> None:
        user = await self.create_user(UserRole.DEVELOPER)
        live = await self.open_session(user)
        await self.open_session(user, ttl=timedelta(seconds=-5))
        await self.open_session(user, ttl=timedelta(days=-2))

        async with self.test_session_maker() as session:
            removed = await purge_expired_sessions(session)

        self.assertEqual(removed, 2)
        self.assertIsNotNone(await self.reload(UserSession, live))


if __name__ == "__main__":
    unittest.main()
