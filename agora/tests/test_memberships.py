import unittest
from unittest import mock

from runtime_util import add_member, build_runtime, make_context

from agora.errors import BadRequest, Forbidden, InvalidPluginData, NotFound
from agora.memberships import MembershipStatus
from agora.roles import Role


class MembershipRoleTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.runtime = build_runtime()
        self.service = self.runtime.memberships
        self.context = await make_context(self.runtime, "owner")
        add_member(self.runtime, self.context.id, "admin", role=Role.ADMIN)
        add_member(self.runtime, self.context.id, "admin2", role=Role.ADMIN)
        add_member(self.runtime, self.context.id, "mod", role=Role.MODERATOR)
        add_member(self.runtime, self.context.id, "alice")

    async def asyncTearDown(self):
        self.runtime.backend.close()

    async def _role_error(self, target, new_role, actor):
        with self.assertRaises((Forbidden, BadRequest, NotFound)) as cm:
            await self.service.update_role(self.context.id, target, new_role, actor)
        return cm.exception

    async def test_admin_cannot_demote_owner(self):
        error = await self._role_error("owner", Role.MEMBER, "admin")
        self.assertIsInstance(error, BadRequest)
        self.assertEqual(error.message, "Cannot change owner role. Use transfer ownership instead.")
        self.assertEqual(self.runtime.membership_store.get(self.context.id, "owner").role, Role.OWNER)

    async def test_role_change_rules(self):
        error = await self._role_error("alice", Role.ADMIN, "admin")
        self.assertEqual(error.message, "Only the owner can promote members to admin")

        error = await self._role_error("alice", Role.OWNER, "owner")
        self.assertEqual(error.message, "Cannot assign owner role. Use transfer ownership instead.")

        error = await self._role_error("admin2", Role.MEMBER, "admin")
        self.assertEqual(error.message, "Cannot change role of member with equal or higher role")

        error = await self._role_error("alice", Role.MODERATOR, "mod")
        self.assertEqual(error.message, "Insufficient permissions to change roles")

        error = await self._role_error("ghost", Role.MODERATOR, "admin")
        self.assertEqual(error.message, "Member not found")

        error = await self._role_error("alice", Role.MODERATOR, "stranger")
        self.assertEqual(error.message, "You are not an approved member of this context")

    async def test_role_changes_that_succeed(self):
        promoted = await self.service.update_role(self.context.id, "alice", Role.MODERATOR, "admin")
        self.assertEqual(promoted.role, Role.MODERATOR)
        promoted = await self.service.update_role(self.context.id, "alice", Role.ADMIN, "owner")
        self.assertEqual(promoted.role, Role.ADMIN)
        demoted = await self.service.update_role(self.context.id, "admin2", Role.MEMBER, "owner")
        self.assertEqual(demoted.role, Role.MEMBER)

    async def test_moderator_cannot_ban_admin(self):
        with self.assertRaises(Forbidden) as cm:
            await self.service.ban(self.context.id, "admin", "mod")
        self.assertEqual(cm.exception.message, "Cannot ban member with equal or higher role")
        self.assertEqual(self.runtime.membership_store.get(self.context.id, "admin").status, MembershipStatus.APPROVED)

    async def test_ban_and_unban(self):
        with self.assertRaises(BadRequest) as cm:
            await self.service.ban(self.context.id, "owner", "admin")
        self.assertEqual(cm.exception.message, "Cannot ban the owner")

        with self.assertRaises(Forbidden) as cm:
            await self.service.ban(self.context.id, "mod", "alice")
        self.assertEqual(cm.exception.message, "Insufficient permissions to ban members")

        banned = await self.service.ban(self.context.id, "alice", "mod")
        self.assertEqual(banned.status, MembershipStatus.BANNED)

        with self.assertRaises(BadRequest) as cm:
            await self.service.unban(self.context.id, "mod", "admin")
        self.assertEqual(cm.exception.message, "Member is not banned")

        restored = await self.service.unban(self.context.id, "alice", "admin")
        self.assertEqual(restored.status, MembershipStatus.APPROVED)


class MembershipApprovalTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.runtime = build_runtime()
        self.service = self.runtime.memberships
        self.context = await make_context(self.runtime, "owner")
        add_member(self.runtime, self.context.id, "mod", role=Role.MODERATOR)
        add_member(self.runtime, self.context.id, "alice")
        add_member(self.runtime, self.context.id, "bob", status=MembershipStatus.PENDING)

    async def asyncTearDown(self):
        self.runtime.backend.close()

    async def test_member_cannot_approve(self):
        with self.assertRaises(Forbidden) as cm:
            await self.service.approve(self.context.id, "bob", "alice")
        self.assertEqual(cm.exception.message, "Insufficient permissions to approve members")
        self.assertEqual(self.runtime.membership_store.get(self.context.id, "bob").status, MembershipStatus.PENDING)

    async def test_approve_pending(self):
        approved = await self.service.approve(self.context.id, "bob", "mod")
        self.assertEqual(approved.status, MembershipStatus.APPROVED)
        with self.assertRaises(BadRequest) as cm:
            await self.service.approve(self.context.id, "bob", "mod")
        self.assertEqual(cm.exception.message, "Membership is not pending approval")
        with self.assertRaises(NotFound):
            await self.service.approve(self.context.id, "ghost", "mod")

    async def test_reject_deletes_row(self):
        await self.service.reject(self.context.id, "bob", "owner")
        self.assertIsNone(self.runtime.membership_store.get(self.context.id, "bob"))
        with self.assertRaises(BadRequest) as cm:
            await self.service.reject(self.context.id, "alice", "owner")
        self.assertEqual(cm.exception.message, "Membership is not pending")

    async def test_non_member_actor(self):
        with self.assertRaises(Forbidden) as cm:
            await self.service.approve(self.context.id, "bob", "stranger")
        self.assertEqual(cm.exception.message, "You are not an approved member")


class MembershipListingTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.runtime = build_runtime()
        self.service = self.runtime.memberships
        self.context = await make_context(self.runtime, "owner")
        add_member(self.runtime, self.context.id, "m1")
        add_member(self.runtime, self.context.id, "mod", role=Role.MODERATOR)
        add_member(self.runtime, self.context.id, "m2")
        add_member(self.runtime, self.context.id, "p1", status=MembershipStatus.PENDING)
        add_member(self.runtime, self.context.id, "b1", status=MembershipStatus.BANNED)

    async def asyncTearDown(self):
        self.runtime.backend.close()

    async def test_list_is_ordered_by_role(self):
        page = await self.service.list(self.context.id, status=MembershipStatus.APPROVED)
        users = [membership.user_id for membership in page.items]
        self.assertEqual(users[:2], ["owner", "mod"])
        self.assertEqual(sorted(users[2:]), ["m1", "m2"])
        self.assertIsNone(page.next_cursor)

    async def test_list_filters_and_pages(self):
        page = await self.service.list(self.context.id, role=Role.MEMBER)
        self.assertEqual(len(page.items), 4)

        first = await self.service.list(self.context.id, limit=2)
        self.assertEqual(len(first.items), 2)
        self.assertEqual(first.next_cursor, first.items[-1].id)
        rest = await self.service.list(self.context.id, cursor=first.next_cursor, limit=10)
        seen = [m.user_id for m in first.items + rest.items]
        self.assertEqual(len(seen), 6)
        self.assertEqual(len(set(seen)), 6)
        self.assertIsNone(rest.next_cursor)

        unknown = await self.service.list(self.context.id, cursor="mem_missing")
        self.assertEqual(unknown.items, [])

    async def test_counts_and_user_memberships(self):
        counts = await self.service.count_by_status(self.context.id)
        self.assertEqual(counts, {"PENDING": 1, "APPROVED": 4, "BANNED": 1, "LEFT": 0})
        mine = await self.service.user_memberships("m1")
        self.assertEqual([m.context_id for m in mine], [self.context.id])
        self.assertEqual(await self.service.user_memberships("p1"), [])

    async def test_update_plugin_data(self):
        updated = await self.service.update_plugin_data(self.context.id, "m1", "group", {"warningCount": 1}, "owner")
        self.assertEqual(updated.plugin_section("group"), {"warningCount": 1})
        updated = await self.service.update_plugin_data(self.context.id, "m1", "group", {"customRole": "Keeper"})
        self.assertEqual(updated.plugin_section("group"), {"warningCount": 1, "customRole": "Keeper"})

        with self.assertRaises(InvalidPluginData) as cm:
            await self.service.update_plugin_data(self.context.id, "m1", "group", {"warningCount": -3})
        self.assertTrue(cm.exception.errors[0].startswith("warningCount"))

        with self.assertRaises(Forbidden):
            await self.service.update_plugin_data(self.context.id, "m1", "group", {"warningCount": 0}, "m2")
        with self.assertRaises(NotFound):
            await self.service.update_plugin_data(self.context.id, "ghost", "group", {})

    async def test_unapproved_manager_cannot_edit_member_data(self):
        for user_id, status in (
            ("exadmin", MembershipStatus.BANNED),
            ("leftadmin", MembershipStatus.LEFT),
            ("pendingadmin", MembershipStatus.PENDING),
        ):
            add_member(self.runtime, self.context.id, user_id, role=Role.ADMIN, status=status)
            with self.assertRaises(Forbidden):
                await self.service.update_plugin_data(self.context.id, "m1", "group", {"warningCount": 2}, user_id)
        self.assertEqual(self.runtime.membership_store.get(self.context.id, "m1").plugin_section("group"), {})

    def test_store_update_reports_vanished_row(self):
        store = self.runtime.membership_store
        with mock.patch.object(store, "get", return_value=None):
            with self.assertRaises(NotFound):
                store.update(self.context.id, "m1", status=MembershipStatus.APPROVED)


if __name__ == "__main__":
    unittest.main()
