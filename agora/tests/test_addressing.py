import unittest

from runtime_util import add_member, build_runtime, make_context

from agora import addressing
from agora.activities import Activity, ObjectType
from agora.addressing import parse_address, validate_addresses
from agora.contexts import ContextKind
from agora.errors import BadRequest
from agora.memberships import MembershipStatus
from agora.roles import Role


def _activity(actor_id="alice", to=(), cc=()):
    return Activity(
        id="act_test",
        type="CREATE",
        actor_id=actor_id,
        object_type=ObjectType.NOTE,
        object={"content": "hi"},
        to=list(to),
        cc=list(cc),
    )


class ParseAddressTests(unittest.TestCase):
    def test_known_kinds(self):
        self.assertEqual(parse_address("public").kind, "public")
        self.assertEqual(parse_address("followers").kind, "followers")
        parsed = parse_address("user:alice")
        self.assertEqual((parsed.kind, parsed.id), ("user", "alice"))
        parsed = parse_address("context:c1")
        self.assertEqual((parsed.kind, parsed.id, parsed.modifier), ("context", "c1", None))
        parsed = parse_address("context:c1:role:MEMBER")
        self.assertEqual((parsed.id, parsed.modifier), ("c1", "role:MEMBER"))

    def test_unknown_tokens(self):
        for token in ("", "everyone", "user:", "context:", "context:c1:", "Public"):
            self.assertEqual(parse_address(token).kind, "unknown", token)

    def test_builders_round_trip_through_parser(self):
        self.assertEqual((addressing.public(), addressing.followers()), ("public", "followers"))
        self.assertEqual(addressing.user("bob"), "user:bob")
        self.assertEqual(addressing.context("c1"), "context:c1")
        self.assertEqual(addressing.context_admins("c1"), "context:c1:admins")
        self.assertEqual(addressing.context_moderators("c1"), "context:c1:moderators")
        self.assertEqual(addressing.context_role("c1", Role.GUEST), "context:c1:role:GUEST")
        self.assertEqual(parse_address(addressing.context_role("c1", "ADMIN")).modifier, "role:ADMIN")

    def test_helpers(self):
        tokens = ["public", "user:a", "user:b", "user:a", "context:c1", "context:c2:admins"]
        self.assertTrue(addressing.is_public_address(tokens))
        self.assertFalse(addressing.is_followers_address(tokens))
        self.assertEqual(addressing.extract_user_ids(tokens), ["a", "b"])
        self.assertEqual(addressing.extract_context_ids(tokens), ["c1", "c2"])
        self.assertTrue(addressing.address_targets_user(tokens, "b"))
        self.assertFalse(addressing.address_targets_user(tokens, "c"))
        self.assertTrue(addressing.address_targets_context(tokens, "c2"))
        self.assertEqual(addressing.combine_addresses(["a", "b"], ["b", "c"]), ["a", "b", "c"])

    def test_validate_addresses(self):
        self.assertEqual(validate_addresses(["public", "context:c1:role:MODERATOR"]), ["public", "context:c1:role:MODERATOR"])
        with self.assertRaises(BadRequest) as cm:
            validate_addresses(["public", "everyone"])
        self.assertEqual(cm.exception.message, "invalid address: everyone")
        with self.assertRaises(BadRequest):
            validate_addresses(["context:c1:role:KING"])
        with self.assertRaises(BadRequest):
            validate_addresses([42])


class AddressResolverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.runtime = build_runtime()
        self.resolver = self.runtime.resolver
        self.group = await make_context(self.runtime, "owner")
        add_member(self.runtime, self.group.id, "admin", role=Role.ADMIN)
        add_member(self.runtime, self.group.id, "mod", role=Role.MODERATOR)
        add_member(self.runtime, self.group.id, "member")
        add_member(self.runtime, self.group.id, "waiting", status=MembershipStatus.PENDING)

    async def asyncTearDown(self):
        self.runtime.backend.close()

    async def _reason(self, activity, viewer):
        return await self.resolver.can_see_activity_with_reason(activity, viewer)

    async def test_public_and_anonymous(self):
        result = await self._reason(_activity(to=["public"]), None)
        self.assertEqual((result.visible, result.reason), (True, "Public activity"))
        result = await self._reason(_activity(to=["followers"]), None)
        self.assertEqual(result.reason, "Authentication required for non-public activities")

    async def test_owner_direct_and_followers(self):
        self.assertEqual((await self._reason(_activity(to=["user:bob"]), "alice")).reason, "Activity owner")
        self.assertEqual((await self._reason(_activity(cc=["user:bob"]), "bob")).reason, "Direct recipient")
        self.assertFalse((await self._reason(_activity(to=["user:bob"]), "carol")).visible)

        followers_only = _activity(to=["followers"])
        self.assertEqual((await self._reason(followers_only, "bob")).reason, "No matching address found")
        self.runtime.follows.follow("bob", "alice")
        self.assertEqual((await self._reason(followers_only, "bob")).reason, "Following actor")

    async def test_pending_follow_does_not_grant(self):
        self.runtime.follows.follow("bob", "alice", requires_approval=True)
        self.assertFalse(await self.resolver.can_see_activity(_activity(to=["followers"]), "bob"))

    async def test_context_membership(self):
        activity = _activity(actor_id="owner", to=[addressing.context(self.group.id)])
        self.assertEqual((await self._reason(activity, "member")).reason, "Context member")
        self.assertFalse(await self.resolver.can_see_activity(activity, "waiting"))
        self.assertFalse(await self.resolver.can_see_activity(activity, "stranger"))

    async def test_builtin_modifiers(self):
        admins = _activity(actor_id="owner", to=[addressing.context_admins(self.group.id)])
        moderators = _activity(actor_id="owner", to=[addressing.context_moderators(self.group.id)])
        members = _activity(actor_id="owner", to=[addressing.context_role(self.group.id, Role.MEMBER)])

        self.assertTrue(await self.resolver.can_see_activity(admins, "admin"))
        self.assertFalse(await self.resolver.can_see_activity(admins, "mod"))
        self.assertTrue(await self.resolver.can_see_activity(moderators, "mod"))
        self.assertFalse(await self.resolver.can_see_activity(moderators, "member"))
        self.assertTrue(await self.resolver.can_see_activity(members, "member"))
        self.assertFalse(await self.resolver.can_see_activity(members, "admin"))
        self.assertEqual((await self._reason(admins, "admin")).reason, "Context member with modifier: admins")

    async def test_plugin_modifiers(self):
        staff = _activity(actor_id="owner", to=[f"context:{self.group.id}:staff"])
        self.assertTrue(await self.resolver.can_see_activity(staff, "mod"))
        self.assertFalse(await self.resolver.can_see_activity(staff, "member"))

        hosts = _activity(actor_id="owner", to=[f"context:{self.group.id}:hosts"])
        self.assertFalse(await self.resolver.can_see_activity(hosts, "admin"))

        event = await make_context(
            self.runtime,
            "host",
            name="Swap Meet",
            kind=ContextKind.EVENT,
            plugin_data={
                "startAt": "2026-11-01T10:00:00Z",
                "endAt": "2026-11-01T12:00:00Z",
                "locationType": "physical",
                "location": {"name": "Hall A"},
            },
        )
        add_member(self.runtime, event.id, "guest")
        event_hosts = _activity(actor_id="someone", to=[f"context:{event.id}:hosts"])
        self.assertTrue(await self.resolver.can_see_activity(event_hosts, "host"))
        self.assertFalse(await self.resolver.can_see_activity(event_hosts, "guest"))

    async def test_filter_visible_preserves_order(self):
        first = _activity(actor_id="x", to=["public"])
        hidden = _activity(actor_id="x", to=["user:someone"])
        last = _activity(actor_id="x", cc=["user:viewer"])
        visible = await self.resolver.filter_visible([first, hidden, last], "viewer")
        self.assertEqual(visible, [first, last])

    async def test_resolve_context_recipients(self):
        everyone = await self.resolver.resolve_context_recipients(self.group.id)
        self.assertEqual(everyone, ["owner", "admin", "mod", "member"])
        self.assertEqual(await self.resolver.resolve_context_recipients(self.group.id, "admins"), ["owner", "admin"])
        self.assertEqual(await self.resolver.resolve_context_recipients(self.group.id, "role:MODERATOR"), ["mod"])
        self.assertEqual(
            await self.resolver.resolve_context_recipients(self.group.id, "staff"), ["owner", "admin", "mod"]
        )
        self.assertEqual(await self.resolver.resolve_context_recipients(self.group.id, "hosts"), [])


if __name__ == "__main__":
    unittest.main()
