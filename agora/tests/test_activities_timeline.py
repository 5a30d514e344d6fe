import unittest

from runtime_util import add_member, build_runtime, make_context

from agora.contexts import Visibility
from agora.errors import BadRequest, Conflict, Forbidden, NotFound
from agora.roles import Role


class ActivityWriteTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.runtime = build_runtime()
        self.activities = self.runtime.activities

    async def asyncTearDown(self):
        self.runtime.backend.close()

    async def test_published_ms_is_strictly_increasing(self):
        stamps = []
        for index in range(5):
            note = await self.activities.create_note("alice", content=f"n{index}", to=["public"])
            stamps.append(note.published_ms)
        self.assertEqual(stamps, sorted(set(stamps)))

    async def test_address_validation(self):
        with self.assertRaises(BadRequest) as cm:
            await self.activities.create_note("alice", content="x")
        self.assertEqual(cm.exception.message, "at least one address is required")
        with self.assertRaises(BadRequest):
            await self.activities.create_note("alice", content="x", to=["nobody"])
        with self.assertRaises(BadRequest) as cm:
            await self.activities.create_note("alice", content="x", to=["public"], activity_type="POLL")
        self.assertEqual(cm.exception.message, "unsupported activity type: POLL")

    async def test_context_note_addressing(self):
        public_group = await make_context(self.runtime, "owner", name="Open")
        private_group = await make_context(self.runtime, "owner", name="Closed", visibility=Visibility.PRIVATE)

        note = await self.activities.create_note("owner", content="hi", context_id=public_group.id)
        self.assertEqual(note.to, ["public"])
        self.assertEqual(note.cc, [f"context:{public_group.id}"])

        note = await self.activities.create_note("owner", content="psst", context_id=private_group.id)
        self.assertEqual(note.to, [f"context:{private_group.id}"])
        self.assertFalse(note.is_public)

    async def test_context_note_requires_permission(self):
        group = await make_context(self.runtime, "owner")
        add_member(self.runtime, group.id, "guest", role=Role.GUEST)
        with self.assertRaises(Forbidden) as cm:
            await self.activities.create_note("guest", content="hi", context_id=group.id)
        self.assertEqual(cm.exception.message, "Role GUEST lacks permission activity.create")
        with self.assertRaises(Forbidden):
            await self.activities.create_note("stranger", content="hi", context_id=group.id)
        with self.assertRaises(NotFound):
            await self.activities.create_note("owner", content="hi", context_id="ctx_missing")

    async def test_reply_copies_parent_author(self):
        parent = await self.activities.create_note("alice", content="root", to=["public"])
        reply = await self.activities.create_note("bob", content="re", to=["public"], in_reply_to=parent.id)
        self.assertEqual(reply.cc, ["user:alice"])
        self.assertEqual(reply.in_reply_to, parent.id)

        hidden = await self.activities.create_note("alice", content="secret", to=["user:carol"])
        with self.assertRaises(NotFound):
            await self.activities.create_note("bob", content="re", to=["public"], in_reply_to=hidden.id)

    async def test_like_and_unlike(self):
        note = await self.activities.create_note("alice", content="like me", to=["public"])
        like = await self.activities.like("bob", note.id)
        self.assertEqual((like.type, like.object_id, like.to), ("LIKE", note.id, ["user:alice"]))
        with self.assertRaises(Conflict) as cm:
            await self.activities.like("bob", note.id)
        self.assertEqual(cm.exception.message, "Already liked")
        await self.activities.unlike("bob", note.id)
        with self.assertRaises(NotFound) as cm:
            await self.activities.unlike("bob", note.id)
        self.assertEqual(cm.exception.message, "Like not found")
        await self.activities.like("bob", note.id)

        private = await self.activities.create_note("alice", content="mine", to=["user:carol"])
        with self.assertRaises(Forbidden) as cm:
            await self.activities.like("bob", private.id)
        self.assertEqual(cm.exception.message, "You cannot react to this activity")
        with self.assertRaises(NotFound):
            await self.activities.like("bob", "act_missing")

    async def test_announce_rules(self):
        note = await self.activities.create_note("alice", content="share me", to=["public"])
        repost = await self.activities.announce("bob", note.id)
        self.assertEqual(repost.to, ["public"])
        self.assertEqual(repost.cc, ["followers", "user:alice"])
        with self.assertRaises(Conflict):
            await self.activities.announce("bob", note.id)

        cc_public = await self.activities.create_note("alice", content="cc only", to=["followers"], cc=["public"])
        with self.assertRaises(Forbidden) as cm:
            await self.activities.announce("bob", cc_public.id)
        self.assertEqual(cm.exception.message, "Cannot repost non-public activities")

        await self.activities.unannounce("bob", note.id)
        with self.assertRaises(NotFound) as cm:
            await self.activities.unannounce("bob", note.id)
        self.assertEqual(cm.exception.message, "Repost not found")

    async def test_delete_outside_context_is_author_only(self):
        note = await self.activities.create_note("alice", content="bye", to=["public"])
        with self.assertRaises(Forbidden) as cm:
            await self.activities.delete("bob", note.id)
        self.assertEqual(cm.exception.message, "You can only delete your own activities")
        result = await self.activities.can_act("alice", note, "pin")
        self.assertEqual(result.reason, "Only context activities can be pinned")
        await self.activities.delete("alice", note.id)
        self.assertIsNone(await self.activities.get_visible(note.id, "alice"))
        with self.assertRaises(NotFound):
            await self.activities.delete("alice", note.id)

    async def test_moderator_deletes_context_activity(self):
        group = await make_context(self.runtime, "owner")
        add_member(self.runtime, group.id, "alice")
        add_member(self.runtime, group.id, "bob")
        add_member(self.runtime, group.id, "mod", role=Role.MODERATOR)
        note = await self.activities.create_note("alice", content="spam", context_id=group.id)
        with self.assertRaises(Forbidden):
            await self.activities.delete("bob", note.id)
        await self.activities.delete("mod", note.id)
        self.assertTrue(self.runtime.activity_store.get(note.id).deleted)

    async def test_follow_user_emits_activity(self):
        follow = await self.activities.follow_user("bob", "alice")
        self.assertEqual(follow.following_id, "alice")
        self.assertTrue(self.runtime.follows.is_following("bob", "alice"))
        with self.assertRaises(Conflict):
            await self.activities.follow_user("bob", "alice")
        await self.activities.unfollow_user("bob", "alice")
        with self.assertRaises(NotFound) as cm:
            await self.activities.unfollow_user("bob", "alice")
        self.assertEqual(cm.exception.message, "Not following")

    async def test_home_recipients(self):
        self.runtime.follows.follow("carol", "alice")
        note = await self.activities.create_note("alice", content="x", to=["followers"], cc=["user:dave"])
        self.assertEqual(self.activities.home_recipients(note), ["alice", "carol", "dave"])
        direct = await self.activities.create_note("alice", content="x", to=["user:dave"])
        self.assertEqual(self.activities.home_recipients(direct), ["alice", "dave"])


class TimelineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.runtime = build_runtime()
        self.activities = self.runtime.activities
        self.timeline = self.runtime.timeline

    async def asyncTearDown(self):
        self.runtime.backend.close()

    async def test_public_timeline_pagination(self):
        notes = [await self.activities.create_note("alice", content=f"n{i}", to=["public"]) for i in range(5)]
        first = await self.timeline.get_public_timeline(limit=2)
        self.assertEqual([item.activity.id for item in first.items], [notes[4].id, notes[3].id])
        self.assertTrue(first.has_more)
        self.assertEqual(first.next_cursor, notes[3].published_ms)

        second = await self.timeline.get_public_timeline(cursor=first.next_cursor, limit=2)
        self.assertEqual([item.activity.id for item in second.items], [notes[2].id, notes[1].id])
        third = await self.timeline.get_public_timeline(cursor=second.next_cursor, limit=2)
        self.assertEqual([item.activity.id for item in third.items], [notes[0].id])
        self.assertFalse(third.has_more)
        self.assertIsNone(third.next_cursor)

    async def test_public_timeline_excludes_non_public_and_replies(self):
        public = await self.activities.create_note("alice", content="hi", to=["public"])
        await self.activities.create_note("alice", content="friends", to=["followers"])
        await self.activities.create_note("bob", content="re", to=["public"], in_reply_to=public.id)
        page = await self.timeline.get_public_timeline()
        self.assertEqual([item.activity.id for item in page.items], [public.id])
        with_replies = await self.timeline.get_public_timeline(include_replies=True)
        self.assertEqual(len(with_replies.items), 2)

    async def test_public_timeline_marks_viewer_interactions(self):
        note = await self.activities.create_note("alice", content="hi", to=["public"])
        await self.activities.like("bob", note.id)
        page = await self.timeline.get_public_timeline("bob")
        self.assertTrue(page.items[0].liked)
        self.assertFalse(page.items[0].reposted)
        anonymous = await self.timeline.get_public_timeline()
        self.assertFalse(anonymous.items[0].liked)

    async def test_reposts_carry_original(self):
        note = await self.activities.create_note("alice", content="hi", to=["public"])
        repost = await self.activities.announce("bob", note.id)
        page = await self.timeline.get_public_timeline("bob")
        self.assertEqual(page.items[0].activity.id, repost.id)
        self.assertEqual(page.items[0].original.id, note.id)
        self.assertTrue(page.items[1].reposted)

    async def test_home_timeline(self):
        self.runtime.follows.follow("bob", "alice")
        followed = await self.activities.create_note("alice", content="for followers", to=["followers"])
        own = await self.activities.create_note("bob", content="mine", to=["public"])
        direct = await self.activities.create_note("carol", content="hey bob", to=["user:bob"])
        await self.activities.create_note("carol", content="not for bob", to=["public"])
        page = await self.timeline.get_home_timeline("bob")
        self.assertEqual([item.activity.id for item in page.items], [direct.id, own.id, followed.id])

    async def test_private_context_timeline_is_gated(self):
        group = await make_context(self.runtime, "owner", visibility=Visibility.PRIVATE)
        add_member(self.runtime, group.id, "alice")
        note = await self.activities.create_note("alice", content="inside", context_id=group.id)

        member_page = await self.timeline.get_context_timeline(group.id, "alice")
        self.assertEqual([item.activity.id for item in member_page.items], [note.id])
        self.assertEqual((await self.timeline.get_context_timeline(group.id, "outsider")).items, [])
        self.assertEqual((await self.timeline.get_context_timeline(group.id)).items, [])
        self.assertEqual((await self.timeline.get_context_timeline("ctx_missing", "alice")).items, [])

    async def test_public_context_timeline_includes_plugin_types(self):
        group = await make_context(self.runtime, "owner")
        note = await self.activities.create_note("owner", content="hi", context_id=group.id)
        poll = await self.activities.create_note("owner", content="vote", context_id=group.id, activity_type="POLL")
        page = await self.timeline.get_context_timeline(group.id)
        self.assertEqual([item.activity.id for item in page.items], [poll.id, note.id])

    async def test_context_timeline_includes_replies_by_default(self):
        group = await make_context(self.runtime, "owner")
        note = await self.activities.create_note("owner", content="topic", context_id=group.id)
        reply = await self.activities.create_note("owner", content="more", context_id=group.id, in_reply_to=note.id)

        page = await self.timeline.get_context_timeline(group.id)
        self.assertEqual([item.activity.id for item in page.items], [reply.id, note.id])
        top_level = await self.timeline.get_context_timeline(group.id, include_replies=False)
        self.assertEqual([item.activity.id for item in top_level.items], [note.id])

    async def test_user_timeline_respects_audience(self):
        public = await self.activities.create_note("alice", content="all", to=["public"])
        friends = await self.activities.create_note("alice", content="friends", to=["followers"])
        direct = await self.activities.create_note("alice", content="to bob", to=["user:bob"])
        other = await self.activities.create_note("carol", content="hi", to=["public"])
        repost = await self.activities.announce("alice", other.id)

        def ids(page):
            return [item.activity.id for item in page.items]

        self.assertEqual(ids(await self.timeline.get_user_timeline("alice")), [repost.id, public.id])
        self.assertEqual(ids(await self.timeline.get_user_timeline("alice", "bob")), [repost.id, direct.id, public.id])
        self.runtime.follows.follow("dave", "alice")
        self.assertEqual(ids(await self.timeline.get_user_timeline("alice", "dave")), [repost.id, friends.id, public.id])
        self.assertEqual(
            ids(await self.timeline.get_user_timeline("alice", "alice")), [repost.id, direct.id, friends.id, public.id]
        )
        self.assertEqual(
            ids(await self.timeline.get_user_timeline("alice", include_reposts=False)), [public.id]
        )

    async def test_replies_and_thread(self):
        root = await self.activities.create_note("alice", content="root", to=["public"])
        first = await self.activities.create_note("bob", content="1", to=["public"], in_reply_to=root.id)
        await self.activities.create_note("carol", content="private", to=["user:dave"], in_reply_to=root.id)
        last = await self.activities.create_note("dave", content="3", to=["public"], in_reply_to=root.id)

        replies = await self.timeline.get_replies(root.id, "bob")
        self.assertEqual([item.activity.id for item in replies.items], [first.id, last.id])

        thread = await self.timeline.get_activity_thread(root.id, "dave")
        self.assertEqual(thread.root.activity.id, root.id)
        self.assertEqual(thread.total_replies, 3)
        self.assertEqual(thread.to_api_dict()["total_replies"], 3)

        hidden = await self.activities.create_note("alice", content="secret", to=["user:carol"])
        self.assertIsNone(await self.timeline.get_activity_thread(hidden.id, "bob"))
        self.assertEqual((await self.timeline.get_replies(hidden.id, "bob")).items, [])

    async def test_likers_and_reposters(self):
        note = await self.activities.create_note("alice", content="hi", to=["public"])
        for user_id in ("bob", "carol", "dave"):
            await self.activities.like(user_id, note.id)
        await self.activities.announce("carol", note.id)

        likers = await self.timeline.get_likers(note.id, limit=2)
        self.assertEqual(likers.user_ids, ["dave", "carol"])
        self.assertTrue(likers.has_more)
        rest = await self.timeline.get_likers(note.id, cursor=likers.next_cursor, limit=2)
        self.assertEqual(rest.user_ids, ["bob"])
        self.assertEqual((await self.timeline.get_reposters(note.id)).user_ids, ["carol"])
        self.assertEqual(likers.to_api_dict()["users"], ["dave", "carol"])

    async def test_interaction_states(self):
        note = await self.activities.create_note("alice", content="hi", to=["public"])
        other = await self.activities.create_note("alice", content="there", to=["public"])
        await self.activities.like("bob", note.id)
        await self.activities.announce("bob", note.id)
        states = await self.timeline.get_interaction_states([note.id, other.id], "bob")
        self.assertTrue(states[note.id].liked and states[note.id].reposted)
        self.assertFalse(states[other.id].liked or states[other.id].reposted)
        self.assertEqual(await self.timeline.get_interaction_states([note.id], None), {})

    async def test_page_size_is_clamped(self):
        for index in range(3):
            await self.activities.create_note("alice", content=f"n{index}", to=["public"])
        runtime = build_runtime(max_page_size=2, default_page_size=1)
        self.addAsyncCleanup(self._close, runtime)
        for index in range(3):
            await runtime.activities.create_note("alice", content=f"n{index}", to=["public"])
        self.assertEqual(len((await runtime.timeline.get_public_timeline(limit=100)).items), 2)
        self.assertEqual(len((await runtime.timeline.get_public_timeline()).items), 1)
        self.assertEqual(len((await runtime.timeline.get_public_timeline(limit=0)).items), 1)

    async def _close(self, runtime):
        runtime.backend.close()


if __name__ == "__main__":
    unittest.main()
