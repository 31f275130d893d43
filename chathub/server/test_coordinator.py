import asyncio
import itertools
import unittest
from chathub.server.coordinator import ChatCoordinator, SessionState
from chathub.server.models import conversation_key, DELETED_PLACEHOLDER


def drain(session):
    """Pop every envelope queued for a session."""
    out = []
    while not session.queue.empty():
        out.append(session.queue.get_nowait())
    return out


def payloads(envelopes, event):
    return [env["data"] for env in envelopes if env["event"] == event]


def make_coordinator(**kwargs):
    ticks = itertools.count(1000)
    return ChatCoordinator(clock=lambda: next(ticks), **kwargs)


async def connect(coordinator, name):
    session = await coordinator.open_session(f"conn-{name}")
    resp = await coordinator.join(session, name)
    assert resp["success"], resp
    return session, resp["user"]["id"]


class TestPresence(unittest.TestCase):
    def test_name_taken_while_online_then_reusable(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b = await c.open_session("conn-b")
            resp = await c.join(b, "alice")
            self.assertFalse(resp["success"])
            self.assertEqual(resp["code"], "NameTaken")
            self.assertEqual(b.state, SessionState.ANONYMOUS)

            await c.disconnect(a)
            resp = await c.join(b, "alice")
            self.assertTrue(resp["success"])
            self.assertEqual(resp["user"]["id"], alice_id)
            joined = payloads(drain(b), "user:joined")
            self.assertEqual(joined[-1]["action"], "reconnected")

        asyncio.run(scenario())

    def test_connection_greeting_and_join_payload(self):
        async def scenario():
            c = make_coordinator()
            c.seed_groups([("General", "General discussions")])
            a, _ = await connect(c, "alice")
            envs = drain(a)
            self.assertEqual(envs[0]["event"], "server:info")
            self.assertEqual(envs[0]["data"]["serverId"], "server1")
            self.assertEqual([g["name"] for g in payloads(envs, "groups:list")[0]], ["General"])
            self.assertEqual(len(payloads(envs, "user:registered")), 1)

            b, _ = await connect(c, "bob")
            resp = await c.get_users(b)
            self.assertEqual([u["username"] for u in resp["users"]], ["alice"])

        asyncio.run(scenario())

    def test_operations_require_identified_session(self):
        async def scenario():
            c = make_coordinator()
            s = await c.open_session("conn-x")
            resp = await c.create_group(s, "G")
            self.assertEqual(resp, {"success": False, "error": "User not found", "code": "Unauthenticated"})
            resp = await c.typing_start(s, "g", False)
            self.assertEqual(resp["code"], "Unauthenticated")

        asyncio.run(scenario())

    def test_disconnect_is_idempotent_and_terminal(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, _ = await connect(c, "bob")
            drain(b)

            self.assertTrue((await c.disconnect(a))["success"])
            self.assertTrue((await c.disconnect(a))["success"])
            self.assertEqual(a.state, SessionState.DISCONNECTED)
            self.assertFalse(c.users.get(alice_id).online)
            self.assertEqual([p["id"] for p in payloads(drain(b), "user:left")], [alice_id])

            resp = await c.join(a, "alice")
            self.assertEqual(resp["code"], "Unauthenticated")

        asyncio.run(scenario())

    def test_reconnect_by_id(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            await c.close_session(a)

            a2 = await c.open_session("conn-a2")
            resp = await c.reconnect(a2, "unknown")
            self.assertEqual(resp["code"], "NotFound")
            resp = await c.reconnect(a2, alice_id)
            self.assertTrue(resp["success"])
            self.assertEqual(c.users.connection_for(alice_id), "conn-a2")
            self.assertEqual(a2.state, SessionState.IDENTIFIED)

        asyncio.run(scenario())


class TestGroups(unittest.TestCase):
    def test_join_notice_and_last_leave_deletes_group(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")

            resp = await c.create_group(a, "G", "a group")
            self.assertTrue(resp["success"])
            group_id = resp["group"]["id"]
            self.assertEqual(resp["group"]["members"], [alice_id])
            drain(a), drain(b)

            resp = await c.join_group(b, group_id)
            self.assertTrue(resp["success"])
            for session in (a, b):
                notices = payloads(drain(session), "message:received")
                self.assertEqual([n["content"] for n in notices], ["bob joined the group"])
                self.assertEqual(notices[0]["type"], "system")
                self.assertEqual(notices[0]["groupName"], "G")

            resp = await c.join_group(b, group_id)
            self.assertEqual(resp["code"], "AlreadyMember")

            await c.leave_group(a, group_id)
            self.assertIsNotNone(c.groups.get(group_id))
            left = payloads(drain(b), "message:received")
            self.assertEqual([n["content"] for n in left], ["alice left the group"])
            drain(a)

            resp = await c.leave_group(b, group_id)
            self.assertTrue(resp["deleted"])
            self.assertIsNone(c.groups.get(group_id))
            self.assertFalse(c.messages.has(group_id))
            self.assertEqual(payloads(drain(a), "group:deleted"), [group_id])
            self.assertEqual(payloads(drain(b), "group:deleted"), [group_id])
            self.assertEqual(c.users.get(bob_id).group_ids, [])

        asyncio.run(scenario())

    def test_create_rejections(self):
        async def scenario():
            c = make_coordinator()
            a, _ = await connect(c, "alice")
            self.assertEqual((await c.create_group(a, " "))["code"], "NameRequired")
            await c.create_group(a, "Tech")
            self.assertEqual((await c.create_group(a, "TECH"))["code"], "NameTaken")

        asyncio.run(scenario())

    def test_delete_group_by_creator_only(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            group_id = (await c.create_group(a, "G"))["group"]["id"]
            await c.join_group(b, group_id)

            resp = await c.delete_group(b, group_id)
            self.assertEqual(resp["code"], "NotCreator")

            resp = await c.delete_group(a, group_id)
            self.assertTrue(resp["success"])
            self.assertEqual(set(resp["formerMembers"]), {alice_id, bob_id})
            self.assertEqual(c.users.get(alice_id).group_ids, [])
            self.assertEqual(c.users.get(bob_id).group_ids, [])
            self.assertIn(group_id, payloads(drain(b), "group:deleted"))

            resp = await c.join_group(b, group_id)
            self.assertEqual(resp["code"], "NotFound")

        asyncio.run(scenario())


class TestMessaging(unittest.TestCase):
    def test_group_fan_out_skips_offline_members(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            cs, carol_id = await connect(c, "carol")
            group_id = (await c.create_group(a, "G"))["group"]["id"]
            await c.join_group(b, group_id)
            await c.join_group(cs, group_id)
            await c.close_session(cs)
            drain(a), drain(b)

            resp = await c.send_group_message(a, group_id, "  hello all  ")
            self.assertTrue(resp["success"])
            self.assertEqual(resp["deliveredTo"], [bob_id])
            self.assertEqual(resp["deliveredCount"], 1)
            self.assertEqual(resp["message"]["content"], "hello all")

            received = payloads(drain(b), "message:received")
            self.assertEqual([(m["content"], m["senderName"]) for m in received], [("hello all", "alice")])
            a_envs = drain(a)
            self.assertEqual(payloads(a_envs, "message:delivered"),
                             [{"messageId": resp["message"]["id"], "recipientId": bob_id}])
            self.assertTrue(payloads(a_envs, "message:received")[0]["isOwnMessage"])

            log = c.messages.read(group_id)
            self.assertEqual(log[-1].delivered_to, {bob_id})
            self.assertNotIn(carol_id, log[-1].delivered_to)

        asyncio.run(scenario())

    def test_group_message_rejections(self):
        async def scenario():
            c = make_coordinator()
            a, _ = await connect(c, "alice")
            b, _ = await connect(c, "bob")
            group_id = (await c.create_group(a, "G"))["group"]["id"]
            self.assertEqual((await c.send_group_message(b, group_id, "hi"))["code"], "NotMember")
            self.assertEqual((await c.send_group_message(a, group_id, "   "))["code"], "EmptyContent")
            self.assertEqual((await c.send_group_message(a, "missing", "hi"))["code"], "NotFound")
            self.assertEqual(c.messages.read(group_id), [])

        asyncio.run(scenario())

    def test_private_message_to_offline_user_is_kept(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            await c.close_session(b)
            drain(a)

            resp = await c.send_private_message(a, bob_id, "are you there?")
            self.assertTrue(resp["success"])
            self.assertFalse(resp["delivered"])
            self.assertFalse(resp["recipientOnline"])
            echo = payloads(drain(a), "message:received")
            self.assertEqual(len(echo), 1)
            self.assertTrue(echo[0]["isOwnMessage"])

            key = conversation_key(alice_id, bob_id)
            self.assertEqual([m.content for m in c.messages.read(key)], ["are you there?"])

            b2, again_id = await connect(c, "bob")
            self.assertEqual(again_id, bob_id)
            resp = await c.get_messages(b2, alice_id, True)
            self.assertEqual([m["content"] for m in resp["messages"]], ["are you there?"])

        asyncio.run(scenario())

    def test_private_message_online_delivery_and_read_receipt(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            drain(a), drain(b)

            resp = await c.send_private_message(a, bob_id, "hi bob")
            self.assertTrue(resp["delivered"])
            self.assertTrue(resp["recipientOnline"])
            message_id = resp["message"]["id"]
            incoming = payloads(drain(b), "message:received")
            self.assertEqual(incoming[0]["content"], "hi bob")
            self.assertTrue(incoming[0]["isPrivate"])
            self.assertEqual(payloads(drain(a), "message:delivered"),
                             [{"messageId": message_id, "recipientId": bob_id}])

            self.assertEqual((await c.mark_read(b, alice_id, True))["count"], 1)
            self.assertEqual(payloads(drain(a), "message:read"), [{"messageId": message_id, "readerId": bob_id}])
            self.assertEqual((await c.mark_read(b, alice_id, True))["count"], 0)

        asyncio.run(scenario())

    def test_private_message_rejections(self):
        async def scenario():
            c = make_coordinator()
            a, _ = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            self.assertEqual((await c.send_private_message(a, "ghost", "hi"))["code"], "NotFound")
            self.assertEqual((await c.send_private_message(a, bob_id, ""))["code"], "EmptyContent")
            c.users.get(bob_id).instance_id = "server2"
            self.assertEqual((await c.send_private_message(a, bob_id, "hi"))["code"], "DifferentInstance")

        asyncio.run(scenario())

    def test_history_paging(self):
        async def scenario():
            c = make_coordinator(default_history_page=2)
            a, _ = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            stamps = []
            for i in range(5):
                stamps.append((await c.send_private_message(a, bob_id, f"m{i}"))["message"]["timestamp"])

            recent = await c.get_messages(b, c.users.get(a.user_id).id, True, limit=2)
            self.assertEqual([m["content"] for m in recent["messages"]], ["m3", "m4"])

            older = await c.get_more_messages(b, a.user_id, True, before=stamps[3])
            self.assertEqual([m["content"] for m in older["messages"]], ["m1", "m2"])
            older = await c.get_more_messages(b, a.user_id, True, before=stamps[3], limit=10)
            self.assertEqual([m["content"] for m in older["messages"]], ["m0", "m1", "m2"])

        asyncio.run(scenario())

    def test_reply_snapshot_comes_from_log(self):
        async def scenario():
            c = make_coordinator()
            a, _ = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            first = (await c.send_private_message(a, bob_id, "question?"))["message"]
            resp = await c.send_private_message(b, a.user_id, "answer", reply_to=first["id"],
                                                replied_message={"id": first["id"], "content": "forged"})
            snapshot = resp["message"]["repliedMessage"]
            self.assertEqual(snapshot["content"], "question?")
            self.assertEqual(snapshot["senderName"], "alice")
            self.assertEqual(resp["message"]["replyTo"], first["id"])

        asyncio.run(scenario())


class TestDeletion(unittest.TestCase):
    def test_delete_for_everyone_by_other_party_is_forbidden(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            message_id = (await c.send_private_message(a, bob_id, "keep me"))["message"]["id"]

            resp = await c.delete_message(b, message_id, alice_id, True, for_everyone=True)
            self.assertEqual(resp["code"], "Forbidden")
            key = conversation_key(alice_id, bob_id)
            self.assertEqual(c.messages.find(key, message_id).content, "keep me")

        asyncio.run(scenario())

    def test_delete_for_everyone_notifies_other_party(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            message_id = (await c.send_private_message(a, bob_id, "oops"))["message"]["id"]
            drain(a), drain(b)

            resp = await c.delete_message(a, message_id, bob_id, True, for_everyone=True)
            self.assertTrue(resp["success"])
            notice = payloads(drain(b), "message:deleted")[0]
            self.assertEqual(notice["chatId"], alice_id)
            self.assertTrue(notice["deleteForEveryone"])
            history = await c.get_messages(b, alice_id, True)
            self.assertEqual(history["messages"][0]["content"], DELETED_PLACEHOLDER)
            self.assertTrue(history["messages"][0]["deletedForEveryone"])

        asyncio.run(scenario())

    def test_delete_for_me_is_per_participant(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            message_id = (await c.send_private_message(a, bob_id, "private note"))["message"]["id"]
            drain(b)

            resp = await c.delete_message(a, message_id, bob_id, True, for_everyone=False)
            self.assertTrue(resp["message"]["deletedForMe"])
            mine = await c.get_messages(a, bob_id, True)
            theirs = await c.get_messages(b, alice_id, True)
            self.assertEqual(mine["messages"][0]["content"], DELETED_PLACEHOLDER)
            self.assertEqual(theirs["messages"][0]["content"], "private note")
            self.assertEqual(payloads(drain(b), "message:deleted"), [])

        asyncio.run(scenario())

    def test_edit_is_pushed_to_group(self):
        async def scenario():
            c = make_coordinator()
            a, _ = await connect(c, "alice")
            b, _ = await connect(c, "bob")
            group_id = (await c.create_group(a, "G"))["group"]["id"]
            await c.join_group(b, group_id)
            message_id = (await c.send_group_message(a, group_id, "helo"))["message"]["id"]
            drain(b)

            self.assertEqual((await c.edit_message(b, message_id, group_id, False, "x"))["code"], "Forbidden")
            resp = await c.edit_message(a, message_id, group_id, False, "hello")
            self.assertTrue(resp["message"]["edited"])
            edited = payloads(drain(b), "message:edited")
            self.assertEqual([(e["messageId"], e["content"]) for e in edited], [(message_id, "hello")])

        asyncio.run(scenario())

    def test_chat_delete_rules(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            group_id = (await c.create_group(a, "G"))["group"]["id"]
            await c.join_group(b, group_id)
            await c.send_group_message(a, group_id, "hello")
            await c.send_private_message(a, bob_id, "dm")

            self.assertEqual((await c.delete_chat(b, group_id, False))["code"], "Forbidden")
            self.assertEqual((await c.delete_chat(b, "missing", False))["code"], "NotFound")
            self.assertTrue((await c.delete_chat(a, group_id, False))["success"])
            self.assertEqual(c.messages.read(group_id), [])

            drain(b)
            self.assertTrue((await c.delete_chat(b, alice_id, True))["success"])
            self.assertFalse(c.messages.has(conversation_key(alice_id, bob_id)))
            self.assertEqual(payloads(drain(b), "chat:deleted"), [{"chatId": alice_id, "isPrivate": True}])

        asyncio.run(scenario())


class TestQueries(unittest.TestCase):
    def test_query_accessors(self):
        async def scenario():
            c = make_coordinator()
            a, alice_id = await connect(c, "alice")
            b, bob_id = await connect(c, "bob")
            await c.close_session(b)
            group_id = (await c.create_group(a, "G"))["group"]["id"]
            await c.send_group_message(a, group_id, "one")
            await c.send_group_message(a, group_id, "two")

            health = c.health()
            self.assertEqual((health["users"], health["onlineUsers"], health["groups"]), (2, 1, 1))
            self.assertEqual({u["id"] for u in c.list_users()}, {alice_id, bob_id})
            self.assertEqual([u["id"] for u in c.list_online_users()], [alice_id])
            self.assertEqual(c.get_group(group_id)["name"], "G")
            self.assertIsNone(c.get_group("missing"))
            self.assertEqual([u["id"] for u in c.list_group_members(group_id)], [alice_id])
            self.assertIsNone(c.list_group_members("missing"))
            self.assertEqual([m["content"] for m in c.get_conversation(group_id, limit=1)], ["two"])

        asyncio.run(scenario())


if __name__ == '__main__':
    unittest.main()
