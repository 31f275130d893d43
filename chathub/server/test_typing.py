import asyncio
import unittest
from chathub.server.coordinator import ChatCoordinator
from chathub.server.typing_status import TypingIndicators


def typing_events(session):
    out = []
    while not session.queue.empty():
        env = session.queue.get_nowait()
        if env["event"] == "user:typing":
            out.append(env["data"])
    return out


class FakeMonotonic:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def pair(coordinator):
    a = await coordinator.open_session("conn-a")
    b = await coordinator.open_session("conn-b")
    await coordinator.join(a, "alice")
    await coordinator.join(b, "bob")
    typing_events(a), typing_events(b)
    return a, b


class TestTypingIndicators(unittest.TestCase):
    def test_private_typing_expires_after_window(self):
        async def scenario():
            c = ChatCoordinator(typing_window=0.05)
            a, b = await pair(c)
            await c.typing_start(a, b.user_id, True)
            self.assertEqual(typing_events(b), [{"userId": a.user_id, "isTyping": True, "chatId": a.user_id}])

            await asyncio.sleep(0.15)
            self.assertEqual(typing_events(b), [{"userId": a.user_id, "isTyping": False, "chatId": a.user_id}])
            self.assertIsNone(c.typing.get(a.user_id))

        asyncio.run(scenario())

    def test_restart_resets_the_window(self):
        async def scenario():
            c = ChatCoordinator(typing_window=0.2)
            a, b = await pair(c)
            await c.typing_start(a, b.user_id, True)
            await asyncio.sleep(0.12)
            await c.typing_start(a, b.user_id, True)
            await asyncio.sleep(0.12)
            self.assertEqual([e["isTyping"] for e in typing_events(b)], [True, True])

            await asyncio.sleep(0.2)
            self.assertEqual([e["isTyping"] for e in typing_events(b)], [False])

        asyncio.run(scenario())

    def test_explicit_stop_cancels_timer(self):
        async def scenario():
            c = ChatCoordinator(typing_window=0.05)
            a, b = await pair(c)
            await c.typing_start(a, b.user_id, True)
            await c.typing_stop(a, b.user_id, True)
            self.assertEqual([e["isTyping"] for e in typing_events(b)], [True, False])
            self.assertEqual(c.typing.timers, {})

            await asyncio.sleep(0.15)
            self.assertEqual(typing_events(b), [])

        asyncio.run(scenario())

    def test_stop_for_another_chat_keeps_active_entry(self):
        async def scenario():
            c = ChatCoordinator(typing_window=0.1)
            a, b = await pair(c)
            group_id = (await c.create_group(b, "G"))["group"]["id"]
            await c.join_group(a, group_id)
            typing_events(a), typing_events(b)

            await c.typing_start(a, b.user_id, True)
            await c.typing_stop(a, group_id, False)
            self.assertEqual(typing_events(b), [
                {"userId": a.user_id, "isTyping": True, "chatId": a.user_id},
                {"userId": a.user_id, "isTyping": False, "chatId": group_id},
            ])
            self.assertEqual(c.typing.get(a.user_id).chat_id, b.user_id)

            await asyncio.sleep(0.25)
            self.assertEqual(typing_events(b), [{"userId": a.user_id, "isTyping": False, "chatId": a.user_id}])
            self.assertIsNone(c.typing.get(a.user_id))

        asyncio.run(scenario())

    def test_group_typing_skips_the_typist(self):
        async def scenario():
            c = ChatCoordinator(typing_window=5.0)
            a, b = await pair(c)
            group_id = (await c.create_group(a, "G"))["group"]["id"]
            await c.join_group(b, group_id)
            typing_events(a), typing_events(b)

            await c.typing_start(a, group_id, False)
            self.assertEqual(typing_events(b), [{"userId": a.user_id, "isTyping": True, "chatId": group_id}])
            self.assertEqual(typing_events(a), [])
            await c.close()

        asyncio.run(scenario())

    def test_switching_chat_stops_previous_indicator(self):
        async def scenario():
            c = ChatCoordinator(typing_window=5.0)
            a, b = await pair(c)
            group_id = (await c.create_group(b, "G"))["group"]["id"]
            await c.join_group(a, group_id)
            typing_events(b)

            await c.typing_start(a, b.user_id, True)
            await c.typing_start(a, group_id, False)
            self.assertEqual(
                [(e["chatId"], e["isTyping"]) for e in typing_events(b)],
                [(a.user_id, True), (a.user_id, False), (group_id, True)],
            )
            await c.close()

        asyncio.run(scenario())

    def test_disconnect_announces_stop(self):
        async def scenario():
            c = ChatCoordinator(typing_window=5.0)
            a, b = await pair(c)
            await c.typing_start(a, b.user_id, True)
            typing_events(b)
            await c.close_session(a)
            self.assertEqual([e["isTyping"] for e in typing_events(b)], [False])
            self.assertEqual(c.typing.statuses, {})

        asyncio.run(scenario())

    def test_sweep_purges_entries_whose_timer_never_fired(self):
        async def scenario():
            clock = FakeMonotonic()
            c = ChatCoordinator(typing_window=60.0, typing_stale_after=10.0, monotonic=clock)
            a, b = await pair(c)
            await c.typing_start(a, b.user_id, True)
            typing_events(b)

            clock.now = 5.0
            self.assertEqual(await c.sweep_typing(), 0)
            clock.now = 11.0
            self.assertEqual(await c.sweep_typing(), 1)
            self.assertEqual([e["isTyping"] for e in typing_events(b)], [False])
            self.assertIsNone(c.typing.get(a.user_id))
            await c.close()

        asyncio.run(scenario())

    def test_periodic_sweep_runs_in_background(self):
        async def scenario():
            clock = FakeMonotonic()
            c = ChatCoordinator(typing_window=60.0, typing_stale_after=10.0,
                                typing_sweep_interval=0.02, monotonic=clock)
            a, b = await pair(c)
            c.start()
            await c.typing_start(a, b.user_id, True)
            typing_events(b)
            clock.now = 20.0
            await asyncio.sleep(0.1)
            self.assertEqual([e["isTyping"] for e in typing_events(b)], [False])
            await c.close()

        asyncio.run(scenario())


class TestTypingTable(unittest.TestCase):
    def test_one_entry_per_user(self):
        async def scenario():
            table = TypingIndicators(window=1.0)
            first, previous = table.start("u1", "g1", False)
            self.assertIsNone(previous)
            second, previous = table.start("u1", "g2", False)
            self.assertIs(previous, first)
            self.assertIs(table.get("u1"), second)
            self.assertFalse(table.clear_if_current("u1", first))
            self.assertTrue(table.clear_if_current("u1", second))
            self.assertIsNone(table.stop("u1"))

        asyncio.run(scenario())


if __name__ == '__main__':
    unittest.main()
