"""Tests for imagequery.state and imagequery.messages modules."""
import asyncio
import unittest
from datetime import datetime

from imagequery.messages import (
    Message,
    apply_prompt_template,
    default_session_title,
    failed_message,
    session_title,
    user_message,
)
from imagequery.state import ChatState, StateStream


class TestMessages(unittest.TestCase):
    def test_session_title(self):
        self.assertEqual(session_title("What breed is this dog?"), "What breed is this")
        self.assertEqual(session_title("   "), "New Chat")
        long_title = session_title("Supercalifragilistic expialidocious antidisestablishment words")
        self.assertTrue(long_title.endswith("..."))
        self.assertEqual(len(long_title), 33)

    def test_default_title(self):
        self.assertEqual(default_session_title(datetime(2024, 3, 7)), "New Chat 7/3")

    def test_prompt_template(self):
        self.assertEqual(apply_prompt_template(None, "cat"), "cat")
        self.assertEqual(apply_prompt_template("Describe {input} briefly", "cat"), "Describe cat briefly")
        self.assertEqual(apply_prompt_template("Be concise.", "cat"), "Be concise.\n\ncat")

    def test_round_trip_keeps_failure(self):
        message = failed_message("s1", "All models failed")
        restored = Message.from_dict(message.to_dict())
        self.assertTrue(restored.failed)
        self.assertEqual(restored.error, "All models failed")
        self.assertIsNone(restored.model_used)

    def test_copy_does_not_share_images(self):
        message = user_message("s1", "look", ["a.png"])
        clone = message.copy(text="look again")
        clone.image_refs.append("b.png")
        self.assertEqual(message.image_refs, ["a.png"])
        self.assertEqual(clone.id, message.id)


class TestStateStream(unittest.IsolatedAsyncioTestCase):
    async def test_callbacks_and_unsubscribe(self):
        stream = StateStream()
        seen = []
        unsubscribe = stream.subscribe(seen.append)
        stream.publish(ChatState(version=1))
        unsubscribe()
        stream.publish(ChatState(version=2))
        self.assertEqual([s.version for s in seen], [1])
        self.assertEqual(stream.current.version, 2)

    async def test_failing_callback_does_not_block_others(self):
        stream = StateStream()
        seen = []

        def broken(state):
            raise RuntimeError("subscriber bug")

        stream.subscribe(broken)
        stream.subscribe(seen.append)
        stream.publish(ChatState(version=1))
        self.assertEqual(len(seen), 1)

    async def test_updates_start_with_current_snapshot(self):
        stream = StateStream()
        stream.publish(ChatState(version=5))
        updates = stream.updates()
        first = await updates.__anext__()
        stream.publish(ChatState(version=6, is_loading=True))
        second = await asyncio.wait_for(updates.__anext__(), 1)
        await updates.aclose()
        self.assertEqual((first.version, second.version), (5, 6))
        self.assertTrue(second.is_loading)

    async def test_slow_consumer_keeps_latest(self):
        stream = StateStream(max_queue=2)
        updates = stream.updates()
        await updates.__anext__()
        for version in range(1, 6):
            stream.publish(ChatState(version=version))
        received = [await updates.__anext__(), await updates.__anext__()]
        await updates.aclose()
        self.assertEqual([s.version for s in received], [4, 5])

    def test_to_dict(self):
        state = ChatState(current_messages=(user_message("s1", "hi"),), error="oops")
        data = state.to_dict()
        self.assertEqual(data["error"], "oops")
        self.assertEqual(data["current_messages"][0]["text"], "hi")
        self.assertIsNone(data["current_session"])


if __name__ == "__main__":
    unittest.main()
