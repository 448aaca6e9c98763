"""Tests for imagequery.store module."""
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from imagequery.errors import NotFound, StoreWriteError
from imagequery.messages import assistant_message, user_message
from imagequery.store import ChatStore, parse_timestamp


class TestChatStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = ChatStore(Path(self._tmp.name))

    def tearDown(self):
        self._tmp.cleanup()

    def test_create_and_list(self):
        first = self.store.create_session("First")
        second = self.store.create_session("Second")
        self.store.append_message(first, user_message(first, "bump"))
        sessions = self.store.list_sessions()
        by_id = {s.id: s for s in sessions}
        self.assertEqual(set(by_id), {first, second})
        self.assertEqual(by_id[first].message_count, 1)
        self.assertEqual(by_id[second].title, "Second")

    def test_append_assigns_increasing_seq(self):
        sid = self.store.create_session("Chat")
        prompt = user_message(sid, "hi")
        reply = assistant_message(sid, "hello", "gemini-2.5-flash", 0.9)
        self.store.append_message(sid, prompt)
        self.store.append_message(sid, reply)
        self.assertEqual((prompt.seq, reply.seq), (0, 1))
        loaded = self.store.load_messages(sid)
        self.assertEqual([m.text for m in loaded], ["hi", "hello"])
        self.assertEqual(loaded[1].model_used, "gemini-2.5-flash")

    def test_duplicate_append_rejected(self):
        sid = self.store.create_session("Chat")
        prompt = user_message(sid, "hi")
        self.store.append_message(sid, prompt)
        with self.assertRaises(StoreWriteError):
            self.store.append_message(sid, prompt)

    def test_replace_keeps_position(self):
        sid = self.store.create_session("Chat")
        prompt = user_message(sid, "hi")
        reply = assistant_message(sid, "first", "m", 0.5)
        self.store.append_message(sid, prompt)
        self.store.append_message(sid, reply)
        self.store.replace_message(reply.id, assistant_message(sid, "second", "m", 0.9))
        loaded = self.store.load_messages(sid)
        self.assertEqual(len(loaded), 2)
        self.assertEqual(loaded[1].id, reply.id)
        self.assertEqual(loaded[1].text, "second")
        self.assertEqual(loaded[1].seq, 1)

    def test_replace_missing_message(self):
        sid = self.store.create_session("Chat")
        with self.assertRaises(NotFound):
            self.store.replace_message("nope", user_message(sid, "x"))

    def test_truncate_after_is_inclusive(self):
        sid = self.store.create_session("Chat")
        messages = [user_message(sid, f"m{i}") for i in range(4)]
        for message in messages:
            self.store.append_message(sid, message)
        removed = self.store.truncate_after(sid, messages[1].id)
        self.assertEqual(removed, 3)
        self.assertEqual([m.text for m in self.store.load_messages(sid)], ["m0"])
        self.assertEqual(self.store.get_session(sid).message_count, 1)

    def test_seq_not_reused_after_truncate(self):
        sid = self.store.create_session("Chat")
        first = user_message(sid, "a")
        second = user_message(sid, "b")
        self.store.append_message(sid, first)
        self.store.append_message(sid, second)
        self.store.truncate_after(sid, second.id)
        third = user_message(sid, "c")
        self.store.append_message(sid, third)
        self.assertEqual(third.seq, 2)

    def test_rename_and_delete(self):
        sid = self.store.create_session("Old")
        self.assertEqual(self.store.rename_session(sid, "New").title, "New")
        self.store.delete_session(sid)
        self.assertIsNone(self.store.get_session(sid))
        with self.assertRaises(NotFound):
            self.store.delete_session(sid)
        with self.assertRaises(NotFound):
            self.store.load_messages(sid)

    def test_search_is_case_insensitive(self):
        sid = self.store.create_session("Chat")
        self.store.append_message(sid, user_message(sid, "Describe this CAT"))
        self.store.append_message(sid, user_message(sid, "something else"))
        hits = self.store.search_messages("cat")
        self.assertEqual([m.text for m in hits], ["Describe this CAT"])
        self.assertEqual(self.store.search_messages("  "), [])

    def test_search_orders_by_instant_across_offsets(self):
        sid = self.store.create_session("Chat")
        # 12:00 at +05:00 is 07:00 UTC, earlier than 10:00 UTC despite the larger string
        early = user_message(sid, "cat at dawn")
        early.created_at = "2024-01-01T12:00:00.000+05:00"
        late = user_message(sid, "cat at noon")
        late.created_at = "2024-01-01T10:00:00.000+00:00"
        self.store.append_message(sid, early)
        self.store.append_message(sid, late)
        hits = self.store.search_messages("cat")
        self.assertEqual([m.text for m in hits], ["cat at noon", "cat at dawn"])

    def test_parse_timestamp_handles_bad_values(self):
        self.assertLess(parse_timestamp("not a date"), parse_timestamp("2024-01-01T00:00:00.000+00:00"))
        self.assertIsNotNone(parse_timestamp("2024-01-01T00:00:00").tzinfo)

    def test_write_failure_raises_store_write_error(self):
        sid = self.store.create_session("Chat")
        with patch("pathlib.Path.open", side_effect=PermissionError("read-only")):
            with self.assertRaises(StoreWriteError):
                self.store.append_message(sid, user_message(sid, "hi"))

    def test_unreadable_session_file_skipped(self):
        sid = self.store.create_session("Chat")
        (Path(self._tmp.name) / "sessions" / "broken.json").write_text("{not json")
        self.assertEqual([s.id for s in self.store.list_sessions()], [sid])


if __name__ == "__main__":
    unittest.main()
