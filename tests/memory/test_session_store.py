import json

from codeloop.errors import StorageCorruptionError
from codeloop.session import Session
from tests.memory.base import SessionStoreTestCase


class SessionStoreTests(SessionStoreTestCase):
    def test_save_and_load_round_trip(self) -> None:
        session = self._saved_session("abc", title="parser work", messages=3)
        session.remember_permission("bash(git)")
        self._store.save(session)

        loaded = self._store.load("abc")

        self.assertEqual(session.messages, loaded.messages)
        self.assertEqual({"bash(git)"}, loaded.permission_memory)
        self.assertEqual("parser work", loaded.title)
        self.assertEqual([], list(self._store.directory.glob("*.tmp")))

    def test_save_replaces_previous_snapshot(self) -> None:
        session = self._saved_session("abc")
        session.append_message("user", "more")
        self._store.save(session)

        data = json.loads(self._store.path_for("abc").read_text(encoding="utf-8"))
        self.assertEqual(3, data["messageCount"])

    def test_load_missing_session_raises_key_error(self) -> None:
        with self.assertRaises(KeyError):
            self._store.load("missing")

    def test_corrupt_file_raises_and_is_skipped_in_listing(self) -> None:
        self._saved_session("good")
        self._store.path_for("bad").write_text("{not json", encoding="utf-8")

        with self.assertRaises(StorageCorruptionError):
            self._store.load("bad")
        self.assertEqual(["good"], [s.session_id for s in self._store.list_sessions()])

    def test_rejects_path_like_ids(self) -> None:
        for bad in ("", "../escape", "a/b"):
            with self.assertRaises(ValueError):
                self._store.path_for(bad)

    def test_list_sessions_newest_first_with_previews(self) -> None:
        self._saved_session("older", updated_at="2024-01-01T00:00:00+00:00")
        self._saved_session("newer", updated_at="2025-01-01T00:00:00+00:00", messages=2)

        sessions = self._store.list_sessions()

        self.assertEqual(["newer", "older"], [s.session_id for s in sessions])
        self.assertEqual(1, sessions[0].user_message_count)
        self.assertEqual("newer message 1", sessions[0].last_assistant_preview)
        self.assertEqual("newer message 0", sessions[0].title)
        self.assertEqual("newer", self._store.latest().session_id)

    def test_latest_is_none_for_empty_store(self) -> None:
        self.assertIsNone(self._store.latest())

    def test_delete(self) -> None:
        self._saved_session("gone")
        self.assertTrue(self._store.delete("gone"))
        self.assertFalse(self._store.delete("gone"))

    def test_fork_saves_independent_copy(self) -> None:
        self._saved_session("source", messages=4)

        forked = self._store.fork("source", 2)

        self.assertEqual("source", forked.parent_session_id)
        self.assertEqual(2, len(self._store.load(forked.session_id).messages))
        self.assertEqual(4, len(self._store.load("source").messages))

    def test_resolve_by_id_prefix_and_title(self) -> None:
        self._saved_session("a1b2c3", title="Refactor Parser")
        self._saved_session("a1ffff", title="docs")

        self.assertEqual("a1b2c3", self._store.resolve_session_identifier("a1b2c3").session_id)
        self.assertEqual("a1b2c3", self._store.resolve_session_identifier("a1b").session_id)
        self.assertEqual("a1b2c3", self._store.resolve_session_identifier("refactor parser").session_id)
        self.assertIsNone(self._store.resolve_session_identifier("nothing"))
        self.assertIsNone(self._store.resolve_session_identifier("  "))
        with self.assertRaises(ValueError):
            self._store.resolve_session_identifier("a1")

    def test_ambiguous_title_raises(self) -> None:
        self._saved_session("one", title="same")
        self._saved_session("two", title="Same")

        with self.assertRaises(ValueError):
            self._store.resolve_session_identifier("same")

    def test_unserializable_session_raises_storage_error(self) -> None:
        session = Session(session_id="weird", working_directory="/work")
        session.append_message("user", [{"type": "text", "text": object()}])

        with self.assertRaises(StorageCorruptionError):
            self._store.save(session)
        self.assertFalse(self._store.exists("weird"))
