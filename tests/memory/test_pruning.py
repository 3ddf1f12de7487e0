from codeloop.memory import prune_sessions
from tests.memory.base import SessionStoreTestCase


class PruningTests(SessionStoreTestCase):
    def test_retention_days_prunes_old_sessions(self) -> None:
        self._saved_session("old", updated_at="2000-01-01T00:00:00+00:00")
        self._saved_session("fresh")

        removed = prune_sessions(self._store, max_sessions=200, retention_days=1)

        self.assertEqual(["old"], removed)
        self.assertFalse(self._store.exists("old"))
        self.assertTrue(self._store.exists("fresh"))

    def test_max_sessions_keeps_most_recent(self) -> None:
        self._saved_session("s1", updated_at="2020-01-01T00:00:00+00:00")
        self._saved_session("s2", updated_at="2021-01-01T00:00:00+00:00")
        self._saved_session("s3", updated_at="2022-01-01T00:00:00+00:00")

        prune_sessions(self._store, max_sessions=2, retention_days=36500)

        ids = sorted(s.session_id for s in self._store.list_sessions())
        self.assertEqual(["s2", "s3"], ids)

    def test_active_session_is_never_pruned(self) -> None:
        self._saved_session("active", updated_at="2000-01-01T00:00:00+00:00")
        self._saved_session("s1", updated_at="2021-01-01T00:00:00+00:00")
        self._saved_session("s2", updated_at="2022-01-01T00:00:00+00:00")

        removed = prune_sessions(self._store, max_sessions=1, retention_days=1, keep={"active"})

        self.assertTrue(self._store.exists("active"))
        self.assertEqual({"s1", "s2"}, set(removed))
