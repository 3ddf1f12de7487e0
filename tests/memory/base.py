import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from codeloop.memory import SessionStore
from codeloop.session import Session


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class SessionStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._store = SessionStore(self._tmp_dir / "sessions")

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _saved_session(self, session_id: str, *, updated_at: str = "", title: str | None = None, messages: int = 2) -> Session:
        session = Session(session_id=session_id, working_directory="/work", title=title)
        for i in range(messages):
            session.append_message("user" if i % 2 == 0 else "assistant", f"{session_id} message {i}")
        if updated_at:
            session.updated_at = updated_at
        self._store.save(session)
        return session
