import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from codeloop.cancellation import CancellationToken
from codeloop.session import Session, TodoListHandle
from codeloop.tool import ToolContext


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class ToolTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._session = Session.create(str(self._tmp_dir))
        self._progress: list[str] = []

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _context(self, token: CancellationToken | None = None) -> ToolContext:
        return ToolContext(
            working_directory=str(self._tmp_dir),
            cancel_token=token or CancellationToken(),
            session_id=self._session.session_id,
            todos=TodoListHandle(self._session),
            report_progress=self._progress.append,
        )
