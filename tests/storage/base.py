import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from reliable_chat.storage import MessageLog


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class MessageLogTestCase(unittest.TestCase):
    page_size = 200

    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._db_path = str(self._tmp_dir / "chat.db")
        self._log = MessageLog(self._db_path, page_size=self.page_size)

    def tearDown(self) -> None:
        self._log.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)
