import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from loguru import logger

from axe_desktop.logging_config import default_consumers, setup_logging


PROJECT_ROOT = Path(__file__).resolve().parents[1]


class SetupLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        self._home = PROJECT_ROOT / ".test-artifacts" / f"logging-{uuid4().hex}"

    def tearDown(self) -> None:
        logger.remove()
        shutil.rmtree(self._home, ignore_errors=True)

    def test_default_consumers_write_under_home(self) -> None:
        consumers = default_consumers(self._home)
        self.assertEqual(["console", "file"], [c["type"] for c in consumers])
        self.assertTrue(consumers[1]["path"].startswith(str(self._home)))

    def test_relative_file_path_resolves_against_home(self) -> None:
        descriptions = setup_logging(
            level="DEBUG",
            consumers=[{"type": "file", "path": "logs/test.log"}],
            home_dir=self._home,
        )

        self.assertEqual([f"file ({self._home / 'logs' / 'test.log'}, DEBUG)"], descriptions)
        self.assertTrue((self._home / "logs").is_dir())

    def test_unknown_consumer_is_skipped(self) -> None:
        descriptions = setup_logging(consumers=[{"type": "carrier-pigeon"}, {"type": "console", "level": "ERROR"}])
        self.assertEqual(["console (stderr, ERROR)"], descriptions)


if __name__ == "__main__":
    unittest.main()
