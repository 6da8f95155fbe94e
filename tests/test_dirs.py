import os
import tempfile
import unittest
from pathlib import Path

from tsk.util import dirs

_KEYS = ("TSK_HOME_DIR", "TSK_DATA_PATH", "TSK_INBOX_PATH", "TSK_OUTBOX_PATH", "TSK_POLL_INTERVAL")


class TestLoadEnv(unittest.TestCase):
    def setUp(self) -> None:
        self.original = {k: os.environ.get(k) for k in _KEYS}
        self.tmp = tempfile.TemporaryDirectory()
        os.environ["TSK_HOME_DIR"] = self.tmp.name
        for k in _KEYS[1:]:
            os.environ.pop(k, None)

    def tearDown(self) -> None:
        for k, v in self.original.items():
            if v is not None:
                os.environ[k] = v
            else:
                os.environ.pop(k, None)
        self.tmp.cleanup()

    def test_defaults_under_home(self) -> None:
        env = dirs.load_env()
        home = Path(self.tmp.name)
        assert env["HOME_DIR"] == home.as_posix()
        assert env["DATA_PATH"] == (home / "tasks.json").as_posix()
        assert env["INBOX_PATH"] == (home / "agent-inbox.json").as_posix()
        assert env["OUTBOX_PATH"] == (home / "agent-outbox.json").as_posix()
        assert float(env["POLL_INTERVAL"]) == dirs.DEFAULT_POLL_INTERVAL

    def test_config_file_values(self) -> None:
        cfg = Path(self.tmp.name) / "config.env"
        cfg.write_text("# comment\nDATA_PATH=/data/mine.json\n\nPOLL_INTERVAL = 5\n", encoding="utf-8")
        env = dirs.load_env()
        assert env["DATA_PATH"] == "/data/mine.json"
        assert env["POLL_INTERVAL"] == "5"

    def test_os_env_overrides_config_file(self) -> None:
        cfg = Path(self.tmp.name) / "config.env"
        cfg.write_text("INBOX_PATH=/from/file.json\n", encoding="utf-8")
        os.environ["TSK_INBOX_PATH"] = "/from/env.json"
        assert dirs.load_env()["INBOX_PATH"] == "/from/env.json"


class TestEnvFloat(unittest.TestCase):
    def test_values(self) -> None:
        assert dirs.env_float({"X": "1.5"}, "X", 2.0) == 1.5
        assert dirs.env_float({"X": "abc"}, "X", 2.0) == 2.0
        assert dirs.env_float({"X": "-1"}, "X", 2.0) == 2.0
        assert dirs.env_float({}, "X", 2.0) == 2.0


class TestEnsureDirs(unittest.TestCase):
    def test_creates_nested(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            target = Path(d) / "a" / "b"
            dirs.ensure_dirs(target)
            assert target.is_dir()


if __name__ == "__main__":
    unittest.main()
