import os
import re
from pathlib import Path

DEFAULT_HOME = os.environ.get("TSK_HOME_DIR", (Path.home() / ".tsk").as_posix())
DEFAULT_ENV_PATH = (Path(DEFAULT_HOME) / "config.env").as_posix()

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_SAVE_DEBOUNCE = 0.3


def get_home() -> Path:
    return Path(os.environ.get("TSK_HOME_DIR", DEFAULT_HOME))


def ensure_dirs(home: Path | None = None) -> None:
    _path = home or get_home()
    _path.mkdir(parents=True, exist_ok=True)


def load_env(path: str | None = None) -> dict[str, str]:
    home = get_home()
    env: dict[str, str] = {}
    _path = Path(path) if path is not None else home / "config.env"
    if _path.exists():
        with _path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                m = re.match(r"([^=]+)=(.*)", line)
                if m:
                    key = m.group(1).strip()
                    val = m.group(2).strip()
                    env[key] = val

    # OS環境変数を上書き優先
    env.update(
        {
            "HOME_DIR": home.as_posix(),
            "DATA_PATH": os.environ.get("TSK_DATA_PATH", env.get("DATA_PATH", (home / "tasks.json").as_posix())),
            "INBOX_PATH": os.environ.get(
                "TSK_INBOX_PATH",
                env.get("INBOX_PATH", (home / "agent-inbox.json").as_posix()),
            ),
            "OUTBOX_PATH": os.environ.get(
                "TSK_OUTBOX_PATH",
                env.get("OUTBOX_PATH", (home / "agent-outbox.json").as_posix()),
            ),
            "POLL_INTERVAL": os.environ.get("TSK_POLL_INTERVAL", env.get("POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL))),
            "SAVE_DEBOUNCE": os.environ.get("TSK_SAVE_DEBOUNCE", env.get("SAVE_DEBOUNCE", str(DEFAULT_SAVE_DEBOUNCE))),
            "LOG_FILE": os.environ.get("TSK_LOG_FILE", env.get("LOG_FILE", "1")),
        },
    )
    return env


def env_float(env: dict[str, str], key: str, default: float) -> float:
    try:
        value = float(env.get(key, default))
    except ValueError:
        return default
    return value if value > 0 else default
