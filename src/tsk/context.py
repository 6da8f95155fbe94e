from dataclasses import dataclass
from pathlib import Path

from tsk.bridge.agent_bridge import AgentBridge
from tsk.bridge.mailbox import Mailbox
from tsk.storage.task_store import TaskStore
from tsk.util.dirs import DEFAULT_POLL_INTERVAL, DEFAULT_SAVE_DEBOUNCE, ensure_dirs, env_float, load_env


@dataclass
class AppContext:
    """Everything one process needs, built once and passed around explicitly."""

    env: dict[str, str]
    store: TaskStore
    mailbox: Mailbox
    bridge: AgentBridge

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> "AppContext":
        env = env if env is not None else load_env()
        ensure_dirs(Path(env["HOME_DIR"]))
        store = TaskStore.open(
            env["DATA_PATH"],
            save_debounce=env_float(env, "SAVE_DEBOUNCE", DEFAULT_SAVE_DEBOUNCE),
        )
        mailbox = Mailbox(env["INBOX_PATH"], env["OUTBOX_PATH"])
        bridge = AgentBridge(
            store,
            mailbox,
            poll_interval=env_float(env, "POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        )
        return AppContext(env=env, store=store, mailbox=mailbox, bridge=bridge)
