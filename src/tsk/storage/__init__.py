from tsk.storage.json_file import TaskFile
from tsk.storage.task_store import TaskStore

__all__ = [
    "TaskFile",
    "TaskStore",
]
