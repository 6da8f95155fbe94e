import json
import os
import shutil
import tempfile
from pathlib import Path

from tsk.core.errors import CorruptDataError
from tsk.core.models import Task
from tsk.core.schema import parse_persisted_tasks
from tsk.util.logger import setup_logger
from tsk.util.time import stamp_for_filename

logger = setup_logger("tsk")


class TaskFile:
    """The task collection on disk: a JSON array rewritten in full on every save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def backup_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.invalid.{stamp_for_filename()}.bak")

    def load(self) -> list[Task]:
        """Read and migrate the task file.

        A missing file is created empty. An unreadable file is copied to a
        ``.invalid.<stamp>.bak`` sibling, reset to ``[]``, and an empty list
        is returned.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._reset()
            return []

        try:
            text = self.path.read_text(encoding="utf-8")
            return parse_persisted_tasks(json.loads(text))
        except (json.JSONDecodeError, UnicodeDecodeError, CorruptDataError) as e:
            _msg = f"Corrupted task file {self.path}: {e}"
            logger.error(_msg)  # noqa: TRY400
            self._quarantine()
            self._reset()
            return []

    def _quarantine(self) -> None:
        dst = self.backup_path()
        try:
            shutil.copyfile(self.path, dst)
        except OSError:
            logger.exception("Failed to back up corrupted task file")
            return
        logger.warning("Backed up corrupted task file to %s", dst)

    def _reset(self) -> None:
        try:
            self.save([])
        except OSError:
            logger.exception("Failed to reset task file %s", self.path)

    def save(self, tasks: list[Task]) -> None:
        """Write atomically: a sibling temp file is renamed over the target.

        Raises:
            OSError: the directory is not writable or the disk is full.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps([t.to_dict() for t in tasks], ensure_ascii=False, indent=2)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
