import json
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from tsk.bridge.protocol import OUTBOX_MAX_ENTRIES, AgentResponse
from tsk.util.logger import setup_logger

logger = setup_logger("tsk")

EMPTY = "[]"


class Mailbox:
    """Inbox/outbox file pair shared with an external agent.

    There is no file locking: the owning process reads, processes and clears
    the inbox within one poll cycle.
    """

    def __init__(self, inbox_path: str | Path, outbox_path: str | Path) -> None:
        self.inbox_path = Path(inbox_path)
        self.outbox_path = Path(outbox_path)

    async def ensure(self) -> None:
        await aiofiles.os.makedirs(self.inbox_path.parent, exist_ok=True)
        await aiofiles.os.makedirs(self.outbox_path.parent, exist_ok=True)
        if not await aiofiles.os.path.exists(self.inbox_path):
            await self._write(self.inbox_path, EMPTY)

    async def read_inbox(self) -> list[Any] | None:
        """Decoded inbox entries.

        A single bare object counts as a one-element list. Returns ``None``
        when the inbox is absent, blank, not UTF-8, or not a JSON array or
        object; the caller resets it in that case.
        """
        if not await aiofiles.os.path.exists(self.inbox_path):
            return None
        try:
            async with aiofiles.open(self.inbox_path, encoding="utf-8") as f:
                text = await f.read()
        except UnicodeDecodeError as e:
            logger.warning("Discarding undecodable inbox %s: %s", self.inbox_path, e)
            return None
        if not text.strip():
            return None
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("Discarding unparseable inbox %s: %s", self.inbox_path, e)
            return None
        if isinstance(parsed, list):
            return parsed
        if isinstance(parsed, dict):
            return [parsed]
        logger.warning("Discarding inbox %s: expected array, got %s", self.inbox_path, type(parsed).__name__)
        return None

    async def clear_inbox(self) -> None:
        await self._write(self.inbox_path, EMPTY)

    async def append_inbox(self, entries: list[dict[str, Any]]) -> None:
        existing = await self.read_inbox() or []
        await self._write(self.inbox_path, json.dumps([*existing, *entries], ensure_ascii=False, indent=2))

    async def read_outbox(self) -> list[Any]:
        if not await aiofiles.os.path.exists(self.outbox_path):
            return []
        try:
            async with aiofiles.open(self.outbox_path, encoding="utf-8") as f:
                text = await f.read()
            parsed = json.loads(text)
        except (OSError, ValueError):
            logger.warning("Outbox %s is corrupted; starting fresh", self.outbox_path)
            return []
        return parsed if isinstance(parsed, list) else []

    async def append_outbox(
        self,
        responses: list[AgentResponse],
        *,
        max_entries: int = OUTBOX_MAX_ENTRIES,
    ) -> None:
        """Append responses, keeping only the newest ``max_entries`` entries."""
        entries = await self.read_outbox()
        entries.extend(r.to_dict() for r in responses)
        if len(entries) > max_entries:
            entries = entries[len(entries) - max_entries :]
        await self._write(self.outbox_path, json.dumps(entries, ensure_ascii=False, indent=2))

    @staticmethod
    async def _write(path: Path, text: str) -> None:
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(text)
