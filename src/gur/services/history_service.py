"""Append-only audit trail of task field changes."""

from enum import Enum
from typing import TYPE_CHECKING, Any

from aiosqlite import Connection

from gur.domain.models import HistoryEntry
from gur.infrastructure.logger import get_logger

if TYPE_CHECKING:
    from gur.infrastructure.database import Database

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 50


def normalize_value(value: Any) -> str:
    """Render a field value the way it is stored in history."""
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(sorted(str(v) for v in value))
    return str(value)


class HistoryService:
    """Records one immutable entry per field transition.

    Entries are never updated or deleted, and a change whose old and new
    values render identically is not recorded at all.
    """

    def __init__(self, database: "Database", default_limit: int = DEFAULT_HISTORY_LIMIT):
        self.db = database
        self.default_limit = default_limit

    async def record_change(
        self,
        task_id: str,
        field: str,
        old_value: Any,
        new_value: Any,
        actor: str,
        conn: Connection | None = None,
    ) -> HistoryEntry | None:
        """Append a history entry unless the value did not change.

        Args:
            task_id: Task whose field changed
            field: Field name (``status``, ``close_reason``, ``gate:<id>``, ...)
            old_value: Value before the change
            new_value: Value after the change
            actor: Who made the change
            conn: Transaction to write in, so the entry commits with the change

        Returns:
            The new entry, or None when old and new values are equal
        """
        old_text = normalize_value(old_value)
        new_text = normalize_value(new_value)
        if old_text == new_text:
            return None

        entry = HistoryEntry(
            task_id=task_id,
            field=field,
            old_value=old_text,
            new_value=new_text,
            actor=actor,
        )
        await self.db.insert_history(entry, conn=conn)
        logger.debug("history_recorded", task_id=task_id, field=field, actor=actor)
        return entry

    async def list_for_task(self, task_id: str, limit: int | None = None) -> list[HistoryEntry]:
        """History for a task, newest first."""
        return await self.db.list_history(task_id, limit=limit or self.default_limit)
