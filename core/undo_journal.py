"""Single-slot journal holding the inverse of the last applied contextual update."""
import copy
import logging
from datetime import datetime
from typing import List, Optional

from core.errors import NoPendingUndo
from core.models import AppliedUpdateRecord, ContextualUpdateCommand, LastContextualUpdate

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


class UndoJournal:
    """Keeps exactly one applied update record; each new record replaces the previous one."""

    def __init__(self):
        self._entry: Optional[AppliedUpdateRecord] = None

    @property
    def available(self) -> bool:
        return self._entry is not None

    def record(
        self,
        summary: Optional[str],
        inverse_commands: List[ContextualUpdateCommand],
        command_count: int = 0,
    ) -> AppliedUpdateRecord:
        if self._entry is not None:
            logger.info("[UndoJournal] Discarding previous undo entry")
        self._entry = {
            "summary": summary,
            "inverse_commands": copy.deepcopy(inverse_commands),
            "command_count": command_count,
            "applied_at": _timestamp(),
        }
        return self._entry

    def peek(self) -> AppliedUpdateRecord:
        if self._entry is None:
            raise NoPendingUndo("No contextual update to undo")
        return self._entry

    def clear(self) -> None:
        self._entry = None

    def describe(self) -> LastContextualUpdate:
        """Summary and availability flag for the undo affordance."""
        if self._entry is None:
            return {"summary": None, "available": False}
        return {"summary": self._entry.get("summary"), "available": True}
