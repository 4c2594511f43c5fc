"""
Contextual update engine.
One engine serves every document kind: the vocabulary decides what each kind
accepts, the clarification thread decides whether to ask or act, the applier
executes accepted commands, and the journal keeps the last batch's inverse.
"""
import logging
from typing import Callable, List, Optional

from core.applier import CommandApplier
from core.clarification import ClarificationThread
from core.errors import ClarificationStateError, CommandValidationError
from core.interpreter import InterpretationService
from core.models import (
    CaseDocument,
    ContextualUpdateCommand,
    LastContextualUpdate,
    ParsedContextualUpdate,
)
from core.undo_journal import UndoJournal
from core.vocabulary import validate_batch

logger = logging.getLogger(__name__)

Persist = Callable[[CaseDocument], None]


def _applied_summary(commands: List[ContextualUpdateCommand]) -> str:
    if len(commands) == 1:
        return commands[0].get("explanation") or "1 update applied"
    return f"{len(commands)} updates applied"


class ContextualUpdateEngine:
    """Parse, apply and undo contextual updates for one case."""

    def __init__(
        self,
        interpreter: InterpretationService,
        applier: Optional[CommandApplier] = None,
        journal: Optional[UndoJournal] = None,
        max_clarification_turns: Optional[int] = None,
        is_active: Optional[Callable[[], bool]] = None,
    ):
        self.interpreter = interpreter
        self.applier = applier or CommandApplier()
        self.journal = journal or UndoJournal()
        self.thread = ClarificationThread(
            self._interpret,
            max_turns=max_clarification_turns,
            is_active=is_active,
        )

    def _interpret(self, instruction: str, phase: str, snapshot: CaseDocument) -> ParsedContextualUpdate:
        result = self.interpreter.interpret(instruction, phase, snapshot)
        if result.get("needs_clarification"):
            result["commands"] = []
            return result
        validate_batch(result.get("commands", []), snapshot)
        return result

    # ------------------------------------------------------------------ #
    # Interpretation
    # ------------------------------------------------------------------ #
    def parse(self, text: str, phase: str, snapshot: CaseDocument) -> Optional[ParsedContextualUpdate]:
        logger.info(f"[ContextualUpdateEngine] Parsing instruction ({len(text)} chars) in phase {phase}")
        return self.thread.submit(text, phase, snapshot)

    def clarify(self, answer: str, phase: Optional[str], snapshot: CaseDocument) -> Optional[ParsedContextualUpdate]:
        return self.thread.clarify(answer, phase, snapshot)

    def cancel(self) -> None:
        self.thread.cancel()

    # ------------------------------------------------------------------ #
    # Apply / undo
    # ------------------------------------------------------------------ #
    def apply(
        self,
        commands: List[ContextualUpdateCommand],
        document: CaseDocument,
        summary: Optional[str] = None,
        persist: Optional[Persist] = None,
    ) -> CaseDocument:
        """
        Validate and apply a batch, then replace the undo entry.

        Args:
            commands: Accepted commands in application order
            document: Authoritative current document
            summary: Text shown next to the undo affordance
            persist: Called with the new document before the journal changes;
                an exception here leaves the journal untouched

        Returns:
            The updated document
        """
        if not commands:
            raise CommandValidationError(0, "batch is empty")
        validate_batch(commands, document)
        result = self.applier.apply(commands, document)
        if persist:
            persist(result["document"])
        self.journal.record(summary or _applied_summary(commands), result["inverse"], len(commands))
        logger.info(f"[ContextualUpdateEngine] Applied {len(commands)} command(s)")
        return result["document"]

    def apply_pending(
        self,
        document: CaseDocument,
        index: Optional[int] = None,
        persist: Optional[Persist] = None,
    ) -> CaseDocument:
        """Apply the whole pending batch, or the command at ``index``, from the ready thread."""
        pending = self.thread.pending_commands
        if not pending:
            raise ClarificationStateError(f"No pending commands while {self.thread.state}")
        if index is not None and not 0 <= index < len(pending):
            raise ClarificationStateError(f"No pending command at position {index}")
        summary = (self.thread.result or {}).get("summary") if index is None else None
        selected = pending if index is None else [pending[index]]

        updated = self.apply(selected, document, summary=summary, persist=persist)
        if index is None:
            self.thread.accept_all()
        else:
            self.thread.accept_one(index)
        return updated

    def undo(self, document: CaseDocument, persist: Optional[Persist] = None) -> CaseDocument:
        """Replay the journal's inverse batch and clear it. Raises NoPendingUndo when empty."""
        entry = self.journal.peek()
        result = self.applier.apply(entry.get("inverse_commands", []), document, exact=True)
        if persist:
            persist(result["document"])
        self.journal.clear()
        logger.info(f"[ContextualUpdateEngine] Undid '{entry.get('summary')}'")
        return result["document"]

    @property
    def last_update(self) -> LastContextualUpdate:
        return self.journal.describe()
