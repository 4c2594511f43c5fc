"""
Clarification state machine for contextual updates.

States:
    idle -> parsing -> needs_clarification | ready | failed
    needs_clarification -> parsing (answer) | idle (cancel)
    parsing -> needs_clarification (answer could not be interpreted)
    ready -> idle (accept all, cancel) | ready (accept one, commands left)
    failed -> parsing (resubmit)
"""
import copy
import logging
from typing import Callable, Dict, List, Literal, Optional

from core.errors import ClarificationStateError
from core.models import CaseDocument, ContextualUpdateCommand, ParsedContextualUpdate

logger = logging.getLogger(__name__)

ThreadState = Literal["idle", "parsing", "needs_clarification", "ready", "failed"]

CLARIFICATION_MARKER = "Clarification:"

Interpret = Callable[[str, str, CaseDocument], ParsedContextualUpdate]

# Legal operations per state
TRANSITIONS: Dict[str, frozenset] = {
    "idle": frozenset({"submit", "cancel"}),
    "parsing": frozenset(),
    "needs_clarification": frozenset({"clarify", "cancel"}),
    "ready": frozenset({"accept", "cancel"}),
    "failed": frozenset({"submit", "cancel"}),
}


def compose_clarified_instruction(instruction: str, answer: str) -> str:
    """Merge the original instruction with the user's answer for re-interpretation."""
    return f"{instruction.strip()}\n\n{CLARIFICATION_MARKER} {answer.strip()}"


class ClarificationThread:
    """
    Tracks one instruction thread from submission to an accepted batch.

    The interpreter callable is expected to return a validated result and to
    raise ContextualUpdateError subclasses on failure.
    """

    def __init__(
        self,
        interpret: Interpret,
        max_turns: Optional[int] = None,
        is_active: Optional[Callable[[], bool]] = None,
    ):
        self.interpret = interpret
        self.max_turns = max_turns
        self.is_active = is_active or (lambda: True)
        self._reset()

    def _reset(self) -> None:
        self.state: ThreadState = "idle"
        self.instruction: Optional[str] = None
        self.phase: Optional[str] = None
        self.result: Optional[ParsedContextualUpdate] = None
        self.error: Optional[str] = None
        self.turns = 0

    def _require(self, operation: str) -> None:
        if operation not in TRANSITIONS[self.state]:
            raise ClarificationStateError(f"Cannot {operation} while {self.state}")

    @property
    def clarification_prompt(self) -> Optional[str]:
        if self.state != "needs_clarification" or not self.result:
            return None
        return self.result.get("clarification_prompt")

    @property
    def pending_commands(self) -> List[ContextualUpdateCommand]:
        if self.state != "ready" or not self.result:
            return []
        return list(self.result.get("commands", []))

    def snapshot(self) -> Dict[str, object]:
        """State view for the hosting UI."""
        return {
            "state": self.state,
            "instruction": self.instruction,
            "commands": self.pending_commands,
            "summary": self.result.get("summary") if self.result else None,
            "clarification_prompt": self.clarification_prompt,
            "error": self.error,
            "turns": self.turns,
        }

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #
    def submit(self, instruction: str, phase: str, document: CaseDocument) -> Optional[ParsedContextualUpdate]:
        """Start a new thread. Returns None when a call is already in flight."""
        if self.state == "parsing":
            logger.info("[ClarificationThread] Submission ignored, interpretation in flight")
            return None
        self._require("submit")
        self.instruction = instruction.strip()
        self.phase = phase
        self.turns = 0
        return self._run(self.instruction, phase, document)

    def clarify(self, answer: str, phase: Optional[str], document: CaseDocument) -> Optional[ParsedContextualUpdate]:
        """Re-interpret the original instruction together with the user's answer, in the submitted phase unless one is given."""
        if self.state == "parsing":
            return None
        self._require("clarify")
        if not answer or not answer.strip():
            raise ClarificationStateError("A clarification answer is required")
        if self.max_turns is not None and self.turns >= self.max_turns:
            self.state = "failed"
            self.error = (
                f"Still ambiguous after {self.turns} clarification(s); edit the case manually"
            )
            logger.info(f"[ClarificationThread] {self.error}")
            raise ClarificationStateError(self.error)
        self.turns += 1
        combined = compose_clarified_instruction(self.instruction or "", answer)
        try:
            return self._run(combined, phase or self.phase or "", document, retry=True)
        except Exception:
            self.turns -= 1
            raise

    def cancel(self) -> None:
        if self.state == "parsing":
            raise ClarificationStateError("Cannot cancel while parsing")
        self._reset()

    def accept_all(self) -> List[ContextualUpdateCommand]:
        """Hand over the whole batch; the thread returns to idle."""
        self._require("accept")
        commands = self.pending_commands
        self._reset()
        return commands

    def accept_one(self, index: int) -> ContextualUpdateCommand:
        """Hand over one command; the rest stay pending."""
        self._require("accept")
        commands = self.pending_commands
        if not 0 <= index < len(commands):
            raise ClarificationStateError(f"No pending command at position {index}")
        command = commands.pop(index)
        if commands:
            self.result = {**self.result, "commands": commands}  # type: ignore[misc]
        else:
            self._reset()
        return command

    def _run(
        self,
        instruction: str,
        phase: str,
        document: CaseDocument,
        retry: bool = False,
    ) -> Optional[ParsedContextualUpdate]:
        self.state = "parsing"
        self.error = None
        snapshot = copy.deepcopy(document)
        try:
            result = self.interpret(instruction, phase, snapshot)
        except Exception as exc:
            # a failed answer leaves the question open
            self.state = "needs_clarification" if retry else "failed"
            self.error = str(exc)
            logger.info(f"[ClarificationThread] Interpretation failed: {exc} (-> {self.state})")
            raise

        if not self.is_active():
            logger.info("[ClarificationThread] Late interpretation result discarded")
            self._reset()
            return None

        self.result = result
        if result.get("needs_clarification"):
            self.state = "needs_clarification"
        elif result.get("commands"):
            self.state = "ready"
        else:
            # no-op result: summary explains why nothing was proposed
            self.state = "idle"
        logger.info(f"[ClarificationThread] -> {self.state}")
        return result
