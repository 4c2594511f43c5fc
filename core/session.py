"""
Case session shell around the contextual update engine.
Owns the saving lock and the active guard, loads the authoritative document
from the store for every call, and persists through the store.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from core.engine import ContextualUpdateEngine
from core.errors import CaseNotFoundError, SessionBusyError
from core.interpreter import InterpretationService
from core.models import (
    CaseDocument,
    ContextualUpdateCommand,
    LastContextualUpdate,
    ParsedContextualUpdate,
)
from core.store import CaseStore

logger = logging.getLogger(__name__)

EventEmitter = Callable[[str, Dict[str, Any]], None]


class CaseSession:
    """Contextual update operations for one open case."""

    def __init__(
        self,
        case_id: str,
        store: CaseStore,
        interpreter: InterpretationService,
        max_clarification_turns: Optional[int] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self.case_id = case_id
        self.store = store
        self.emitter = emitter
        self.active = True
        self._saving = threading.Lock()
        self.engine = ContextualUpdateEngine(
            interpreter,
            max_clarification_turns=max_clarification_turns,
            is_active=lambda: self.active,
        )

    @property
    def saving(self) -> bool:
        return self._saving.locked()

    def _document(self) -> CaseDocument:
        document = self.store.load_document(self.case_id)
        if document is None:
            raise CaseNotFoundError(f"Case {self.case_id} not found")
        return document

    def _persist(self, document: CaseDocument) -> None:
        self.store.save_document(self.case_id, document)

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.emitter:
            self.emitter(event_type, payload)

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        if not self._saving.acquire(blocking=False):
            raise SessionBusyError(f"Case {self.case_id} is already being updated")
        try:
            yield
        finally:
            self._saving.release()

    # ------------------------------------------------------------------ #
    # Interpretation
    # ------------------------------------------------------------------ #
    def parse_contextual_update(self, text: str, phase: Optional[str] = None) -> Optional[ParsedContextualUpdate]:
        document = self._document()
        return self.engine.parse(text, phase or document.get("phase", ""), document)

    def clarify_contextual_update(self, answer: str, phase: Optional[str] = None) -> Optional[ParsedContextualUpdate]:
        document = self._document()
        return self.engine.clarify(answer, phase, document)

    def cancel_contextual_update(self) -> None:
        self.engine.cancel()

    @property
    def thread_state(self) -> Dict[str, Any]:
        return self.engine.thread.snapshot()

    # ------------------------------------------------------------------ #
    # Apply / undo
    # ------------------------------------------------------------------ #
    def apply_contextual_updates(
        self,
        commands: Optional[List[ContextualUpdateCommand]] = None,
        summary: Optional[str] = None,
    ) -> CaseDocument:
        """Apply the given commands, or the whole pending batch when none are given."""
        with self._mutation():
            document = self._document()
            if commands is None:
                updated = self.engine.apply_pending(document, persist=self._persist)
            else:
                updated = self.engine.apply(commands, document, summary=summary, persist=self._persist)
        self._emit("updated", {"reason": "apply", "last_update": self.last_contextual_update})
        return updated

    def apply_pending_command(self, index: int) -> CaseDocument:
        """Apply one pending command; the rest stay pending."""
        with self._mutation():
            document = self._document()
            updated = self.engine.apply_pending(document, index=index, persist=self._persist)
        self._emit("updated", {"reason": "apply", "last_update": self.last_contextual_update})
        return updated

    def undo_last_contextual_update(self) -> CaseDocument:
        with self._mutation():
            document = self._document()
            updated = self.engine.undo(document, persist=self._persist)
        self._emit("updated", {"reason": "undo", "last_update": self.last_contextual_update})
        return updated

    @property
    def last_contextual_update(self) -> LastContextualUpdate:
        return self.engine.last_update

    def close(self) -> None:
        """Stop accepting late interpretation results for this session."""
        self.active = False


class SessionRegistry:
    """Keeps one session per open case."""

    def __init__(
        self,
        store: CaseStore,
        interpreter_factory: Callable[[], InterpretationService],
        max_clarification_turns: Optional[int] = None,
        emitter_factory: Optional[Callable[[str], Optional[EventEmitter]]] = None,
    ):
        self.store = store
        self.interpreter_factory = interpreter_factory
        self.max_clarification_turns = max_clarification_turns
        self.emitter_factory = emitter_factory
        self._sessions: Dict[str, CaseSession] = {}
        self._lock = threading.Lock()

    def get(self, case_id: str) -> CaseSession:
        with self._lock:
            session = self._sessions.get(case_id)
            if session is None:
                if self.store.load(case_id) is None:
                    raise CaseNotFoundError(f"Case {case_id} not found")
                session = CaseSession(
                    case_id,
                    self.store,
                    self.interpreter_factory(),
                    max_clarification_turns=self.max_clarification_turns,
                    emitter=self.emitter_factory(case_id) if self.emitter_factory else None,
                )
                self._sessions[case_id] = session
                logger.info(f"Opened contextual update session for case {case_id}")
            return session

    def close(self, case_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(case_id, None)
        if session:
            session.close()
