from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, jsonify, request

from app.config import get_config
from app.socketio_handlers import emit_case_event
from core.demo_seed import DEMO_TITLES, build_demo_document
from core.errors import (
    CaseNotFoundError,
    ClarificationStateError,
    CommandError,
    InterpretationError,
    LLMNotAvailableError,
    NoPendingUndo,
    SessionBusyError,
)
from core.interpreter import InterpretationService, create_interpretation_service
from core.models import DOCUMENT_KINDS
from core.session import CaseSession, SessionRegistry
from core.store import CaseStore
from core.vocabulary import unknown_fields

logger = logging.getLogger(__name__)

# Blueprint for case and contextual update routes
cases_bp = Blueprint('cases', __name__)

# Module-level managers (initialized in init_case_routes)
_store: Optional[CaseStore] = None
_sessions: Optional[SessionRegistry] = None
_socketio = None


def init_case_routes(
    socketio_instance=None,
    config: Optional[Dict[str, Any]] = None,
    interpreter_factory: Optional[Callable[[], InterpretationService]] = None,
):
    """Initialize case routes with dependencies."""
    global _store, _sessions, _socketio
    config = config or get_config()
    _store = CaseStore(data_dir=config.get('DATA_DIR', 'data/cases'))
    _socketio = socketio_instance
    _sessions = SessionRegistry(
        _store,
        interpreter_factory or (lambda: create_interpretation_service(config)),
        max_clarification_turns=config.get('MAX_CLARIFICATION_TURNS'),
        emitter_factory=_make_event_emitter,
    )
    logger.info("Case routes initialized")


def _make_event_emitter(case_id: str):
    """Create event emitter for Socket.IO."""
    if not _socketio:
        return None

    def emitter(event_type: str, payload: Dict[str, Any]) -> None:
        data = dict(payload)
        data.setdefault("timestamp", datetime.utcnow().isoformat() + "Z")
        data["case_id"] = case_id
        try:
            emit_case_event(_socketio, case_id, event_type, data)
        except Exception:
            logger.exception("Failed to emit case:%s event for %s", event_type, case_id)

    return emitter


def _contextual_update_errors(f):
    """Map engine errors to JSON error responses."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except CaseNotFoundError as exc:
            return jsonify({"error": str(exc)}), 404
        except (SessionBusyError, ClarificationStateError, NoPendingUndo) as exc:
            return jsonify({"error": str(exc)}), 409
        except CommandError as exc:
            return jsonify({"error": str(exc), "index": exc.index, "reason": exc.reason}), 422
        except InterpretationError as exc:
            logger.exception("Interpretation failed for %s", request.path)
            return jsonify({"error": str(exc)}), 502
        except LLMNotAvailableError as exc:
            return jsonify({"error": str(exc)}), 503
    return wrapper


def _session(case_id: str) -> CaseSession:
    return _sessions.get(case_id)


def _thread_payload(session: CaseSession) -> Dict[str, Any]:
    state = session.thread_state
    state["unknown_fields"] = [unknown_fields(command) for command in state.get("commands", [])]
    return state


# ---------------------------------------------------------------------------
# Cases
# ---------------------------------------------------------------------------

@cases_bp.route("/api/cases", methods=["GET", "POST"])
def cases():
    if request.method == "GET":
        return jsonify({"cases": _store.list_cases()})

    payload = request.get_json(force=True, silent=True) or {}
    kind = payload.get("kind")
    title = (payload.get("title") or "").strip()
    if not kind or not title:
        return jsonify({"error": "kind and title are required"}), 400
    try:
        record = _store.create_case(kind, title, phase=payload.get("phase"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(record), 201


@cases_bp.route("/api/cases/demo", methods=["POST"])
def create_demo_case():
    payload = request.get_json(force=True, silent=True) or {}
    kind = payload.get("kind") or "risk_assessment"
    if kind not in DOCUMENT_KINDS:
        return jsonify({"error": f"kind must be one of {', '.join(DOCUMENT_KINDS)}"}), 400
    document = build_demo_document(kind)
    record = _store.create_case(kind, payload.get("title") or DEMO_TITLES[kind], document=document)
    return jsonify(record), 201


@cases_bp.route("/api/cases/<case_id>", methods=["GET", "DELETE"])
def case_detail(case_id: str):
    if request.method == "DELETE":
        _sessions.close(case_id)
        if not _store.delete(case_id):
            return jsonify({"error": "Case not found"}), 404
        return jsonify({"deleted": case_id})

    record = _store.load(case_id)
    if not record:
        return jsonify({"error": "Case not found"}), 404
    session = _session(case_id)
    return jsonify({
        "case": record,
        "last_update": session.last_contextual_update,
        "state": _thread_payload(session),
    })


# ---------------------------------------------------------------------------
# Contextual updates
# ---------------------------------------------------------------------------

@cases_bp.route("/api/cases/<case_id>/contextual-update/parse", methods=["POST"])
@_contextual_update_errors
def parse_contextual_update(case_id: str):
    payload = request.get_json(force=True, silent=True) or {}
    user_input = (payload.get("user_input") or "").strip()
    if not user_input:
        return jsonify({"error": "user_input is required"}), 400

    session = _session(case_id)
    result = session.parse_contextual_update(user_input, phase=payload.get("current_phase"))
    if result is None:
        return jsonify({"status": "in_progress", "state": _thread_payload(session)}), 202
    return jsonify({"result": result, "state": _thread_payload(session)})


@cases_bp.route("/api/cases/<case_id>/contextual-update/clarify", methods=["POST"])
@_contextual_update_errors
def clarify_contextual_update(case_id: str):
    payload = request.get_json(force=True, silent=True) or {}
    answer = (payload.get("answer") or "").strip()
    if not answer:
        return jsonify({"error": "answer is required"}), 400

    session = _session(case_id)
    result = session.clarify_contextual_update(answer, phase=payload.get("current_phase"))
    if result is None:
        return jsonify({"status": "in_progress", "state": _thread_payload(session)}), 202
    return jsonify({"result": result, "state": _thread_payload(session)})


@cases_bp.route("/api/cases/<case_id>/contextual-update/cancel", methods=["POST"])
@_contextual_update_errors
def cancel_contextual_update(case_id: str):
    session = _session(case_id)
    session.cancel_contextual_update()
    return jsonify({"state": _thread_payload(session)})


@cases_bp.route("/api/cases/<case_id>/contextual-update/apply", methods=["POST"])
@_contextual_update_errors
def apply_contextual_update(case_id: str):
    payload = request.get_json(force=True, silent=True) or {}
    session = _session(case_id)

    if payload.get("index") is not None:
        try:
            index = int(payload["index"])
        except (TypeError, ValueError):
            return jsonify({"error": "index must be an integer"}), 400
        document = session.apply_pending_command(index)
    elif "commands" in payload:
        commands = payload.get("commands")
        if not isinstance(commands, list):
            return jsonify({"error": "commands must be a list"}), 400
        document = session.apply_contextual_updates(commands, summary=payload.get("summary"))
    else:
        document = session.apply_contextual_updates()

    return jsonify({
        "document": document,
        "last_update": session.last_contextual_update,
        "state": _thread_payload(session),
    })


@cases_bp.route("/api/cases/<case_id>/contextual-update/undo", methods=["POST"])
@_contextual_update_errors
def undo_contextual_update(case_id: str):
    session = _session(case_id)
    document = session.undo_last_contextual_update()
    return jsonify({"document": document, "last_update": session.last_contextual_update})


@cases_bp.route("/api/cases/<case_id>/contextual-update/last", methods=["GET"])
@_contextual_update_errors
def last_contextual_update(case_id: str):
    return jsonify(_session(case_id).last_contextual_update)


@cases_bp.route("/api/cases/<case_id>/contextual-update/state", methods=["GET"])
@_contextual_update_errors
def contextual_update_state(case_id: str):
    return jsonify(_thread_payload(_session(case_id)))
