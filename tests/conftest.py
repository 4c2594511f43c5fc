"""Pytest configuration and shared fixtures."""

import copy
import re
from typing import Any, Callable, List, Optional, Union

import pytest

from app.server import create_app
from core.clarification import CLARIFICATION_MARKER
from core.demo_seed import build_demo_document
from core.interpreter import InterpretationService, normalize_parsed
from core.models import CaseDocument, ParsedContextualUpdate
from core.store import CaseStore

Reply = Union[dict, Exception, Callable[[str, str, CaseDocument], Any]]


class FakeInterpreter(InterpretationService):
    """Interpretation backend replaying scripted replies in order."""

    name = "fake"

    def __init__(self, replies: Optional[List[Reply]] = None):
        self.replies: List[Reply] = list(replies or [])
        self.calls: List[dict] = []

    def queue(self, *replies: Reply) -> "FakeInterpreter":
        self.replies.extend(replies)
        return self

    def interpret(self, instruction: str, phase: str, snapshot: CaseDocument) -> ParsedContextualUpdate:
        self.calls.append({
            "instruction": instruction,
            "phase": phase,
            "snapshot": copy.deepcopy(snapshot),
        })
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(instruction, phase, snapshot)
        return normalize_parsed(copy.deepcopy(reply), instruction)


SLIP_LABELS = {
    "hazard-2": "Slip on spilled hydraulic oil",
    "hazard-3": "Slip on wet test bay floor",
}


def _slip_hazards(snapshot: CaseDocument) -> List[dict]:
    return [hazard for hazard in snapshot.get("hazards", []) if "slip" in hazard.get("label", "").lower()]


def ask_which_slip_hazard(instruction: str, phase: str, snapshot: CaseDocument) -> dict:
    """Backend reply asking which of several slip hazards is meant."""
    choices = [
        f"\"{hazard['label']}\" ({', '.join(hazard['step_ids'])})"
        for hazard in _slip_hazards(snapshot)
    ]
    return {
        "commands": [],
        "needs_clarification": True,
        "clarification_prompt": f"Which slip hazard do you mean: {' or '.join(choices)}?",
    }


def describe_chosen_slip_hazard(instruction: str, phase: str, snapshot: CaseDocument) -> dict:
    """Backend reply resolving the step named in the clarification answer to one slip hazard."""
    answer = instruction.rsplit(CLARIFICATION_MARKER, 1)[-1]
    step_number = re.findall(r"step\s*(\d+)", answer, re.IGNORECASE)[-1]
    step_id = f"step-{step_number}"
    hazard = next(hazard for hazard in _slip_hazards(snapshot) if step_id in hazard["step_ids"])
    return {
        "commands": [{
            "intent": "modify",
            "target": "hazard",
            "location": {"hazard_id": hazard["id"]},
            "data": {"description": "Oil pools under the drain pan; absorbent mats and a drip tray are in place."},
            "explanation": f"Update description of {hazard['label']}",
        }],
        "summary": f"Update description of {hazard['label']}",
    }


@pytest.fixture
def slip_document(ra_document) -> CaseDocument:
    """Create the demo risk assessment with two slip hazards.

    Returns:
        CaseDocument: hazard-2 (step-2) and hazard-3 (step-3) are both slip hazards
    """
    for hazard in ra_document["hazards"]:
        hazard["label"] = SLIP_LABELS.get(hazard["id"], hazard["label"])
    return ra_document


@pytest.fixture
def slip_interpreter(fake_interpreter) -> FakeInterpreter:
    """Fake backend that asks which slip hazard is meant, then resolves the answer."""
    return fake_interpreter.queue(ask_which_slip_hazard, describe_chosen_slip_hazard)


@pytest.fixture
def ra_document() -> CaseDocument:
    """Create the demo risk assessment.

    Returns:
        CaseDocument: Three steps, three hazards with controls, one action
    """
    return build_demo_document("risk_assessment", case_id="ra-1")


@pytest.fixture
def jha_document() -> CaseDocument:
    """Create the demo job hazard analysis.

    Returns:
        CaseDocument: Four job steps, three hazards with existing controls
    """
    return build_demo_document("jha", case_id="jha-1")


@pytest.fixture
def incident_document() -> CaseDocument:
    """Create the demo incident report.

    Returns:
        CaseDocument: Three timeline events, one cause, one corrective action
    """
    return build_demo_document("incident", case_id="incident-1")


@pytest.fixture
def fake_interpreter() -> FakeInterpreter:
    return FakeInterpreter()


@pytest.fixture
def store(tmp_path) -> CaseStore:
    """Create a case store rooted in a temporary directory.

    Returns:
        CaseStore: Empty file-backed store
    """
    return CaseStore(data_dir=str(tmp_path / "cases"))


@pytest.fixture
def flask_app(tmp_path, fake_interpreter):
    """Create the Flask app wired to a temporary store and the fake interpreter.

    Returns:
        Flask: Configured application
    """
    config = {
        "SECRET_KEY": "test-secret",
        "DATA_DIR": str(tmp_path / "api-cases"),
        "MAX_CLARIFICATION_TURNS": None,
    }
    app, _socketio = create_app(config=config, interpreter_factory=lambda: fake_interpreter)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(flask_app):
    """Create Flask test client.

    Returns:
        FlaskClient: Test client for the case API
    """
    return flask_app.test_client()
