from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, TypedDict

DocumentKind = Literal["risk_assessment", "jha", "incident"]
Intent = Literal["insert", "modify", "delete", "reorder", "annotate"]
Target = Literal["step", "hazard", "control", "action"]
ControlType = Literal["existing", "proposed"]
ControlHierarchy = Literal["SUBSTITUTION", "TECHNICAL", "ORGANIZATIONAL", "PPE"]
ActionStatus = Literal["OPEN", "IN_PROGRESS", "COMPLETE"]

DOCUMENT_KINDS = ("risk_assessment", "jha", "incident")
INTENTS = ("insert", "modify", "delete", "reorder", "annotate")
TARGETS = ("step", "hazard", "control", "action")
CONTROL_TYPES = ("existing", "proposed")
CONTROL_HIERARCHIES = ("SUBSTITUTION", "TECHNICAL", "ORGANIZATIONAL", "PPE")
ACTION_STATUSES = ("OPEN", "IN_PROGRESS", "COMPLETE")

# Collection on the case document holding each target
COLLECTIONS: Dict[str, str] = {
    "step": "steps",
    "hazard": "hazards",
    "control": "controls",
    "action": "actions",
}

# Workflow phases per document kind, in order
PHASES: Dict[str, List[str]] = {
    "risk_assessment": [
        "PROCESS_STEPS",
        "HAZARD_IDENTIFICATION",
        "RISK_RATING",
        "CONTROL_DISCUSSION",
        "ACTIONS",
        "RESIDUAL_RISK",
        "COMPLETE",
    ],
    "jha": ["steps", "hazards", "controls", "review"],
    "incident": ["facts", "timeline", "causes", "actions", "review"],
}


class Step(TypedDict, total=False):
    id: str
    order_index: int
    activity: str
    description: Optional[str]
    equipment: List[str]
    substances: List[str]
    notes: List[str]


class Hazard(TypedDict, total=False):
    id: str
    order_index: int
    step_ids: List[str]
    label: str
    description: Optional[str]
    category_code: Optional[str]
    notes: List[str]


class Control(TypedDict, total=False):
    id: str
    order_index: int
    hazard_id: str
    description: str
    type: ControlType
    hierarchy: Optional[ControlHierarchy]
    notes: List[str]


class Action(TypedDict, total=False):
    id: str
    order_index: int
    hazard_id: Optional[str]
    description: str
    owner: Optional[str]
    due_date: Optional[str]
    status: ActionStatus
    notes: List[str]


class CaseDocument(TypedDict, total=False):
    id: str
    kind: DocumentKind
    title: str
    phase: str
    steps: List[Step]
    hazards: List[Hazard]
    controls: List[Control]
    actions: List[Action]


class CommandLocation(TypedDict, total=False):
    step_id: str
    step_index: int
    hazard_id: str
    hazard_index: int
    control_id: str
    control_index: int
    action_id: str
    action_index: int
    index: int  # insertion position inside the sibling group
    after_step_id: str
    after_hazard_id: str
    after_control_id: str
    after_action_id: str


class ContextualUpdateCommand(TypedDict, total=False):
    intent: Intent
    target: Target
    location: CommandLocation
    data: Dict[str, Any]
    explanation: str


class ParsedContextualUpdate(TypedDict, total=False):
    commands: List[ContextualUpdateCommand]
    summary: str
    needs_clarification: bool
    clarification_prompt: Optional[str]
    raw_response: Optional[str]


class ApplyResult(TypedDict):
    document: CaseDocument
    inverse: List[ContextualUpdateCommand]


class AppliedUpdateRecord(TypedDict, total=False):
    summary: Optional[str]
    inverse_commands: List[ContextualUpdateCommand]
    command_count: int
    applied_at: str


class LastContextualUpdate(TypedDict):
    summary: Optional[str]
    available: bool


def empty_document(case_id: str, kind: str, title: str, phase: Optional[str] = None) -> CaseDocument:
    """Build a case document with no children."""
    return {
        "id": case_id,
        "kind": kind,  # type: ignore[typeddict-item]
        "title": title,
        "phase": phase or PHASES[kind][0],
        "steps": [],
        "hazards": [],
        "controls": [],
        "actions": [],
    }
