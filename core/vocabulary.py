"""
Command vocabulary for contextual updates.
Defines which intents each document kind allows per target, the fields every
target carries, and validates a whole batch before anything is executed.
"""
import logging
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Set

from core.errors import CommandValidationError
from core.models import (
    ACTION_STATUSES,
    COLLECTIONS,
    CONTROL_HIERARCHIES,
    CONTROL_TYPES,
    INTENTS,
    CaseDocument,
    ContextualUpdateCommand,
)

logger = logging.getLogger(__name__)

ALL_INTENTS: FrozenSet[str] = frozenset(INTENTS)

CAPABILITIES: Dict[str, Dict[str, FrozenSet[str]]] = {
    "risk_assessment": {
        "step": ALL_INTENTS,
        "hazard": ALL_INTENTS,
        "control": ALL_INTENTS,
        "action": ALL_INTENTS,
    },
    "jha": {
        "step": ALL_INTENTS,
        "hazard": ALL_INTENTS,
        "control": frozenset({"insert", "modify", "delete", "reorder"}),
    },
    "incident": {
        "step": ALL_INTENTS,
        "hazard": frozenset({"insert", "modify", "delete", "annotate"}),
        "action": ALL_INTENTS,
    },
}

# How each kind names the shared targets when talking to people
TARGET_LABELS: Dict[str, Dict[str, str]] = {
    "risk_assessment": {"step": "process step", "hazard": "hazard", "control": "control", "action": "action"},
    "jha": {"step": "job step", "hazard": "hazard", "control": "control"},
    "incident": {"step": "timeline event", "hazard": "cause", "action": "corrective action"},
}

TARGET_SPECS: Dict[str, Dict[str, Any]] = {
    "step": {
        "id_key": "step_id",
        "index_key": "step_index",
        "after_key": "after_step_id",
        "parent_key": None,
        "text_fields": ("activity", "description"),
        "list_fields": ("equipment", "substances", "notes"),
        "required_on_insert": ("activity",),
        "defaults": {"description": None, "equipment": [], "substances": [], "notes": []},
    },
    "hazard": {
        "id_key": "hazard_id",
        "index_key": "hazard_index",
        "after_key": "after_hazard_id",
        "parent_key": None,
        "text_fields": ("label", "description", "category_code"),
        "list_fields": ("step_ids", "notes"),
        "required_on_insert": ("label",),
        "defaults": {"description": None, "category_code": None, "notes": []},
    },
    "control": {
        "id_key": "control_id",
        "index_key": "control_index",
        "after_key": "after_control_id",
        "parent_key": "hazard_id",
        "text_fields": ("description", "type", "hierarchy"),
        "list_fields": ("notes",),
        "required_on_insert": ("description",),
        "defaults": {"type": "proposed", "hierarchy": None, "notes": []},
    },
    "action": {
        "id_key": "action_id",
        "index_key": "action_index",
        "after_key": "after_action_id",
        "parent_key": None,
        "text_fields": ("description", "owner", "due_date", "status", "hazard_id"),
        "list_fields": ("notes",),
        "required_on_insert": ("description",),
        "defaults": {"hazard_id": None, "owner": None, "due_date": None, "status": "OPEN", "notes": []},
    },
}

ENUM_FIELDS: Dict[str, Dict[str, Sequence[str]]] = {
    "control": {"type": CONTROL_TYPES, "hierarchy": CONTROL_HIERARCHIES},
    "action": {"status": ACTION_STATUSES},
}

# Data keys consumed by specific intents rather than copied onto the entity
INTENT_DATA_KEYS: Dict[str, FrozenSet[str]] = {
    "insert": frozenset({"id"}),
    "reorder": frozenset({"to_index"}),
    "annotate": frozenset({"note"}),
}


def mutable_fields(target: str) -> List[str]:
    spec = TARGET_SPECS[target]
    return list(spec["text_fields"]) + list(spec["list_fields"])


def allowed_intents(kind: str, target: str) -> FrozenSet[str]:
    """Intents a document kind accepts for a target (empty when the target is unsupported)."""
    return CAPABILITIES.get(kind, {}).get(target, frozenset())


def target_label(kind: str, target: str) -> str:
    return TARGET_LABELS.get(kind, {}).get(target, target)


def unknown_fields(command: ContextualUpdateCommand) -> List[str]:
    """
    Data keys the applier will ignore for this command.

    Includes keys that are not fields of the target and keys whose value is
    blank. Shown to the reviewer next to the proposed edit.
    """
    target = command.get("target")
    if target not in TARGET_SPECS:
        return sorted((command.get("data") or {}).keys())
    known = set(mutable_fields(target)) | INTENT_DATA_KEYS.get(command.get("intent", ""), frozenset())
    ignored = []
    for key, value in (command.get("data") or {}).items():
        if key not in known or not str(key).strip():
            ignored.append(key)
        elif isinstance(value, str) and not value.strip() and key not in ("description", "owner", "due_date"):
            ignored.append(key)
    return ignored


# ---------------------------------------------------------------------------
# Entity lookup, shared with the applier
# ---------------------------------------------------------------------------

def sibling_group(document: CaseDocument, target: str, parent_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Entities sharing one order sequence, sorted by order index."""
    items = document.get(COLLECTIONS[target], [])  # type: ignore[literal-required]
    if TARGET_SPECS[target]["parent_key"]:
        items = [item for item in items if item.get("hazard_id") == parent_id]
    return sorted(items, key=lambda item: item.get("order_index", 0))


def has_reference(target: str, location: Dict[str, Any]) -> bool:
    spec = TARGET_SPECS[target]
    return location.get(spec["id_key"]) is not None or location.get(spec["index_key"]) is not None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def resolve_entity(document: CaseDocument, target: str, location: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Find the entity a location points at, by id first, then by index within its group."""
    spec = TARGET_SPECS[target]
    entity_id = location.get(spec["id_key"])
    if entity_id is not None:
        items = document.get(COLLECTIONS[target], [])  # type: ignore[literal-required]
        return next((item for item in items if item.get("id") == entity_id), None)

    index = location.get(spec["index_key"])
    if not _is_int(index):
        return None
    parent_key = spec["parent_key"]
    if parent_key and location.get(parent_key) is None:
        return None
    group = sibling_group(document, target, location.get(parent_key) if parent_key else None)
    if 0 <= index < len(group):
        return group[index]
    return None


# ---------------------------------------------------------------------------
# Batch validation
# ---------------------------------------------------------------------------

class _BatchScope:
    """Ids and group sizes visible to a command, given the snapshot and earlier inserts."""

    def __init__(self, document: CaseDocument):
        self.document = document
        self.ids: Dict[str, Set[str]] = {
            target: {item.get("id") for item in document.get(collection, [])}  # type: ignore[literal-required]
            for target, collection in COLLECTIONS.items()
        }
        self.extra: Dict[tuple, int] = {}

    def group_bound(self, target: str, parent_id: Optional[str] = None) -> int:
        snapshot_size = len(sibling_group(self.document, target, parent_id))
        return snapshot_size + self.extra.get((target, parent_id), 0)

    def record_insert(self, target: str, entity_id: Optional[str], parent_id: Optional[str]) -> None:
        if entity_id:
            self.ids[target].add(entity_id)
        key = (target, parent_id)
        self.extra[key] = self.extra.get(key, 0) + 1

    def references(self, target: str, location: Dict[str, Any]) -> Optional[str]:
        """Return a reason string when the location does not point at a known entity."""
        spec = TARGET_SPECS[target]
        entity_id = location.get(spec["id_key"])
        if entity_id is not None:
            if entity_id not in self.ids[target]:
                return f"unknown {target} id '{entity_id}'"
            return None
        index = location.get(spec["index_key"])
        if not _is_int(index):
            return f"{spec['index_key']} must be an integer"
        parent_id = None
        if spec["parent_key"]:
            parent_id = location.get(spec["parent_key"])
            if parent_id is None:
                return f"{spec['index_key']} requires {spec['parent_key']}"
            if parent_id not in self.ids["hazard"]:
                return f"unknown hazard id '{parent_id}'"
        if not 0 <= index < self.group_bound(target, parent_id):
            return f"{spec['index_key']} {index} is out of range"
        return None


def _check_values(target: str, data: Dict[str, Any]) -> Optional[str]:
    spec = TARGET_SPECS[target]
    for key in spec["list_fields"]:
        if key in data:
            value = data[key]
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                return f"'{key}' must be a list of strings"
    for key in spec["text_fields"]:
        if key in data and data[key] is not None and not isinstance(data[key], str):
            return f"'{key}' must be a string"
    for key, choices in ENUM_FIELDS.get(target, {}).items():
        value = data.get(key)
        if value is not None and value not in choices:
            return f"'{key}' must be one of {', '.join(choices)}"
    return None


def validate_command(
    command: ContextualUpdateCommand,
    kind: str,
    scope: "_BatchScope",
) -> Optional[str]:
    """Check one command against the batch scope; return the failure reason or None."""
    if not isinstance(command, dict):
        return "command must be an object"
    intent = command.get("intent")
    target = command.get("target")
    if target not in TARGET_SPECS:
        return f"unknown target '{target}'"
    if intent not in ALL_INTENTS:
        return f"unknown intent '{intent}'"
    if intent not in allowed_intents(kind, target):
        return f"intent '{intent}' is not available for {target} on a {kind} case"

    location = command.get("location") or {}
    data = command.get("data") or {}
    if not isinstance(location, dict) or not isinstance(data, dict):
        return "location and data must be objects"

    bad_value = _check_values(target, data)
    if bad_value:
        return bad_value

    spec = TARGET_SPECS[target]
    if intent == "insert":
        for field in spec["required_on_insert"]:
            value = data.get(field)
            if not isinstance(value, str) or not value.strip():
                return f"insert {target} requires data.{field}"
        new_id = data.get("id")
        if new_id is not None:
            if not isinstance(new_id, str) or not new_id.strip():
                return "data.id must be a non-empty string"
            if new_id in scope.ids[target]:
                return f"{target} id '{new_id}' already exists"

        parent_id = None
        if target == "hazard":
            step_ids = list(data.get("step_ids") or [])
            if has_reference("step", location):
                reason = scope.references("step", location)
                if reason:
                    return reason
            elif not step_ids:
                return "insert hazard requires a step reference"
            for step_id in step_ids:
                if step_id not in scope.ids["step"]:
                    return f"unknown step id '{step_id}'"
        elif target == "control":
            parent_id = location.get("hazard_id")
            if parent_id is None:
                return "insert control requires location.hazard_id"
            if parent_id not in scope.ids["hazard"]:
                return f"unknown hazard id '{parent_id}'"
        elif target == "action":
            hazard_id = location.get("hazard_id", data.get("hazard_id"))
            if hazard_id is not None and hazard_id not in scope.ids["hazard"]:
                return f"unknown hazard id '{hazard_id}'"

        after_id = location.get(spec["after_key"])
        if after_id is not None and after_id not in scope.ids[target]:
            return f"unknown {target} id '{after_id}' in {spec['after_key']}"
        position = location.get("index")
        if position is not None and (not _is_int(position) or position < 0):
            return "location.index must be a non-negative integer"

        scope.record_insert(target, new_id, parent_id)
        return None

    if not has_reference(target, location):
        return f"{intent} {target} requires {spec['id_key']} or {spec['index_key']}"
    reason = scope.references(target, location)
    if reason:
        return reason

    if intent == "modify":
        if target == "action" and data.get("hazard_id") is not None and data["hazard_id"] not in scope.ids["hazard"]:
            return f"unknown hazard id '{data['hazard_id']}'"
        if target == "hazard":
            if "step_ids" in data and not data["step_ids"]:
                return "hazard requires at least one step"
            for step_id in data.get("step_ids") or []:
                if step_id not in scope.ids["step"]:
                    return f"unknown step id '{step_id}'"
    elif intent == "reorder":
        to_index = data.get("to_index")
        if not _is_int(to_index) or to_index < 0:
            return "reorder requires a non-negative integer data.to_index"
        parent_id = None
        if target == "control":
            control = resolve_entity(scope.document, "control", location)
            parent_id = control.get("hazard_id") if control else location.get("hazard_id")
            if parent_id is None:
                # inserted earlier in this batch, the applier checks the bound
                return None
        if to_index >= scope.group_bound(target, parent_id):
            return f"data.to_index {to_index} is out of range"
    elif intent == "annotate":
        note = data.get("note")
        if not isinstance(note, str) or not note.strip():
            return "annotate requires a non-empty data.note"
    return None


def validate_batch(commands: List[ContextualUpdateCommand], document: CaseDocument) -> None:
    """
    Validate a command batch against the document it will be applied to.

    Args:
        commands: Commands in application order
        document: Current case document snapshot

    Raises:
        CommandValidationError: identifying the first offending command
    """
    if not isinstance(commands, list):
        raise CommandValidationError(0, "commands must be a list")
    kind = document.get("kind", "")
    scope = _BatchScope(document)
    for index, command in enumerate(commands):
        reason = validate_command(command, kind, scope)
        if reason:
            logger.info(f"[Validator] Rejected batch at command {index}: {reason}")
            raise CommandValidationError(index, reason)
