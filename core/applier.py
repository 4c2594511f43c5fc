"""
Command applier for contextual updates.
Executes a command batch against a working copy of a case document and builds
the inverse batch that restores the pre-batch document.
"""
import copy
import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from core.errors import CommandApplyError
from core.models import (
    COLLECTIONS,
    ApplyResult,
    CaseDocument,
    ContextualUpdateCommand,
)
from core.vocabulary import (
    TARGET_SPECS,
    has_reference,
    mutable_fields,
    resolve_entity,
    sibling_group,
    unknown_fields,
)

logger = logging.getLogger(__name__)


class _ApplyFailure(Exception):
    """Raised inside the applier; converted to CommandApplyError with the command index."""
    pass


def _new_id(target: str) -> str:
    return f"{target}-{uuid4().hex[:12]}"


def normalize_document(document: CaseDocument) -> CaseDocument:
    """
    Put a document into canonical order in place and return it.

    Steps, hazards and actions are sorted by order index and renumbered from
    zero. Controls are renumbered per hazard and listed in hazard order.
    """
    for target in ("step", "hazard", "action"):
        collection = COLLECTIONS[target]
        items = sorted(document.get(collection, []), key=lambda item: item.get("order_index", 0))
        for position, item in enumerate(items):
            item["order_index"] = position
        document[collection] = items  # type: ignore[literal-required]

    hazard_rank = {hazard.get("id"): rank for rank, hazard in enumerate(document.get("hazards", []))}
    unranked = len(hazard_rank)
    controls = sorted(
        document.get("controls", []),
        key=lambda item: (
            hazard_rank.get(item.get("hazard_id"), unranked),
            str(item.get("hazard_id")),
            item.get("order_index", 0),
        ),
    )
    counters: Dict[Any, int] = {}
    for control in controls:
        parent = control.get("hazard_id")
        control["order_index"] = counters.get(parent, 0)
        counters[parent] = control["order_index"] + 1
    document["controls"] = controls
    return document


class CommandApplier:
    """Applies contextual update commands one at a time, in batch order."""

    def __init__(self, id_factory: Optional[Callable[[str], str]] = None):
        self.id_factory = id_factory or _new_id

    def apply(
        self,
        commands: List[ContextualUpdateCommand],
        document: CaseDocument,
        exact: bool = False,
    ) -> ApplyResult:
        """
        Apply a batch to a copy of the document.

        Args:
            commands: Commands in application order
            document: Current case document (never mutated)
            exact: Copy every field value as given, blank strings included;
                used when replaying an inverse batch

        Returns:
            Dict with the new document and the inverse batch, already ordered
            for replay

        Raises:
            CommandApplyError: when a command cannot be executed; nothing is
                applied in that case
        """
        working = normalize_document(copy.deepcopy(document))
        inverse_groups: List[List[ContextualUpdateCommand]] = []

        for index, command in enumerate(commands):
            try:
                inverse_groups.append(self._apply_command(working, command, exact))
            except _ApplyFailure as exc:
                logger.info(f"[CommandApplier] Batch rolled back at command {index}: {exc}")
                raise CommandApplyError(index, str(exc)) from exc
            normalize_document(working)

        inverse = [cmd for group in reversed(inverse_groups) for cmd in group]
        logger.info(f"[CommandApplier] Applied {len(commands)} command(s), {len(inverse)} inverse command(s)")
        return {"document": working, "inverse": inverse}

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #
    def _apply_command(
        self,
        document: CaseDocument,
        command: ContextualUpdateCommand,
        exact: bool = False,
    ) -> List[ContextualUpdateCommand]:
        target = command.get("target")
        intent = command.get("intent")
        if target not in TARGET_SPECS:
            raise _ApplyFailure(f"unknown target '{target}'")
        location = command.get("location") or {}
        ignored = set() if exact else set(unknown_fields(command))
        data = {key: value for key, value in (command.get("data") or {}).items() if key not in ignored}
        explanation = command.get("explanation") or f"{intent} {target}"
        undo_label = f"Undo: {explanation}"

        if intent == "insert":
            return self._insert(document, target, location, data, undo_label)

        entity = resolve_entity(document, target, location)
        if entity is None:
            raise _ApplyFailure(f"cannot resolve {target} at {dict(location)}")

        if intent == "modify":
            changes = {
                key: copy.deepcopy(value)
                for key, value in data.items()
                if key in mutable_fields(target)
            }
            return self._modify(entity, target, changes, undo_label)
        if intent == "delete":
            return self._delete(document, target, entity, undo_label)
        if intent == "reorder":
            return self._reorder(document, target, entity, data.get("to_index"), undo_label)
        if intent == "annotate":
            note = str(data.get("note") or "").strip()
            if not note:
                raise _ApplyFailure("annotate requires a note")
            prior = list(entity.get("notes") or [])
            entity["notes"] = prior + [note]
            return [self._command("modify", target, entity, {"notes": prior}, undo_label)]
        raise _ApplyFailure(f"unknown intent '{intent}'")

    @staticmethod
    def _command(
        intent: str,
        target: str,
        entity: Dict[str, Any],
        data: Dict[str, Any],
        explanation: str,
        location: Optional[Dict[str, Any]] = None,
    ) -> ContextualUpdateCommand:
        return {
            "intent": intent,  # type: ignore[typeddict-item]
            "target": target,  # type: ignore[typeddict-item]
            "location": location or {TARGET_SPECS[target]["id_key"]: entity["id"]},
            "data": data,
            "explanation": explanation,
        }

    # ------------------------------------------------------------------ #
    # Intents
    # ------------------------------------------------------------------ #
    def _insert(
        self,
        document: CaseDocument,
        target: str,
        location: Dict[str, Any],
        data: Dict[str, Any],
        undo_label: str,
    ) -> List[ContextualUpdateCommand]:
        spec = TARGET_SPECS[target]
        collection = document.setdefault(COLLECTIONS[target], [])  # type: ignore[misc]

        entity_id = data.get("id") or self.id_factory(target)
        if any(item.get("id") == entity_id for item in collection):
            raise _ApplyFailure(f"{target} id '{entity_id}' already exists")

        entity: Dict[str, Any] = {"id": entity_id}
        entity.update(copy.deepcopy(spec["defaults"]))
        for key in mutable_fields(target):
            if key in data:
                entity[key] = copy.deepcopy(data[key])

        parent_id = None
        if target == "hazard":
            step_ids = list(entity.get("step_ids") or [])
            if has_reference("step", location):
                step = resolve_entity(document, "step", location)
                if step is None:
                    raise _ApplyFailure(f"cannot resolve step at {dict(location)}")
                if step["id"] not in step_ids:
                    step_ids.append(step["id"])
            entity["step_ids"] = step_ids
        elif target == "control":
            parent_id = location.get("hazard_id", data.get("hazard_id"))
            if not any(hazard.get("id") == parent_id for hazard in document.get("hazards", [])):
                raise _ApplyFailure(f"cannot resolve hazard '{parent_id}' for control")
            entity["hazard_id"] = parent_id
        elif target == "action":
            if "hazard_id" in location:
                entity["hazard_id"] = location["hazard_id"]
            hazard_id = entity.get("hazard_id")
            if hazard_id is not None and not any(h.get("id") == hazard_id for h in document.get("hazards", [])):
                raise _ApplyFailure(f"cannot resolve hazard '{hazard_id}' for action")

        group = sibling_group(document, target, parent_id)
        position = len(group)
        if location.get("index") is not None:
            position = max(0, min(int(location["index"]), len(group)))
        elif location.get(spec["after_key"]) is not None:
            after_id = location[spec["after_key"]]
            siblings = [item.get("id") for item in group]
            if after_id not in siblings:
                raise _ApplyFailure(f"cannot resolve {target} '{after_id}' to insert after")
            position = siblings.index(after_id) + 1

        for item in group[position:]:
            item["order_index"] = item.get("order_index", 0) + 1
        entity["order_index"] = position
        collection.append(entity)

        return [self._command("delete", target, entity, {}, undo_label)]

    def _modify(
        self,
        entity: Dict[str, Any],
        target: str,
        changes: Dict[str, Any],
        undo_label: str,
    ) -> List[ContextualUpdateCommand]:
        if not changes:
            return []
        pre_image = {key: copy.deepcopy(entity.get(key)) for key in changes}
        entity.update(changes)
        return [self._command("modify", target, entity, pre_image, undo_label)]

    def _delete(
        self,
        document: CaseDocument,
        target: str,
        entity: Dict[str, Any],
        undo_label: str,
    ) -> List[ContextualUpdateCommand]:
        collection = document[COLLECTIONS[target]]  # type: ignore[literal-required]
        captured = copy.deepcopy(entity)
        position = captured.pop("order_index", 0)
        collection[:] = [item for item in collection if item is not entity]

        location: Dict[str, Any] = {"index": position}
        if target == "control":
            location["hazard_id"] = captured.get("hazard_id")
        inverse = [self._command("insert", target, entity, captured, undo_label, location=location)]

        if target == "step":
            orphaned = []
            for hazard in document.get("hazards", []):
                step_ids = hazard.get("step_ids") or []
                if entity["id"] not in step_ids:
                    continue
                remaining = [step_id for step_id in step_ids if step_id != entity["id"]]
                if not remaining:
                    orphaned.append(hazard)
                    continue
                inverse.append(self._command("modify", "hazard", hazard, {"step_ids": list(step_ids)}, undo_label))
                hazard["step_ids"] = remaining

            # a hazard needs at least one step; highest position first keeps the
            # captured positions of the others valid
            orphan_groups = [
                self._delete(document, "hazard", hazard, undo_label)
                for hazard in sorted(orphaned, key=lambda item: item.get("order_index", 0), reverse=True)
            ]
            if orphan_groups:
                logger.info(f"[CommandApplier] Step {entity['id']} removal also removes {len(orphan_groups)} hazard(s)")
            inverse[1:1] = [cmd for group in reversed(orphan_groups) for cmd in group]
        elif target == "hazard":
            controls = sibling_group(document, "control", entity["id"])
            for control in controls:
                restored = copy.deepcopy(control)
                restored_position = restored.pop("order_index", 0)
                inverse.append(self._command(
                    "insert", "control", control, restored, undo_label,
                    location={"hazard_id": entity["id"], "index": restored_position},
                ))
            document["controls"] = [c for c in document.get("controls", []) if c.get("hazard_id") != entity["id"]]
            for action in document.get("actions", []):
                if action.get("hazard_id") == entity["id"]:
                    inverse.append(self._command("modify", "action", action, {"hazard_id": entity["id"]}, undo_label))
                    action["hazard_id"] = None
        return inverse

    def _reorder(
        self,
        document: CaseDocument,
        target: str,
        entity: Dict[str, Any],
        to_index: Any,
        undo_label: str,
    ) -> List[ContextualUpdateCommand]:
        parent_id = entity.get("hazard_id") if TARGET_SPECS[target]["parent_key"] else None
        group = sibling_group(document, target, parent_id)
        if not isinstance(to_index, int) or isinstance(to_index, bool) or not 0 <= to_index < len(group):
            raise _ApplyFailure(f"cannot move {target} to position {to_index}")
        old_index = group.index(entity)
        group.pop(old_index)
        group.insert(to_index, entity)
        for position, item in enumerate(group):
            item["order_index"] = position
        if old_index == to_index:
            return []
        return [self._command("reorder", target, entity, {"to_index": old_index}, undo_label)]
