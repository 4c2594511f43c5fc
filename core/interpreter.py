"""
Interpretation service adapters.
Turn a free-text instruction plus the current phase and case snapshot into a
parsed contextual update: a command batch, or a clarification request.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from anthropic import APIError

from core.clarification import CLARIFICATION_MARKER
from core.errors import InterpretationError
from core.models import (
    CaseDocument,
    ContextualUpdateCommand,
    ParsedContextualUpdate,
)
from core.vocabulary import (
    CAPABILITIES,
    TARGET_SPECS,
    allowed_intents,
    sibling_group,
    target_label,
)
from tools.llm_client import get_llm_client, parse_json_response

logger = logging.getLogger(__name__)

INTENT_SYNONYMS: Dict[str, str] = {
    "add": "insert",
    "create": "insert",
    "update": "modify",
    "edit": "modify",
    "change": "modify",
    "remove": "delete",
    "move": "reorder",
    "note": "annotate",
    "comment": "annotate",
}

# Target each phase leans towards when the instruction is vague
PHASE_TARGETS: Dict[str, str] = {
    "PROCESS_STEPS": "step",
    "HAZARD_IDENTIFICATION": "hazard",
    "RISK_RATING": "hazard",
    "CONTROL_DISCUSSION": "control",
    "ACTIONS": "action",
    "RESIDUAL_RISK": "control",
    "steps": "step",
    "hazards": "hazard",
    "controls": "control",
    "facts": "step",
    "timeline": "step",
    "causes": "hazard",
    "actions": "action",
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
_STEP_MENTION = re.compile(r"step\s*(\d+)", re.IGNORECASE)


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", str(key)).lower()


def preferred_target(kind: str, phase: Optional[str]) -> str:
    supported = CAPABILITIES.get(kind, {})
    target = PHASE_TARGETS.get(phase or "")
    if target in supported:
        return target
    return "hazard" if "hazard" in supported else "step"


def build_summary(commands: List[ContextualUpdateCommand], user_input: str) -> str:
    if not commands:
        return f'No updates parsed from "{user_input}"'
    if len(commands) == 1:
        return commands[0].get("explanation") or f'1 update parsed from "{user_input}"'
    return f'{len(commands)} updates parsed from "{user_input}"'


def _normalize_data(target: str, data: Dict[str, Any]) -> Dict[str, Any]:
    normalized = {_snake(key): value for key, value in data.items()}
    if isinstance(normalized.get("hierarchy"), str):
        normalized["hierarchy"] = normalized["hierarchy"].strip().upper() or None
    if isinstance(normalized.get("status"), str):
        normalized["status"] = re.sub(r"\s+", "_", normalized["status"].strip().upper())
    if target == "control" and isinstance(normalized.get("type"), str):
        normalized["type"] = normalized["type"].strip().lower()
    return normalized


def normalize_command(raw: Dict[str, Any]) -> ContextualUpdateCommand:
    """Coerce one command from a backend into the engine's vocabulary."""
    intent = str(raw.get("intent") or "modify").strip().lower()
    intent = INTENT_SYNONYMS.get(intent, intent)
    target = str(raw.get("target") or "step").strip().lower()

    # non-object location or data is left as is for the validator to reject
    location = raw.get("location") or {}
    if isinstance(location, dict):
        location = {_snake(key): value for key, value in location.items()}
        if "insert_after" in location and target in TARGET_SPECS:
            location.setdefault(TARGET_SPECS[target]["after_key"], location.pop("insert_after"))
    data = raw.get("data") or {}
    if isinstance(data, dict):
        data = _normalize_data(target, data)

    return {
        "intent": intent,  # type: ignore[typeddict-item]
        "target": target,  # type: ignore[typeddict-item]
        "location": location,  # type: ignore[typeddict-item]
        "data": data,
        "explanation": raw.get("explanation") or "Update requested",
    }


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def normalize_parsed(raw: Any, user_input: str, raw_response: Optional[str] = None) -> ParsedContextualUpdate:
    """Normalize a backend reply; a clarification request always carries no commands."""
    if not isinstance(raw, dict):
        raise InterpretationError("Interpretation backend returned an unexpected payload")

    needs_clarification = _as_bool(raw.get("needs_clarification", raw.get("needsClarification", False)))
    raw_commands = raw.get("commands")
    commands = [normalize_command(cmd) for cmd in raw_commands if isinstance(cmd, dict)] if isinstance(raw_commands, list) else []
    if needs_clarification:
        commands = []

    result: ParsedContextualUpdate = {
        "commands": commands,
        "summary": raw.get("summary") or build_summary(commands, user_input),
        "needs_clarification": needs_clarification,
        "clarification_prompt": raw.get("clarification_prompt", raw.get("clarificationPrompt")),
    }
    if raw_response is not None:
        result["raw_response"] = raw_response
    return result


def table_state(snapshot: CaseDocument) -> Dict[str, Any]:
    """Compact view of a case sent to the interpretation backend."""
    return {
        "kind": snapshot.get("kind"),
        "steps": [
            {
                "number": position + 1,
                "id": step.get("id"),
                "activity": step.get("activity"),
                "description": step.get("description"),
                "equipment": step.get("equipment", []),
                "substances": step.get("substances", []),
            }
            for position, step in enumerate(sibling_group(snapshot, "step"))
        ],
        "hazards": [
            {
                "id": hazard.get("id"),
                "label": hazard.get("label"),
                "description": hazard.get("description"),
                "category_code": hazard.get("category_code"),
                "step_ids": hazard.get("step_ids", []),
            }
            for hazard in sibling_group(snapshot, "hazard")
        ],
        "controls": [
            {
                "id": control.get("id"),
                "hazard_id": control.get("hazard_id"),
                "description": control.get("description"),
                "type": control.get("type"),
                "hierarchy": control.get("hierarchy"),
            }
            for control in snapshot.get("controls", [])
        ],
        "actions": [
            {
                "id": action.get("id"),
                "hazard_id": action.get("hazard_id"),
                "description": action.get("description"),
                "owner": action.get("owner"),
                "due_date": action.get("due_date"),
                "status": action.get("status"),
            }
            for action in sibling_group(snapshot, "action")
        ],
    }


def build_system_prompt(kind: str, phase: str) -> str:
    capabilities = "\n".join(
        f"- {target} ({target_label(kind, target)}): {', '.join(sorted(intents))}"
        for target, intents in CAPABILITIES.get(kind, {}).items()
    )
    return f"""You are helping update a {kind.replace('_', ' ')} safety document.

Parse the user's natural language input and return structured update commands.

CURRENT PHASE: {phase}
Bias toward the {target_label(kind, preferred_target(kind, phase))} table when the request is vague.

Allowed targets and intents for this document:
{capabilities}

For each command specify:
- intent: one of the allowed intents
- target: one of the allowed targets
- location: {{step_id?, step_index?, hazard_id?, hazard_index?, control_id?, control_index?, action_id?, action_index?, after_step_id?, after_hazard_id?, after_control_id?, after_action_id?, index?}}
- data: fields to set (step: activity, description, equipment[], substances[]; hazard: label, description, category_code, step_ids[]; control: description, type existing|proposed, hierarchy SUBSTITUTION|TECHNICAL|ORGANIZATIONAL|PPE; action: description, owner, due_date, status OPEN|IN_PROGRESS|COMPLETE, hazard_id)
- explanation: one short human-readable sentence

Rules:
- Prefer ids over indexes. Indexes are zero-based: step number 3 has step_index 2.
- Reference only ids present in the table state.
- To insert between steps 3 and 4, insert with after_step_id set to the id of step number 3.
- reorder takes data.to_index (zero-based); annotate takes data.note.
- When a later command refers to something an earlier command inserts, give the insert a data.id such as "new-1" and reuse it.
- List fields replace the whole list; include existing items you keep.

If the request is ambiguous (for example several entities could match), set
needs_clarification to true, put a single concise question naming the candidates
in clarification_prompt, and return an empty commands array.
Text after "{CLARIFICATION_MARKER}" is the user's answer to your previous question.

Return ONLY valid JSON (no markdown, no code fences, no commentary):
{{"commands": [{{"intent": string, "target": string, "location": object, "data": object, "explanation": string}}], "summary": string, "needs_clarification": boolean, "clarification_prompt": string|null}}"""


class InterpretationService:
    """Boundary to a language-understanding backend. Implementations must not mutate the snapshot."""

    name = "base"

    def interpret(self, instruction: str, phase: str, snapshot: CaseDocument) -> ParsedContextualUpdate:
        raise NotImplementedError


class LLMInterpretationService(InterpretationService):
    """Interpretation through the Anthropic Messages API."""

    name = "llm"

    def __init__(self, client=None, max_tokens: int = 2048):
        self.client = client
        self.max_tokens = max_tokens

    def interpret(self, instruction: str, phase: str, snapshot: CaseDocument) -> ParsedContextualUpdate:
        client = self.client or get_llm_client()
        kind = snapshot.get("kind", "risk_assessment")
        user_prompt = json.dumps(
            {"user_input": instruction, "table_state": table_state(snapshot)},
            ensure_ascii=False,
        )

        try:
            response = client.invoke_with_prompt(
                build_system_prompt(kind, phase),
                user_prompt,
                temperature=0,
                max_tokens=self.max_tokens,
            )
        except APIError as exc:
            logger.error(f"[LLMInterpretationService] Provider error: {exc}")
            raise InterpretationError(str(exc), exc) from exc

        if not response or not response.strip():
            raise InterpretationError("Interpretation backend returned an empty response")
        try:
            parsed = parse_json_response(response)
        except json.JSONDecodeError as exc:
            logger.error(f"[LLMInterpretationService] Invalid JSON from model: {exc}")
            raise InterpretationError("Interpretation backend returned invalid JSON", exc) from exc

        result = normalize_parsed(parsed, instruction, raw_response=response)
        logger.info(
            f"[LLMInterpretationService] {len(result['commands'])} command(s), "
            f"needs_clarification={result['needs_clarification']}"
        )
        return result


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"Interpretation backend returned HTTP {response.status_code}"
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
        if message:
            return str(message)
    return response.text or f"Interpretation backend returned HTTP {response.status_code}"


class RemoteInterpretationService(InterpretationService):
    """Interpretation through an HTTP endpoint returning the parsed update as JSON."""

    name = "remote"

    def __init__(self, url: str, timeout: float = 60.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def interpret(self, instruction: str, phase: str, snapshot: CaseDocument) -> ParsedContextualUpdate:
        payload = {
            "instruction": instruction,
            "phase": phase,
            "case_id": snapshot.get("id"),
            "snapshot": table_state(snapshot),
        }
        try:
            response = self.client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            logger.error(f"[RemoteInterpretationService] Transport error: {exc}")
            raise InterpretationError(str(exc) or exc.__class__.__name__, exc) from exc

        if response.is_error:
            message = _error_message(response)
            logger.error(f"[RemoteInterpretationService] HTTP {response.status_code}: {message}")
            raise InterpretationError(message)

        try:
            body = response.json()
        except ValueError as exc:
            raise InterpretationError("Interpretation backend returned invalid JSON", exc) from exc
        return normalize_parsed(body, instruction, raw_response=response.text)


class HeuristicInterpretationService(InterpretationService):
    """
    Offline interpretation used when no language backend is configured.

    A "step N" mention becomes a note on that step; anything else becomes one
    new entry in the table the current phase works on.
    """

    name = "heuristic"

    def interpret(self, instruction: str, phase: str, snapshot: CaseDocument) -> ParsedContextualUpdate:
        kind = snapshot.get("kind", "risk_assessment")
        text = instruction.split(CLARIFICATION_MARKER)[0].strip() or instruction.strip()
        commands: List[ContextualUpdateCommand] = []

        steps = sibling_group(snapshot, "step")
        mentions = _STEP_MENTION.findall(instruction)
        if mentions and "annotate" in allowed_intents(kind, "step"):
            index = int(mentions[-1]) - 1
            if 0 <= index < len(steps):
                commands.append({
                    "intent": "annotate",
                    "target": "step",
                    "location": {"step_id": steps[index]["id"]},
                    "data": {"note": text},
                    "explanation": f'Add note to {target_label(kind, "step")} {index + 1}: "{text}"',
                })
                return normalize_parsed({"commands": commands}, instruction)

        target = preferred_target(kind, phase)
        label = target_label(kind, target)
        hazards = sibling_group(snapshot, "hazard")
        command: ContextualUpdateCommand = {
            "intent": "insert",
            "target": target,  # type: ignore[typeddict-item]
            "location": {},
            "data": {},
            "explanation": f'Add new {label} based on: "{text}"',
        }
        if target == "step":
            command["data"] = {"activity": text}
        elif target == "hazard":
            if not steps:
                return self._clarify(f"Which {target_label(kind, 'step')} does this {label} belong to?", instruction)
            command["location"] = {"step_id": steps[0]["id"]}
            command["data"] = {"label": text}
        elif target == "control":
            if not hazards:
                return self._clarify(f"Which {target_label(kind, 'hazard')} should this control address?", instruction)
            command["location"] = {"hazard_id": hazards[0]["id"]}
            command["data"] = {"description": text}
        else:
            if hazards:
                command["location"] = {"hazard_id": hazards[0]["id"]}
            command["data"] = {"description": text}
        commands.append(command)
        return normalize_parsed({"commands": commands}, instruction)

    @staticmethod
    def _clarify(question: str, instruction: str) -> ParsedContextualUpdate:
        return normalize_parsed(
            {"commands": [], "needs_clarification": True, "clarification_prompt": question, "summary": question},
            instruction,
        )


def create_interpretation_service(config: Dict[str, Any]) -> InterpretationService:
    """Pick the interpretation backend named in configuration."""
    backend = (config.get("INTERPRETER_BACKEND") or "llm").lower()
    if backend == "remote":
        url = config.get("INTERPRETER_URL")
        if not url:
            raise ValueError("INTERPRETER_URL is required for the remote interpretation backend")
        return RemoteInterpretationService(url, timeout=float(config.get("INTERPRETER_TIMEOUT", 60)))
    if backend == "llm" and config.get("ANTHROPIC_API_KEY"):
        return LLMInterpretationService()
    if backend == "llm":
        logger.warning("ANTHROPIC_API_KEY not set, using heuristic interpretation")
    return HeuristicInterpretationService()
