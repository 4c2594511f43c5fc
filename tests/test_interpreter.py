"""Tests for the interpretation service adapters."""

import json
from unittest.mock import Mock

import anthropic
import httpx
import pytest

from core.engine import ContextualUpdateEngine
from core.errors import CommandValidationError, InterpretationError, LLMNotAvailableError
from core.interpreter import (
    HeuristicInterpretationService,
    LLMInterpretationService,
    RemoteInterpretationService,
    build_summary,
    create_interpretation_service,
    normalize_command,
    normalize_parsed,
    preferred_target,
)
from core.models import empty_document
from core.vocabulary import validate_batch
from tools import llm_client


def _llm_reply(payload) -> str:
    return "```json\n" + json.dumps(payload) + "\n```"


class TestNormalization:
    """Backend replies are coerced into the command vocabulary."""

    def test_synonyms_and_camel_case(self):
        command = normalize_command({
            "intent": "Add",
            "target": "Step",
            "location": {"insertAfter": "step-3"},
            "data": {"activity": "Check ladder", "equipmentList": []},
        })
        assert command["intent"] == "insert"
        assert command["target"] == "step"
        assert command["location"] == {"after_step_id": "step-3"}
        assert "equipment_list" in command["data"]
        assert command["explanation"] == "Update requested"

    def test_enum_case(self):
        control = normalize_command({"intent": "update", "target": "control", "data": {"type": "Proposed", "hierarchy": "ppe"}})
        assert control["data"] == {"type": "proposed", "hierarchy": "PPE"}
        action = normalize_command({"intent": "edit", "target": "action", "data": {"status": "in progress"}})
        assert action["data"]["status"] == "IN_PROGRESS"

    def test_clarification_forces_empty_commands(self):
        parsed = normalize_parsed({
            "needsClarification": True,
            "clarificationPrompt": "Which step?",
            "commands": [{"intent": "annotate", "target": "step"}],
        }, "add a note")
        assert parsed["commands"] == []
        assert parsed["needs_clarification"] is True
        assert parsed["clarification_prompt"] == "Which step?"

    def test_summary_defaults(self):
        assert build_summary([], "hello") == 'No updates parsed from "hello"'
        assert build_summary([{"explanation": "Add ladder"}], "x") == "Add ladder"
        assert build_summary([{}, {}], "two things") == '2 updates parsed from "two things"'

    @pytest.mark.parametrize("location, data", [
        ("step 3", {}),
        ({"step_id": "step-3"}, ["ladder"]),
    ])
    def test_malformed_command_is_rejected_by_validation(self, ra_document, location, data):
        parsed = normalize_parsed({
            "commands": [{"intent": "modify", "target": "step", "location": location, "data": data}],
        }, "x")
        assert parsed["commands"][0]["location"] == location
        assert parsed["commands"][0]["data"] == data
        with pytest.raises(CommandValidationError) as exc_info:
            validate_batch(parsed["commands"], ra_document)
        assert "must be objects" in exc_info.value.reason

    def test_malformed_reply_fails_parse(self, ra_document):
        client = Mock()
        client.invoke_with_prompt.return_value = json.dumps({
            "commands": [{"intent": "modify", "target": "step", "location": "step 3", "data": {}}],
        })
        engine = ContextualUpdateEngine(LLMInterpretationService(client=client))
        with pytest.raises(CommandValidationError):
            engine.parse("change step 3", "PROCESS_STEPS", ra_document)
        assert engine.thread.state == "failed"

    @pytest.mark.parametrize("flag, expected", [
        ("false", False),
        ("False", False),
        ("true", True),
        (True, True),
        (0, False),
    ])
    def test_string_booleans(self, flag, expected):
        parsed = normalize_parsed({"needs_clarification": flag, "commands": []}, "x")
        assert parsed["needs_clarification"] is expected

    def test_unexpected_payload(self):
        with pytest.raises(InterpretationError):
            normalize_parsed(["not", "a", "dict"], "x")

    def test_phase_bias(self):
        assert preferred_target("risk_assessment", "CONTROL_DISCUSSION") == "control"
        assert preferred_target("incident", "timeline") == "step"
        # jha has no actions, fall back to hazards
        assert preferred_target("jha", "actions") == "hazard"


class TestLLMInterpretationService:

    def test_fenced_json_reply(self, ra_document):
        client = Mock()
        client.invoke_with_prompt.return_value = _llm_reply({
            "commands": [{
                "intent": "annotate",
                "target": "step",
                "location": {"stepId": "step-3"},
                "data": {"note": "Ladder used"},
                "explanation": "Add ladder note to step 3",
            }],
            "summary": "Add ladder note",
            "needs_clarification": False,
        })
        service = LLMInterpretationService(client=client)

        result = service.interpret("forgot the ladder in step 3", "PROCESS_STEPS", ra_document)

        assert result["commands"][0]["location"] == {"step_id": "step-3"}
        assert result["summary"] == "Add ladder note"
        args, kwargs = client.invoke_with_prompt.call_args
        assert kwargs["temperature"] == 0
        assert "CURRENT PHASE: PROCESS_STEPS" in args[0]
        user_prompt = json.loads(args[1])
        assert user_prompt["user_input"] == "forgot the ladder in step 3"
        assert [step["number"] for step in user_prompt["table_state"]["steps"]] == [1, 2, 3]

    def test_provider_error_is_wrapped(self, ra_document):
        error = anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
        client = Mock()
        client.invoke_with_prompt.side_effect = error

        with pytest.raises(InterpretationError) as exc_info:
            LLMInterpretationService(client=client).interpret("x", "PROCESS_STEPS", ra_document)
        assert str(exc_info.value) == str(error)
        assert exc_info.value.original_error is error

    @pytest.mark.parametrize("reply", ["", "   ", "not json at all"])
    def test_unusable_reply(self, ra_document, reply):
        client = Mock()
        client.invoke_with_prompt.return_value = reply
        with pytest.raises(InterpretationError):
            LLMInterpretationService(client=client).interpret("x", "PROCESS_STEPS", ra_document)

    def test_missing_api_key(self, ra_document, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.setattr(llm_client, "_client", None)
        monkeypatch.setattr(llm_client, "_wrapper", None)
        with pytest.raises(LLMNotAvailableError):
            LLMInterpretationService().interpret("x", "PROCESS_STEPS", ra_document)


class TestRemoteInterpretationService:

    def _service(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return RemoteInterpretationService("https://interpreter.test/parse", client=client)

    def test_posts_instruction_and_snapshot(self, ra_document):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"commands": [], "needs_clarification": True, "clarification_prompt": "Which one?"})

        result = self._service(handler).interpret("slip hazard", "HAZARD_IDENTIFICATION", ra_document)

        assert seen["instruction"] == "slip hazard"
        assert seen["phase"] == "HAZARD_IDENTIFICATION"
        assert seen["case_id"] == "ra-1"
        assert len(seen["snapshot"]["hazards"]) == 3
        assert result["needs_clarification"] is True

    def test_error_field_is_surfaced(self, ra_document):
        service = self._service(lambda request: httpx.Response(429, json={"error": "quota exceeded"}))
        with pytest.raises(InterpretationError, match="quota exceeded"):
            service.interpret("x", "PROCESS_STEPS", ra_document)

    def test_raw_body_is_surfaced(self, ra_document):
        service = self._service(lambda request: httpx.Response(500, text="upstream exploded"))
        with pytest.raises(InterpretationError, match="upstream exploded"):
            service.interpret("x", "PROCESS_STEPS", ra_document)

    def test_transport_error(self, ra_document):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(InterpretationError, match="connection refused"):
            self._service(handler).interpret("x", "PROCESS_STEPS", ra_document)


class TestHeuristicInterpretationService:

    def test_step_mention_becomes_note(self, ra_document):
        result = HeuristicInterpretationService().interpret(
            "forgot to mention we use a ladder in step 3", "PROCESS_STEPS", ra_document
        )
        command = result["commands"][0]
        assert command["intent"] == "annotate"
        assert command["location"] == {"step_id": "step-3"}
        assert command["data"]["note"] == "forgot to mention we use a ladder in step 3"

    def test_clarification_answer_picks_step(self, ra_document):
        instruction = "add a note about the spill\n\nClarification: the one in step 2"
        result = HeuristicInterpretationService().interpret(instruction, "PROCESS_STEPS", ra_document)
        command = result["commands"][0]
        assert command["location"] == {"step_id": "step-2"}
        assert command["data"]["note"] == "add a note about the spill"

    def test_phase_picks_insert_target(self, ra_document):
        result = HeuristicInterpretationService().interpret(
            "Wear face shield during test", "CONTROL_DISCUSSION", ra_document
        )
        command = result["commands"][0]
        assert (command["intent"], command["target"]) == ("insert", "control")
        assert command["location"] == {"hazard_id": "hazard-1"}

    def test_missing_parent_asks(self):
        document = empty_document("blank", "risk_assessment", "Blank")
        result = HeuristicInterpretationService().interpret("Falling objects", "HAZARD_IDENTIFICATION", document)
        assert result["needs_clarification"] is True
        assert result["commands"] == []


class TestServiceFactory:

    def test_heuristic_without_key(self):
        service = create_interpretation_service({"INTERPRETER_BACKEND": "llm", "ANTHROPIC_API_KEY": ""})
        assert isinstance(service, HeuristicInterpretationService)

    def test_llm_with_key(self):
        service = create_interpretation_service({"INTERPRETER_BACKEND": "llm", "ANTHROPIC_API_KEY": "sk-test"})
        assert isinstance(service, LLMInterpretationService)

    def test_remote_requires_url(self):
        with pytest.raises(ValueError):
            create_interpretation_service({"INTERPRETER_BACKEND": "remote"})
        service = create_interpretation_service({"INTERPRETER_BACKEND": "remote", "INTERPRETER_URL": "http://x/parse"})
        assert isinstance(service, RemoteInterpretationService)
