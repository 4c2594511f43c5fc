"""Tests for the case session shell."""

import threading
import time

import pytest

from core.errors import CaseNotFoundError, CommandValidationError, SessionBusyError
from core.session import CaseSession, SessionRegistry


def _annotate(step_id, note):
    return {
        "intent": "annotate",
        "target": "step",
        "location": {"step_id": step_id},
        "data": {"note": note},
        "explanation": f"Note on {step_id}",
    }


@pytest.fixture
def seeded_case(store, ra_document):
    return store.create_case("risk_assessment", "Hose replacement", document=ra_document)


@pytest.fixture
def events():
    return []


@pytest.fixture
def session(store, seeded_case, fake_interpreter, events):
    return CaseSession(
        seeded_case["id"],
        store,
        fake_interpreter,
        emitter=lambda event_type, payload: events.append((event_type, payload)),
    )


class TestCaseSession:

    def test_parse_uses_document_phase(self, session, fake_interpreter):
        fake_interpreter.queue({"commands": [_annotate("step-1", "Chocks")]})
        session.parse_contextual_update("chocks on step 1")
        assert fake_interpreter.calls[0]["phase"] == "CONTROL_DISCUSSION"
        assert fake_interpreter.calls[0]["snapshot"]["id"] == session.case_id

    def test_explicit_phase_wins(self, session, fake_interpreter):
        fake_interpreter.queue({"commands": [_annotate("step-1", "Chocks")]})
        session.parse_contextual_update("chocks on step 1", phase="PROCESS_STEPS")
        assert fake_interpreter.calls[0]["phase"] == "PROCESS_STEPS"

    def test_apply_persists_and_emits(self, session, store, fake_interpreter, events):
        fake_interpreter.queue({"commands": [_annotate("step-1", "Chocks")], "summary": "Chock note"})
        session.parse_contextual_update("chocks on step 1")

        session.apply_contextual_updates()

        stored = store.load_document(session.case_id)
        assert stored["steps"][0]["notes"] == ["Chocks"]
        assert session.last_contextual_update == {"summary": "Chock note", "available": True}
        assert events[-1][0] == "updated"
        assert events[-1][1]["reason"] == "apply"

    def test_apply_explicit_commands(self, session, store):
        session.apply_contextual_updates([_annotate("step-2", "Drain fully")], summary="Drain note")
        assert store.load_document(session.case_id)["steps"][1]["notes"] == ["Drain fully"]

    def test_apply_pending_command(self, session, store, fake_interpreter):
        fake_interpreter.queue({"commands": [_annotate("step-1", "a"), _annotate("step-2", "b")]})
        session.parse_contextual_update("two notes")
        session.apply_pending_command(0)
        assert store.load_document(session.case_id)["steps"][0]["notes"] == ["a"]
        assert len(session.thread_state["commands"]) == 1

    def test_undo_persists(self, session, store, events):
        before = store.load_document(session.case_id)
        session.apply_contextual_updates([_annotate("step-2", "Drain fully")])
        session.undo_last_contextual_update()
        assert store.load_document(session.case_id) == before
        assert session.last_contextual_update["available"] is False
        assert events[-1][1]["reason"] == "undo"

    def test_busy_while_saving(self, session, store, monkeypatch):
        entered = threading.Event()
        release = threading.Event()
        save = store.save_document

        def slow_save(case_id, document):
            entered.set()
            release.wait(5)
            return save(case_id, document)

        monkeypatch.setattr(store, "save_document", slow_save)
        worker = threading.Thread(target=session.apply_contextual_updates, args=([_annotate("step-1", "first")],))
        worker.start()
        try:
            assert entered.wait(5)
            assert session.saving is True
            with pytest.raises(SessionBusyError):
                session.apply_contextual_updates([_annotate("step-2", "second")])
            with pytest.raises(SessionBusyError):
                session.undo_last_contextual_update()
        finally:
            release.set()
            worker.join(5)

        assert session.saving is False
        assert store.load_document(session.case_id)["steps"][0]["notes"] == ["first"]
        assert session.last_contextual_update["available"] is True

    def test_saving_flag_cleared_after_failure(self, session):
        with pytest.raises(CommandValidationError):
            session.apply_contextual_updates([_annotate("missing", "x")])
        assert session.saving is False

    def test_close_discards_late_result(self, session, fake_interpreter):
        def reply(instruction, phase, snapshot):
            session.close()
            return {"commands": [_annotate("step-1", "late")]}

        fake_interpreter.queue(reply)
        assert session.parse_contextual_update("note") is None
        assert session.thread_state["state"] == "idle"

    def test_deleted_case(self, session, store):
        store.delete(session.case_id)
        with pytest.raises(CaseNotFoundError):
            session.parse_contextual_update("anything")


class TestSessionRegistry:

    def test_one_session_per_case(self, store, seeded_case, fake_interpreter):
        registry = SessionRegistry(store, lambda: fake_interpreter)
        assert registry.get(seeded_case["id"]) is registry.get(seeded_case["id"])

    def test_unknown_case(self, store, fake_interpreter):
        registry = SessionRegistry(store, lambda: fake_interpreter)
        with pytest.raises(CaseNotFoundError):
            registry.get("nope")

    def test_close_deactivates(self, store, seeded_case, fake_interpreter):
        registry = SessionRegistry(store, lambda: fake_interpreter, max_clarification_turns=2)
        session = registry.get(seeded_case["id"])
        assert session.engine.thread.max_turns == 2
        registry.close(seeded_case["id"])
        assert session.active is False
        assert registry.get(seeded_case["id"]) is not session

    def test_concurrent_get_opens_one_session(self, store, seeded_case, fake_interpreter, monkeypatch):
        load = store.load

        def slow_load(case_id):
            time.sleep(0.05)
            return load(case_id)

        monkeypatch.setattr(store, "load", slow_load)
        registry = SessionRegistry(store, lambda: fake_interpreter)
        sessions = []
        workers = [
            threading.Thread(target=lambda: sessions.append(registry.get(seeded_case["id"])))
            for _ in range(4)
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(5)

        assert len(sessions) == 4
        assert all(session is sessions[0] for session in sessions)
