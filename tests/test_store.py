"""Tests for the file-backed case store and demo seeds."""

import pytest

from core.demo_seed import build_demo_document
from core.models import DOCUMENT_KINDS


class TestCaseStore:

    def test_create_empty_case(self, store):
        record = store.create_case("jha", "Roof inspection")
        document = record["document"]
        assert document["id"] == record["id"]
        assert document["phase"] == "steps"
        assert document["steps"] == []
        assert store.list_cases()[0]["title"] == "Roof inspection"

    def test_rejects_unknown_kind_and_phase(self, store):
        with pytest.raises(ValueError):
            store.create_case("audit", "Nope")
        with pytest.raises(ValueError):
            store.create_case("incident", "Nope", phase="CONTROL_DISCUSSION")

    def test_create_normalizes_document(self, store, ra_document):
        ra_document["steps"][0]["order_index"] = 7
        record = store.create_case("risk_assessment", "Hose", document=ra_document)
        steps = record["document"]["steps"]
        assert [step["order_index"] for step in steps] == [0, 1, 2]
        assert steps[-1]["id"] == "step-1"

    def test_save_and_load(self, store):
        record = store.create_case("incident", "Near miss")
        document = record["document"]
        document["title"] = "Near miss in aisle 4"
        store.save_document(record["id"], document)
        assert store.load_document(record["id"])["title"] == "Near miss in aisle 4"
        assert store.list_cases()[0]["title"] == "Near miss in aisle 4"

    def test_save_unknown_case(self, store, ra_document):
        with pytest.raises(KeyError):
            store.save_document("missing", ra_document)

    def test_delete(self, store):
        record = store.create_case("jha", "Temp")
        assert store.delete(record["id"]) is True
        assert store.load(record["id"]) is None
        assert store.list_cases() == []
        assert store.delete(record["id"]) is False


class TestDemoSeed:

    @pytest.mark.parametrize("kind", DOCUMENT_KINDS)
    def test_demo_is_contiguous(self, kind):
        document = build_demo_document(kind)
        for collection in ("steps", "hazards", "actions"):
            assert [item["order_index"] for item in document[collection]] == list(range(len(document[collection])))

    def test_jha_demo_has_no_actions(self):
        assert build_demo_document("jha")["actions"] == []

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            build_demo_document("audit")
