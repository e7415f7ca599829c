"""Tests for human interaction records."""

import json

import pytest

from catalyst.lib.errors import CorruptState, InteractionNotFound
from catalyst.lib.validate import ValidationError
from catalyst.state.interactions import DECISION_OPTIONS, HumanResponse


class TestAdd:
    """Recording questions."""

    def test_add_assigns_sequential_ids(self, store):
        first = store.interactions.add("f-1", "blocker", "Which database?", kind="input")
        second = store.interactions.add("f-1", "architect_approval", "Approve D-1?")
        assert (first.id, second.id) == ("INT-001", "INT-002")
        assert second.options == DECISION_OPTIONS

    def test_ids_are_per_feature(self, store):
        store.interactions.add("f-1", "blocker", "q")
        assert store.interactions.add("f-2", "blocker", "q").id == "INT-001"

    def test_pending_returns_oldest(self, store):
        store.interactions.add("f-1", "blocker", "first")
        store.interactions.add("f-1", "blocker", "second")
        assert store.interactions.pending("f-1").title == "first"

    def test_nothing_pending(self, store):
        assert store.interactions.pending("f-1") is None

    def test_unknown_reason_is_refused(self, store):
        with pytest.raises(ValidationError):
            store.interactions.add("f-1", "coffee", "q")
        assert store.interactions.all("f-1") == []


class TestAnswer:
    """Answering questions."""

    def test_answer_appends_revision(self, store):
        interaction = store.interactions.add("f-1", "blocker", "Which database?", payload={"unknown_id": "U-1"})
        store.interactions.answer("f-1", interaction.id, HumanResponse(text="Postgres", responded_by="ana"))

        current = store.interactions.get("f-1", interaction.id)
        assert current.status == "responded"
        assert current.response.text == "Postgres"
        assert current.payload == {"unknown_id": "U-1"}
        assert store.interactions.pending("f-1") is None
        assert len(store.interactions.revisions("f-1")) == 2

    def test_answer_twice_is_refused(self, store):
        interaction = store.interactions.add("f-1", "blocker", "q")
        store.interactions.answer("f-1", interaction.id, HumanResponse(text="a"))
        with pytest.raises(InteractionNotFound):
            store.interactions.answer("f-1", interaction.id, HumanResponse(text="b"))

    def test_unknown_interaction(self, store):
        with pytest.raises(InteractionNotFound):
            store.interactions.get("f-1", "INT-999")

    def test_choice_is_normalized(self):
        assert HumanResponse(selected_option=" Approve ").choice == "approve"
        assert HumanResponse(text="free text").choice == ""


class TestLogIntegrity:
    """The JSONL log is validated on read."""

    def test_corrupt_line(self, store):
        store.interactions.add("f-1", "blocker", "q")
        path = store.interactions.dir / "f-1.jsonl"
        with open(path, "a") as f:
            f.write("{broken\n")
        with pytest.raises(CorruptState):
            store.interactions.all("f-1")

    def test_schema_violation(self, store):
        path = store.interactions.dir / "f-1.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"id": "bad"}) + "\n")
        with pytest.raises(CorruptState):
            store.interactions.pending("f-1")
