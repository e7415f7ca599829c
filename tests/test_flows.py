"""Tests for the Prefect flow wrappers around the Coordinator."""

from unittest.mock import MagicMock

from catalyst.state.interactions import HumanResponse
from catalyst.workflow.coordinator import ADVANCED, COMPLETE, PAUSED, RETRYING, StageOutcome
from catalyst.workflow.flows import HumanResponseInput, advance_stage, drive_feature, resume_stage
from catalyst.workflow.pipeline import PipelineStage


def scripted(outcomes):
    """An advance callable returning the given outcomes in order."""
    calls = []

    def advance(feature_id):
        calls.append(feature_id)
        return outcomes[len(calls) - 1]

    advance.calls = calls
    return advance


class TestDriveFeature:
    """drive_feature loop."""

    def test_advances_until_terminal(self):
        advance = scripted([
            StageOutcome("f-1", PipelineStage.RESEARCHING, ADVANCED),
            StageOutcome("f-1", PipelineStage.BUILDING, RETRYING),
            StageOutcome("f-1", PipelineStage.COMPLETE, COMPLETE),
        ])
        outcome = drive_feature("f-1", advance, resume=MagicMock())
        assert outcome.status == COMPLETE
        assert len(advance.calls) == 3

    def test_returns_pause_without_human(self):
        paused = StageOutcome("f-1", PipelineStage.ARCHITECTING, PAUSED, interaction_id="INT-001")
        resume = MagicMock()
        outcome = drive_feature("f-1", scripted([paused]), resume)
        assert outcome is paused
        resume.assert_not_called()

    def test_answers_pauses_through_ask_human(self):
        paused = StageOutcome("f-1", PipelineStage.ARCHITECTING, PAUSED, interaction_id="INT-001")
        advance = scripted([paused, StageOutcome("f-1", PipelineStage.COMPLETE, COMPLETE)])
        resume = MagicMock(return_value=StageOutcome("f-1", PipelineStage.CRITIQUING, ADVANCED))
        answer = HumanResponse(selected_option="Approve")

        outcome = drive_feature("f-1", advance, resume, ask_human=lambda o: answer)
        assert outcome.status == COMPLETE
        resume.assert_called_once_with("f-1", answer)

    def test_step_limit(self):
        advance = MagicMock(return_value=StageOutcome("f-1", PipelineStage.BUILDING, RETRYING))
        outcome = drive_feature("f-1", advance, MagicMock(), max_steps=5)
        assert outcome.status == RETRYING
        assert advance.call_count == 6


class TestTasks:
    """Task bodies call straight through to the Coordinator."""

    def test_advance_stage(self):
        coordinator = MagicMock()
        advance_stage.fn(coordinator, "f-1")
        coordinator.advance.assert_called_once_with("f-1")

    def test_resume_stage(self):
        coordinator = MagicMock()
        response = HumanResponse(selected_option="Resolved")
        resume_stage.fn(coordinator, "f-1", response)
        coordinator.resume.assert_called_once_with("f-1", response)


class TestHumanResponseInput:
    """Suspended-flow input."""

    def test_to_response(self):
        response = HumanResponseInput(selected_option="Reject", text="use argon2", responded_by="alice").to_response()
        assert response == HumanResponse(selected_option="Reject", text="use argon2", responded_by="alice")
        assert response.choice == "reject"

    def test_defaults(self):
        assert HumanResponseInput().to_response().responded_by == "human"
