"""Tests for the feature pipeline state machine."""

from types import SimpleNamespace

import pytest

from catalyst.lib.config import EngineConfig
from catalyst.state.features import Feature
from catalyst.workflow.pipeline import (
    Pipeline,
    PipelineStage,
    STAGE_ORDER,
    TERMINAL_STAGES,
    next_stage,
)

APPROVED = {"id": "D-1", "chosen_option": "SQLite", "status": "approved"}


def planning_artifacts(**overrides):
    artifacts = {
        "ambiguities": [],
        "research": {},
        "decision": dict(APPROVED),
        "verdict": {"approved": True},
        "missions": [{"id": "M-1"}, {"id": "M-2"}],
        "tasks": {"M-1": "do one", "M-2": "do two"},
        "build_report": {"passed": True},
        "test_report": {"passed": True},
        "merge_result": {"status": "merged"},
    }
    artifacts.update(overrides)
    return artifacts


class TestHappyPath:
    """Forward progression with complete artifacts."""

    def test_walks_every_stage_to_complete(self):
        pipeline = Pipeline("f-1")
        visited = [pipeline.stage]
        while not pipeline.is_terminal:
            assert pipeline.fire("advance", planning_artifacts())
            visited.append(pipeline.stage)
        assert visited == STAGE_ORDER

    def test_transitions_are_logged(self):
        pipeline = Pipeline("f-1")
        pipeline.fire("advance", planning_artifacts())
        assert pipeline.transitions_log == [("unknowns_parsing", "researching", "advance")]

    def test_apply_to_copies_state_and_history(self):
        feature = Feature(id="f-1", title="t", stage="unknowns_parsing")
        pipeline = Pipeline.from_feature(feature, EngineConfig())
        pipeline.fire("advance", planning_artifacts())
        pipeline.apply_to(feature)
        assert feature.stage == "researching"
        assert feature.history[-1]["trigger"] == "advance"
        assert pipeline.transitions_log == []


class TestArtifactGuards:
    """advance refuses to leave a stage whose output is missing."""

    @pytest.mark.parametrize("stage,missing", [
        (PipelineStage.UNKNOWNS_PARSING, "ambiguities"),
        (PipelineStage.RESEARCHING, "research"),
        (PipelineStage.ARCHITECTING, "decision"),
        (PipelineStage.ATOMIZING, "missions"),
        (PipelineStage.BUILDING, "build_report"),
        (PipelineStage.TESTING, "test_report"),
        (PipelineStage.MERGING, "merge_result"),
    ])
    def test_missing_artifact_blocks_advance(self, stage, missing):
        artifacts = planning_artifacts()
        del artifacts[missing]
        pipeline = Pipeline("f-1", stage)
        assert pipeline.fire("advance", artifacts) is False
        assert pipeline.stage == stage

    def test_unresolved_blocker_holds_planning(self):
        artifacts = planning_artifacts(ambiguities=[
            {"id": "U-1", "criticality": "blocker", "resolved": False},
        ])
        assert next_stage("unknowns_parsing", "advance", artifacts) == PipelineStage.UNKNOWNS_PARSING
        assert next_stage("architecting", "advance", artifacts) == PipelineStage.ARCHITECTING

    def test_unresolved_low_ambiguity_does_not_block(self):
        artifacts = planning_artifacts(ambiguities=[
            {"id": "U-1", "criticality": "low", "resolved": False},
        ])
        assert next_stage("unknowns_parsing", "advance", artifacts) == PipelineStage.RESEARCHING

    def test_critiquing_needs_approved_decision(self):
        artifacts = planning_artifacts(decision={**APPROVED, "status": "proposed"})
        assert next_stage("critiquing", "advance", artifacts) == PipelineStage.CRITIQUING

    def test_task_generation_needs_a_task_per_mission(self):
        artifacts = planning_artifacts(tasks={"M-1": "only one"})
        assert next_stage("task_generation", "advance", artifacts) == PipelineStage.TASK_GENERATION

    def test_failed_build_report_blocks(self):
        artifacts = planning_artifacts(build_report={"passed": False})
        assert next_stage("building", "advance", artifacts) == PipelineStage.BUILDING

    def test_conflicted_merge_blocks(self):
        artifacts = planning_artifacts(merge_result={"status": "conflicts"})
        assert next_stage("merging", "advance", artifacts) == PipelineStage.MERGING


class TestCriticLoop:
    """critic_reject loops back until the budget is spent."""

    def test_reject_returns_to_architecting(self):
        pipeline = Pipeline("f-1", "critiquing", max_rejections=3)
        assert pipeline.fire("critic_reject")
        assert pipeline.stage == PipelineStage.ARCHITECTING
        assert pipeline.rejection_count == 1

    def test_rejection_beyond_max_fails(self):
        pipeline = Pipeline("f-1", "critiquing", rejection_count=3, max_rejections=3)
        assert pipeline.fire("critic_reject")
        assert pipeline.stage == PipelineStage.FAILED
        assert "RejectionLoopExceeded" in pipeline.failure_reason
        assert "4 times" in pipeline.failure_reason

    def test_max_rejections_allowed_exactly(self):
        pipeline = Pipeline("f-1", "critiquing", max_rejections=2)
        for _ in range(2):
            assert pipeline.fire("critic_reject")
            assert pipeline.stage == PipelineStage.ARCHITECTING
            pipeline.fire("advance", planning_artifacts(decision={**APPROVED, "status": "proposed"}))
            assert pipeline.stage == PipelineStage.CRITIQUING
        pipeline.fire("critic_reject")
        assert pipeline.stage == PipelineStage.FAILED

    def test_reject_not_valid_outside_critiquing(self):
        pipeline = Pipeline("f-1", "architecting")
        assert pipeline.fire("critic_reject") is False
        assert pipeline.stage == PipelineStage.ARCHITECTING


class TestRetries:
    """Build and test retries are bounded by max_build_attempts."""

    def test_retry_stays_in_building(self):
        pipeline = Pipeline("f-1", "building", max_build_attempts=3)
        assert pipeline.fire("retry", reason="compile error")
        assert pipeline.stage == PipelineStage.BUILDING
        assert pipeline.retry_count == 1

    def test_last_attempt_fails(self):
        pipeline = Pipeline("f-1", "testing", retry_count=2, max_build_attempts=3)
        assert pipeline.fire("retry", reason="TestFailure: 1 failed")
        assert pipeline.stage == PipelineStage.FAILED
        assert pipeline.failure_reason == "TestFailure: 1 failed (attempt 3 of 3)"

    def test_advance_resets_retry_count(self):
        pipeline = Pipeline("f-1", "building", retry_count=2)
        pipeline.fire("advance", planning_artifacts())
        assert pipeline.stage == PipelineStage.TESTING
        assert pipeline.retry_count == 0

    def test_retry_not_valid_in_planning(self):
        assert next_stage("architecting", "retry") == PipelineStage.ARCHITECTING


class TestMergeConflicts:
    """merge_conflicts sub-stage and its budget."""

    def test_conflict_enters_resolution(self):
        pipeline = Pipeline("f-1", "merging")
        assert pipeline.fire("merge_conflict")
        assert pipeline.stage == PipelineStage.MERGE_CONFLICTS
        assert pipeline.merge_attempts == 1

    def test_retry_merge_returns_to_merging(self):
        assert next_stage("merge_conflicts", "retry_merge") == PipelineStage.MERGING

    def test_budget_exhausted_fails(self):
        pipeline = Pipeline("f-1", "merging", merge_attempts=3, max_merge_attempts=3)
        pipeline.fire("merge_conflict", reason="MergeConflict: 1 region")
        assert pipeline.stage == PipelineStage.FAILED
        assert "budget of 3 exhausted" in pipeline.failure_reason


class TestFail:
    """fail is reachable from every non-terminal stage and nowhere else."""

    @pytest.mark.parametrize("stage", [s for s in PipelineStage if s not in TERMINAL_STAGES])
    def test_fail_from_any_active_stage(self, stage):
        pipeline = Pipeline("f-1", stage)
        assert pipeline.fire("fail", reason="AgentFailure: boom")
        assert pipeline.stage == PipelineStage.FAILED
        assert pipeline.failure_reason == "AgentFailure: boom"

    @pytest.mark.parametrize("stage", sorted(TERMINAL_STAGES))
    def test_terminal_stages_accept_nothing(self, stage):
        pipeline = Pipeline("f-1", stage)
        for trigger in ("advance", "fail", "retry", "critic_reject", "merge_conflict", "retry_merge"):
            assert pipeline.fire(trigger, planning_artifacts()) is False
        assert pipeline.stage == stage

    def test_can_lists_available_triggers(self):
        pipeline = Pipeline("f-1", "merging")
        assert pipeline.can("merge_conflict")
        assert not pipeline.can("retry")


class TestDeterminism:
    """Same (stage, trigger, artifacts) always yields the same stage."""

    def test_next_stage_is_pure(self):
        artifacts = planning_artifacts()
        results = {next_stage("atomizing", "advance", artifacts) for _ in range(5)}
        assert results == {PipelineStage.TASK_GENERATION}

    def test_from_feature_uses_config_limits(self):
        feature = SimpleNamespace(id="f-1", stage="critiquing", rejection_count=1, retry_count=0, merge_attempts=0)
        pipeline = Pipeline.from_feature(feature, EngineConfig(max_rejections=1))
        pipeline.fire("critic_reject")
        assert pipeline.stage == PipelineStage.FAILED
