"""Feature pipeline state machine using the transitions library.

Stage order:
    unknowns_parsing -> researching -> architecting -> critiquing -> atomizing
    -> task_generation -> building -> testing -> merging -> complete

with `failed` reachable from every non-terminal stage, a critic loop back to
architecting bounded by max_rejections, in-place retries for building and
testing, and a merge_conflicts resolution sub-stage that re-enters merging.

The machine holds no I/O: it is built from a feature record, fed a trigger
plus the persisted artifacts, and written back by the caller. The same
(state, trigger, artifacts) always yields the same next state.

Usage:
    pipeline = Pipeline.from_feature(feature, config)
    if pipeline.fire("advance", artifacts):
        pipeline.apply_to(feature)
"""

import logging
from enum import Enum
from typing import Callable

from transitions import Machine, MachineError

from catalyst.lib.errors import RejectionLoopExceeded

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    UNKNOWNS_PARSING = "unknowns_parsing"
    RESEARCHING = "researching"
    ARCHITECTING = "architecting"
    CRITIQUING = "critiquing"
    ATOMIZING = "atomizing"
    TASK_GENERATION = "task_generation"
    BUILDING = "building"
    TESTING = "testing"
    MERGING = "merging"
    MERGE_CONFLICTS = "merge_conflicts"
    COMPLETE = "complete"
    FAILED = "failed"


STAGE_ORDER = [
    PipelineStage.UNKNOWNS_PARSING,
    PipelineStage.RESEARCHING,
    PipelineStage.ARCHITECTING,
    PipelineStage.CRITIQUING,
    PipelineStage.ATOMIZING,
    PipelineStage.TASK_GENERATION,
    PipelineStage.BUILDING,
    PipelineStage.TESTING,
    PipelineStage.MERGING,
    PipelineStage.COMPLETE,
]

PLANNING_STAGES = frozenset(STAGE_ORDER[:6])
TERMINAL_STAGES = frozenset({PipelineStage.COMPLETE, PipelineStage.FAILED})
NON_TERMINAL = [s.value for s in PipelineStage if s not in TERMINAL_STAGES]

STATES = [s.value for s in PipelineStage]


def _blockers_resolved(artifacts: dict) -> bool:
    return all(
        a.get("resolved") for a in artifacts.get("ambiguities") or []
        if a.get("criticality") == "blocker"
    )


def _decision_approved(artifacts: dict) -> bool:
    return (artifacts.get("decision") or {}).get("status") == "approved"


def _passed(report) -> bool:
    return isinstance(report, dict) and report.get("passed") is True


# What each stage must have produced before `advance` may leave it
ARTIFACT_CHECKS: dict[PipelineStage, Callable[[dict], bool]] = {
    PipelineStage.UNKNOWNS_PARSING: lambda a: isinstance(a.get("ambiguities"), list),
    PipelineStage.RESEARCHING: lambda a: isinstance(a.get("research"), dict),
    PipelineStage.ARCHITECTING: lambda a: bool((a.get("decision") or {}).get("chosen_option")),
    PipelineStage.CRITIQUING: lambda a: (a.get("verdict") or {}).get("approved") is True
    and _decision_approved(a),
    PipelineStage.ATOMIZING: lambda a: bool(a.get("missions")) and _decision_approved(a),
    PipelineStage.TASK_GENERATION: lambda a: bool(a.get("tasks"))
    and {m["id"] for m in a.get("missions") or []} <= set(a["tasks"]),
    PipelineStage.BUILDING: lambda a: _passed(a.get("build_report")),
    PipelineStage.TESTING: lambda a: _passed(a.get("test_report")),
    PipelineStage.MERGING: lambda a: (a.get("merge_result") or {}).get("status") == "merged",
}


def _advance(source: PipelineStage, dest: PipelineStage) -> dict:
    return {
        "trigger": "advance",
        "source": source.value,
        "dest": dest.value,
        "conditions": "artifact_ready",
        "after": "_reset_retries",
    }


TRANSITIONS = [
    _advance(src, dst) for src, dst in zip(STAGE_ORDER, STAGE_ORDER[1:])
] + [
    # Critic loop; the (max_rejections + 1)-th rejection fails the feature
    {"trigger": "critic_reject", "source": "critiquing", "dest": "architecting",
     "conditions": "has_rejection_budget", "before": "_count_rejection"},
    {"trigger": "critic_reject", "source": "critiquing", "dest": "failed",
     "unless": "has_rejection_budget", "before": "_rejection_loop_exceeded"},

    # Build/test failures retry in place
    {"trigger": "retry", "source": ["building", "testing"], "dest": "=",
     "conditions": "has_retry_budget", "before": "_count_retry"},
    {"trigger": "retry", "source": ["building", "testing"], "dest": "failed",
     "unless": "has_retry_budget", "before": "_retries_exhausted"},

    # Conflict resolution sub-stage
    {"trigger": "merge_conflict", "source": "merging", "dest": "merge_conflicts",
     "conditions": "has_merge_budget", "before": "_count_merge_attempt"},
    {"trigger": "merge_conflict", "source": "merging", "dest": "failed",
     "unless": "has_merge_budget", "before": "_merge_budget_exhausted"},
    {"trigger": "retry_merge", "source": "merge_conflicts", "dest": "merging"},

    {"trigger": "fail", "source": NON_TERMINAL, "dest": "failed", "before": "_record_failure"},
]


class Pipeline:
    """State machine for one feature's stage progression.

    Counters live on the model so the machine's guards can bound the critic
    loop, build/test retries and merge attempts.
    """

    def __init__(
        self,
        feature_id: str,
        stage: str | PipelineStage = PipelineStage.UNKNOWNS_PARSING,
        rejection_count: int = 0,
        retry_count: int = 0,
        merge_attempts: int = 0,
        max_rejections: int = 3,
        max_build_attempts: int = 3,
        max_merge_attempts: int = 3,
    ):
        self.feature_id = feature_id
        self.rejection_count = rejection_count
        self.retry_count = retry_count
        self.merge_attempts = merge_attempts
        self.max_rejections = max_rejections
        self.max_build_attempts = max_build_attempts
        self.max_merge_attempts = max_merge_attempts
        self.failure_reason: str | None = None
        self.transitions_log: list[tuple[str, str, str]] = []

        initial = PipelineStage(stage).value
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    @classmethod
    def from_feature(cls, feature, config) -> "Pipeline":
        """Build from a feature record and an EngineConfig."""
        return cls(
            feature.id,
            feature.stage,
            rejection_count=feature.rejection_count,
            retry_count=feature.retry_count,
            merge_attempts=feature.merge_attempts,
            max_rejections=config.max_rejections,
            max_build_attempts=config.max_build_attempts,
            max_merge_attempts=config.max_merge_attempts,
        )

    @property
    def stage(self) -> PipelineStage:
        return PipelineStage(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def fire(self, trigger: str, artifacts: dict | None = None, reason: str | None = None) -> bool:
        """Attempt a transition. Returns False if the trigger is invalid here or a guard refused it."""
        try:
            return self.trigger(trigger, artifacts=artifacts or {}, reason=reason)
        except MachineError as e:
            logger.debug(f"[pipeline] {self.feature_id}: {trigger} not allowed from {self.state}: {e}")
            return False

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state (guards not evaluated)."""
        return trigger in self.machine.get_triggers(self.state)

    def apply_to(self, feature) -> None:
        """Copy stage, counters, failure reason and transition history onto a feature record."""
        feature.stage = self.state
        feature.rejection_count = self.rejection_count
        feature.retry_count = self.retry_count
        feature.merge_attempts = self.merge_attempts
        if self.failure_reason:
            feature.failure_reason = self.failure_reason
        for from_stage, to_stage, trigger in self.transitions_log:
            feature.record_transition(from_stage, to_stage, trigger)
        self.transitions_log.clear()

    # Guards

    def artifact_ready(self, event) -> bool:
        stage = PipelineStage(event.transition.source)
        artifacts = event.kwargs.get("artifacts") or {}
        if not ARTIFACT_CHECKS[stage](artifacts):
            return False
        if stage in PLANNING_STAGES and not _blockers_resolved(artifacts):
            return False
        return True

    def has_rejection_budget(self, event) -> bool:
        return self.rejection_count < self.max_rejections

    def has_retry_budget(self, event) -> bool:
        return self.retry_count + 1 < self.max_build_attempts

    def has_merge_budget(self, event) -> bool:
        return self.merge_attempts < self.max_merge_attempts

    # Callbacks

    def _count_rejection(self, event) -> None:
        self.rejection_count += 1

    def _rejection_loop_exceeded(self, event) -> None:
        error = RejectionLoopExceeded(self.feature_id, self.rejection_count + 1, self.max_rejections)
        self.failure_reason = error.reason()

    def _count_retry(self, event) -> None:
        self.retry_count += 1

    def _retries_exhausted(self, event) -> None:
        self.retry_count += 1
        detail = event.kwargs.get("reason") or f"{event.transition.source} failed"
        self.failure_reason = f"{detail} (attempt {self.retry_count} of {self.max_build_attempts})"

    def _count_merge_attempt(self, event) -> None:
        self.merge_attempts += 1

    def _merge_budget_exhausted(self, event) -> None:
        detail = event.kwargs.get("reason") or "MergeConflict"
        self.failure_reason = f"{detail} (merge retry budget of {self.max_merge_attempts} exhausted)"

    def _record_failure(self, event) -> None:
        self.failure_reason = event.kwargs.get("reason") or f"failed in {event.transition.source}"

    def _reset_retries(self, event) -> None:
        self.retry_count = 0

    def on_state_change(self, event) -> None:
        """Callback after any state transition."""
        from_state = event.transition.source
        to_state = event.transition.dest if event.transition.dest else from_state
        trigger = event.event.name

        logger.info(f"[pipeline] {self.feature_id}: {from_state} -> {to_state} ({trigger})")
        self.transitions_log.append((from_state, to_state, trigger))


def next_stage(
    stage: str | PipelineStage,
    trigger: str,
    artifacts: dict | None = None,
    **counters,
) -> PipelineStage:
    """Pure preview: the stage a trigger would lead to, without touching any record."""
    pipeline = Pipeline("preview", stage, **counters)
    pipeline.fire(trigger, artifacts)
    return pipeline.stage
