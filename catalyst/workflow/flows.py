"""Prefect flows for driving features.

Wraps Coordinator calls in @task/@flow for observability. The Coordinator
stays plain Python; these wrappers only add Prefect run tracking and, for
feature_pipeline, suspension at human pauses via suspend_flow_run.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from prefect import flow, get_run_logger, suspend_flow_run, task
from prefect.cache_policies import NO_CACHE
from pydantic import BaseModel

from catalyst.state.interactions import HumanResponse
from catalyst.workflow.coordinator import MAX_STEPS, PAUSED, Coordinator, EngineContext, StageOutcome

logger = logging.getLogger(__name__)

# How long a suspended flow waits for a human answer
HUMAN_TIMEOUT = 86400 * 7


class HumanResponseInput(BaseModel):
    """Input schema for a suspended feature flow."""
    selected_option: Optional[str] = None
    text: Optional[str] = None
    responded_by: str = "human"

    def to_response(self) -> HumanResponse:
        return HumanResponse(
            selected_option=self.selected_option,
            text=self.text,
            responded_by=self.responded_by,
        )


@task(name="advance_stage", description="Run the feature's current stage once", cache_policy=NO_CACHE)
def advance_stage(coordinator: Coordinator, feature_id: str) -> StageOutcome:
    return coordinator.advance(feature_id)


@task(name="resume_stage", description="Apply a human answer and continue", cache_policy=NO_CACHE)
def resume_stage(coordinator: Coordinator, feature_id: str, response: HumanResponse) -> StageOutcome:
    return coordinator.resume(feature_id, response)


def drive_feature(
    feature_id: str,
    advance: Callable[[str], StageOutcome],
    resume: Callable[[str, HumanResponse], StageOutcome],
    ask_human: Callable[[StageOutcome], HumanResponse] | None = None,
    max_steps: int = MAX_STEPS,
) -> StageOutcome:
    """
    Advance a feature until it blocks.

    With ask_human, paused outcomes are answered through it and the feature
    keeps going; without it the paused outcome is returned.
    """
    outcome = advance(feature_id)
    for _ in range(max_steps):
        if outcome.status == PAUSED and outcome.interaction_id and ask_human is not None:
            outcome = resume(feature_id, ask_human(outcome))
            continue
        if outcome.is_blocked:
            return outcome
        outcome = advance(feature_id)
    logger.warning(f"[coordinator] {feature_id}: stopped after {max_steps} steps in {outcome.stage.value}")
    return outcome


def _outcome_dict(outcome: StageOutcome) -> dict:
    return {
        "feature_id": outcome.feature_id,
        "stage": outcome.stage.value,
        "status": outcome.status,
        "interaction_id": outcome.interaction_id,
        "reason": outcome.reason,
    }


@flow(name="feature-pipeline", retries=0)
def feature_pipeline(
    repo: str,
    feature_id: str,
    state_dir: Optional[str] = None,
    wait_for_human: bool = True,
) -> dict:
    """Drive one feature to a terminal stage, suspending at human pauses.

    Args:
        repo: Path to the project repository
        feature_id: Feature to drive
        state_dir: State directory (defaults to <repo>/.catalyst)
        wait_for_human: Suspend the flow run at pauses instead of returning

    Returns:
        Dict with feature_id, stage, status, interaction_id and reason
    """
    log = get_run_logger()
    coordinator = Coordinator(EngineContext.create(Path(repo), Path(state_dir) if state_dir else None))

    def ask_human(outcome: StageOutcome) -> HumanResponse:
        log.info(f"Suspending for {outcome.interaction_id}: {outcome.reason}")
        human_input: HumanResponseInput = suspend_flow_run(
            wait_for_input=HumanResponseInput,
            timeout=HUMAN_TIMEOUT,
        )
        log.info(f"Resumed with {human_input.selected_option or human_input.text}")
        return human_input.to_response()

    outcome = drive_feature(
        feature_id,
        lambda fid: advance_stage(coordinator, fid),
        lambda fid, response: resume_stage(coordinator, fid, response),
        ask_human if wait_for_human else None,
    )
    log.info(f"{feature_id}: {outcome.status} in {outcome.stage.value}")
    return _outcome_dict(outcome)


@task(name="run_features", description="Drive features concurrently until each blocks", cache_policy=NO_CACHE)
def run_features_task(coordinator: Coordinator, feature_ids: list[str]) -> dict[str, StageOutcome]:
    return coordinator.run_features(feature_ids)


@flow(name="features-pipeline", retries=0)
def features_pipeline(repo: str, feature_ids: list[str], state_dir: Optional[str] = None) -> dict:
    """Drive several features concurrently until each pauses or terminates."""
    log = get_run_logger()
    coordinator = Coordinator(EngineContext.create(Path(repo), Path(state_dir) if state_dir else None))
    outcomes = run_features_task(coordinator, feature_ids)
    for feature_id, outcome in outcomes.items():
        log.info(f"{feature_id}: {outcome.status} in {outcome.stage.value}")
    return {feature_id: _outcome_dict(outcome) for feature_id, outcome in outcomes.items()}
