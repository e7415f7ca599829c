"""Coordinator: drives features through the pipeline.

One `advance` call runs the agent bound to the feature's current stage,
persists its output as an artifact, fires the pipeline trigger and writes
the new stage back before anything else happens. Artifacts are the source of
truth: a stage whose artifact already exists is not re-run, so a restarted
process picks up exactly where the last persisted transition left it.

Human-in-the-loop pauses are PendingInteraction records. While one is
pending `advance` returns a paused outcome and `resume` applies the answer.
"""

import concurrent.futures
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from catalyst.lib.agents_config import load_agents_config
from catalyst.lib.commands import run_command
from catalyst.lib.config import EngineConfig, default_state_dir
from catalyst.lib.diagnostics import parse_output, summarize
from catalyst.lib.errors import (
    AgentFailure,
    BuildFailure,
    CatalystError,
    CorruptState,
    InteractionNotFound,
    InvalidGoal,
    InvariantViolation,
    MergeConflict,
    TestFailure,
)
from catalyst.state.features import Feature
from catalyst.state.interactions import HumanResponse, PendingInteraction
from catalyst.state.store import StateStore
from catalyst.workflow.agents import (
    AGENT_NAMES,
    Ambiguity,
    Decision,
    StageAgents,
    StageInput,
    TestReport,
    build_command_agents,
    coerce_output,
    stamp_decision,
)
from catalyst.workflow.dispatch import DispatchBridge, TaskOutcome
from catalyst.workflow.events import EventBus, EventKind
from catalyst.workflow.pipeline import Pipeline, PipelineStage, TERMINAL_STAGES
from catalyst.workflow.reconcile import MERGED, ConflictRegion, MergeResult
from catalyst.workflow.workspace import STATUS_MERGED, WorkspaceManager

logger = logging.getLogger(__name__)

ADVANCED = "advanced"
PAUSED = "paused"
RETRYING = "retrying"
COMPLETE = "complete"
FAILED = "failed"
ERROR = "error"

# Artifacts the pipeline guards read
ARTIFACT_NAMES = (
    "ambiguities",
    "research",
    "decision",
    "verdict",
    "missions",
    "tasks",
    "build_report",
    "test_report",
    "merge_result",
)

# Safety limit for run_until_blocked; every loop in the pipeline is bounded well below this
MAX_STEPS = 200

BLOCKER_OPTIONS = ["Answer", "Abort"]
CRITIC_OVERRIDE_OPTIONS = ["Confirm", "Override", "Abort"]
CONFLICT_OPTIONS = ["Resolved", "Abort"]
CONFLICT_OPTIONS_WITH_HINT = ["Accept", "Resolved", "Abort"]


@dataclass
class StageOutcome:
    """Result of one advance/resume call."""
    feature_id: str
    stage: PipelineStage
    status: str  # advanced, paused, retrying, complete, failed, error
    interaction_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_blocked(self) -> bool:
        return self.status not in (ADVANCED, RETRYING)


@dataclass
class EngineContext:
    """Everything one Coordinator works against. Created per Coordinator, never global."""
    repo: Path
    state_dir: Path
    store: StateStore
    config: EngineConfig
    workspaces: WorkspaceManager
    bus: EventBus
    dispatch: DispatchBridge
    agents: StageAgents

    @classmethod
    def create(
        cls,
        repo: Path,
        state_dir: Path | None = None,
        agents: StageAgents | None = None,
        bus: EventBus | None = None,
    ) -> "EngineContext":
        repo = Path(repo).resolve()
        state_dir = Path(state_dir) if state_dir else default_state_dir(repo)
        store = StateStore(state_dir)
        store.ensure_layout()
        config = store.engine_config()
        if agents is None:
            agents = build_command_agents(load_agents_config(state_dir), config.agent_timeout)
        return cls(
            repo=repo,
            state_dir=state_dir,
            store=store,
            config=config,
            workspaces=WorkspaceManager(repo, state_dir, config.mainline_branch),
            bus=bus or EventBus(state_dir / "events"),
            dispatch=DispatchBridge(max_workers=config.max_research_workers, timeout=config.research_timeout),
            agents=agents,
        )


class Coordinator:
    """Top-level driver for features."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self.store = ctx.store
        self.config = ctx.config
        self.bus = ctx.bus
        self.workspaces = ctx.workspaces
        # feature id -> timed-out workspace agent call whose thread may still be running
        self._abandoned: dict[str, concurrent.futures.Future] = {}
        self._handlers: dict[PipelineStage, Callable[[Feature], StageOutcome]] = {
            PipelineStage.UNKNOWNS_PARSING: self._parse_unknowns,
            PipelineStage.RESEARCHING: self._research,
            PipelineStage.ARCHITECTING: self._architect,
            PipelineStage.CRITIQUING: self._critique,
            PipelineStage.ATOMIZING: self._atomize,
            PipelineStage.TASK_GENERATION: self._generate_tasks,
            PipelineStage.BUILDING: self._build,
            PipelineStage.TESTING: self._test,
            PipelineStage.MERGING: self._merge,
            PipelineStage.MERGE_CONFLICTS: self._resolve_conflicts,
        }

    # Public API

    def start(self, goal: str, title: str | None = None) -> str:
        """
        Register a new feature in unknowns_parsing.

        Raises:
            InvalidGoal: goal is empty
        """
        goal = (goal or "").strip()
        if not goal:
            raise InvalidGoal("Goal must not be empty")
        title = (title or goal.splitlines()[0])[:80].strip()

        feature = self.store.features.create(title, goal, PipelineStage.UNKNOWNS_PARSING.value)
        self.store.fragments.append("features", f"- **{feature.id}**: {title}")
        self.bus.publish(
            EventKind.PIPELINE_STARTED, "coordinator", feature.id,
            {"title": title, "mode": self.config.mode.value},
        )
        logger.info(f"[coordinator] {feature.id}: started ({title})")
        return feature.id

    def advance(self, feature_id: str) -> StageOutcome:
        """Run the current stage once and persist the resulting transition."""
        feature = self.store.features.load(feature_id)
        stage = PipelineStage(feature.stage)
        if stage in TERMINAL_STAGES:
            return self._terminal_outcome(feature)

        pending = self.store.interactions.pending(feature_id)
        if pending:
            return self._paused(feature, pending)

        logger.debug(f"[coordinator] {feature_id}: advancing {stage.value}")
        return self._handlers[stage](feature)

    def resume(self, feature_id: str, response: HumanResponse) -> StageOutcome:
        """
        Answer the oldest pending interaction and continue.

        Raises:
            InteractionNotFound: nothing is pending for this feature
        """
        interaction = self.store.interactions.pending(feature_id)
        if interaction is None:
            raise InteractionNotFound(f"{feature_id}: no pending interaction")

        self.store.interactions.answer(feature_id, interaction.id, response)
        self.bus.publish(
            EventKind.INTERACTION_RESOLVED, "human", feature_id,
            {"interaction_id": interaction.id, "reason": interaction.reason,
             "selected_option": response.selected_option, "text": response.text},
        )

        if response.choice == "abort":
            stage = PipelineStage(self.store.features.load(feature_id).stage)
            detail = f": {response.text}" if response.text else ""
            return self._fail(feature_id, f"Aborted by {response.responded_by} in {stage.value}{detail}")

        appliers = {
            "blocker": self._answer_blocker,
            "architect_approval": self._answer_architect_approval,
            "critic_override": self._answer_critic_override,
            "merge_conflicts": self._answer_merge_conflicts,
        }
        appliers[interaction.reason](feature_id, interaction, response)
        return self.advance(feature_id)

    def run_until_blocked(self, feature_id: str) -> StageOutcome:
        """Advance until the feature pauses or reaches a terminal stage."""
        for _ in range(MAX_STEPS):
            outcome = self.advance(feature_id)
            if outcome.is_blocked:
                return outcome
        raise InvariantViolation(f"{feature_id}: no pause or terminal stage after {MAX_STEPS} steps")

    def run_features(self, feature_ids: list[str]) -> dict[str, StageOutcome]:
        """Drive several features concurrently, each until it blocks."""
        bridge = DispatchBridge(max_workers=self.config.max_concurrent_features)
        outcomes = bridge.run({fid: (lambda fid=fid: self.run_until_blocked(fid)) for fid in feature_ids})
        return {fid: self._collect(fid, outcome) for fid, outcome in outcomes.items()}

    def recover(self) -> None:
        """
        Check persisted documents and roll back to the latest valid snapshot if corrupt.

        Raises:
            CorruptState: corruption was found (restored_from names the snapshot used)
        """
        try:
            self.store.recover()
        except CorruptState as e:
            if e.restored_from:
                self.bus.publish(
                    EventKind.STATE_RESTORED, "coordinator", None,
                    {"snapshot_id": e.restored_from, "path": str(e.path), "error": e.message},
                )
            raise

    def abort(self, feature_id: str, reason: str = "Aborted by human") -> StageOutcome:
        """Fail a feature from wherever it is, discarding its workspace."""
        feature = self.store.features.load(feature_id)
        if PipelineStage(feature.stage) in TERMINAL_STAGES:
            return self._terminal_outcome(feature)
        return self._fail(feature_id, reason)

    def status(self, feature_id: str) -> Feature:
        return self.store.features.load(feature_id)

    def list_features(self, include_archived: bool = True) -> list[Feature]:
        return self.store.features.all(include_archived=include_archived)

    # Planning stages

    def _parse_unknowns(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage.UNKNOWNS_PARSING
        ambiguities = self._load(feature.id, "ambiguities")
        if ambiguities is None:
            try:
                parsed = self._call_agent(feature, stage)
            except AgentFailure as e:
                return self._fail(feature.id, e.reason())
            ambiguities = [a.to_dict() for a in parsed]
            self.store.features.save_artifact(feature.id, "ambiguities", ambiguities)
            if ambiguities:
                self.store.fragments.append("unknowns", "\n".join(
                    f"- [{a['criticality']}] {a['id']} ({a['category']}): {a['question']}" for a in ambiguities
                ))

        for ambiguity in ambiguities:
            if ambiguity["criticality"] != "blocker" or ambiguity["resolved"]:
                continue
            interaction = self._ask(
                feature, "blocker", kind="input",
                title=f"Blocker {ambiguity['id']}: {ambiguity['question']}",
                description=ambiguity.get("context") or "",
                options=BLOCKER_OPTIONS,
                payload={"unknown_id": ambiguity["id"]},
                unknown_id=ambiguity["id"],
            )
            return self._paused(feature, interaction)

        return self._fire_advance(feature.id, stage, "ambiguities")

    def _research(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage.RESEARCHING
        agent = self.ctx.agents.bound(stage)
        ambiguities = self._load(feature.id, "ambiguities", [])
        research = self._load(feature.id, "research", {})
        todo = [a for a in ambiguities if not a["resolved"] and a["id"] not in research]

        if todo:
            total = len(todo)
            tasks = {}
            for data in todo:
                ambiguity = Ambiguity.from_dict(data)
                stage_input = self._stage_input(feature, stage, ambiguity=ambiguity)
                tasks[ambiguity.id] = lambda stage_input=stage_input: coerce_output(stage, agent(stage_input))
                self.bus.publish(
                    EventKind.RESEARCH_STARTED, AGENT_NAMES[stage], feature.id,
                    {"question": ambiguity.question}, unknown_id=ambiguity.id,
                )

            resolved = []

            def progress(outcome: TaskOutcome) -> None:
                resolved.append(outcome.key)
                self.bus.publish(
                    EventKind.RESEARCH_PROGRESS, AGENT_NAMES[stage], feature.id,
                    {"status": outcome.status, "resolved": len(resolved), "total": total},
                    unknown_id=outcome.key,
                )

            outcomes = self.ctx.dispatch.run(tasks, timeout=self.config.research_timeout, on_done=progress)
            for unknown_id, outcome in outcomes.items():
                if outcome.ok:
                    finding = outcome.value
                    finding.unknown_id = unknown_id
                    research[unknown_id] = finding.to_dict()
                else:
                    research[unknown_id] = {"unknown_id": unknown_id, "summary": "", "error": outcome.error}
            self._apply_findings(feature.id, ambiguities, research)

            failed = [k for k, o in outcomes.items() if not o.ok]
            self.bus.publish(
                EventKind.RESEARCH_COMPLETED, AGENT_NAMES[stage], feature.id,
                {"investigated": total, "failed": failed},
            )

        # Saved even when empty; leaving researching requires the artifact
        self.store.features.save_artifact(feature.id, "research", research)
        return self._fire_advance(feature.id, stage, "research")

    def _apply_findings(self, feature_id: str, ambiguities: list[dict], research: dict) -> None:
        """Mark ambiguities the research resolved and record the findings."""
        lines = []
        for ambiguity in ambiguities:
            finding = research.get(ambiguity["id"])
            if not finding or finding.get("error"):
                continue
            if finding.get("resolves") and not ambiguity["resolved"]:
                ambiguity["resolved"] = True
                ambiguity["evidence"] = f"research:{ambiguity['id']}"
            lines.append(f"- {ambiguity['id']}: {finding['summary']}")
        self.store.features.save_artifact(feature_id, "ambiguities", ambiguities)
        if lines:
            self.store.fragments.append("context", "\n".join(lines))

    def _architect(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage.ARCHITECTING
        decision = self._load(feature.id, "decision")
        if decision is None or decision["status"] == "superseded":
            feedback = self._load(feature.id, "architecting_feedback")
            try:
                proposed = self._call_agent(feature, stage, feedback=(feedback or {}).get("text"))
            except AgentFailure as e:
                return self._fail(feature.id, e.reason())
            decision = self._record_decision(feature.id, stamp_decision(proposed), decision)

        if self.config.require_architect_approval and decision["status"] == "proposed":
            interaction = self._ask(
                feature, "architect_approval",
                title=f"Approve decision {decision['id']}: {decision['chosen_option']}",
                description=decision.get("rationale", ""),
                payload={"decision_id": decision["id"]},
                unknown_id=decision.get("unknown_id"),
            )
            return self._paused(feature, interaction)

        return self._fire_advance(feature.id, stage, "decision")

    def _record_decision(self, feature_id: str, decision: Decision, previous: dict | None) -> dict:
        history = self._load(feature_id, "decisions", [])
        if previous is not None:
            for entry in history:
                if entry["id"] == previous["id"]:
                    entry["status"] = "superseded"
                    entry["superseded_by"] = decision.id
        data = decision.to_dict()
        history.append(data)
        self.store.features.save_artifact(feature_id, "decisions", history)
        self.store.features.save_artifact(feature_id, "decision", data)
        self.store.fragments.append(
            "decisions",
            f"- {decision.id} ({feature_id}): {decision.chosen_option}"
            + (f" (supersedes {previous['id']})" if previous else ""),
        )
        return data

    def _set_decision_status(self, feature_id: str, status: str, by: str | None = None) -> dict:
        decision = self._load(feature_id, "decision")
        if decision is None:
            raise InvariantViolation(f"{feature_id}: no decision to mark {status}")
        if decision["status"] == "approved" and status == "approved":
            return decision
        decision["status"] = status
        if status == "approved":
            decision["approved_by"] = by
        history = self._load(feature_id, "decisions", [])
        for i, entry in enumerate(history):
            if entry["id"] == decision["id"]:
                history[i] = dict(decision)
        self.store.features.save_artifact(feature_id, "decisions", history)
        self.store.features.save_artifact(feature_id, "decision", decision)
        return decision

    def _critique(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage.CRITIQUING
        decision = self._load(feature.id, "decision") or {}
        verdict = self._load(feature.id, "verdict")
        if verdict is None or verdict.get("decision_id") != decision.get("id"):
            try:
                result = self._call_agent(feature, stage)
            except AgentFailure as e:
                return self._fail(feature.id, e.reason())
            verdict = result.to_dict()
            verdict["decision_id"] = decision.get("id")
            verdict["max_severity"] = result.max_severity
            self.store.features.save_artifact(feature.id, "verdict", verdict)
            if not verdict["approved"]:
                self.bus.publish(
                    EventKind.CRITIC_REJECTED, AGENT_NAMES[stage], feature.id,
                    {"decision_id": verdict["decision_id"], "summary": verdict["summary"],
                     "max_severity": verdict["max_severity"], "rejection_count": feature.rejection_count},
                )

        if verdict["approved"]:
            self._set_decision_status(feature.id, "approved", by="critic")
            return self._fire_advance(feature.id, stage, "decision")

        needs_human = self.config.needs_critic_approval(verdict.get("max_severity"))
        if needs_human and not verdict.get("confirmed_by"):
            interaction = self._ask(
                feature, "critic_override",
                title=f"Critic rejected {verdict.get('decision_id')} ({verdict.get('max_severity')})",
                description=verdict.get("summary", ""),
                options=CRITIC_OVERRIDE_OPTIONS,
                payload={"decision_id": verdict.get("decision_id"), "concerns": verdict.get("concerns", [])},
            )
            return self._paused(feature, interaction)
        return self._reject(feature.id, verdict)

    def _reject(self, feature_id: str, verdict: dict) -> StageOutcome:
        """Supersede the rejected decision and loop back to architecting."""
        concerns = "\n".join(
            f"- [{c['severity']}] {c['description']}"
            + (f" (fix: {c['suggested_fix']})" if c.get("suggested_fix") else "")
            for c in verdict.get("concerns", [])
        )
        self.store.features.save_artifact(feature_id, "architecting_feedback", {
            "source": "critic",
            "decision_id": verdict.get("decision_id"),
            "text": "\n".join(filter(None, [verdict.get("summary"), concerns])),
        })
        self._set_decision_status(feature_id, "superseded")
        return self._transition(feature_id, "critic_reject")

    def _atomize(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage.ATOMIZING
        if self._load(feature.id, "missions") is None:
            try:
                missions = self._call_agent(feature, stage)
            except AgentFailure as e:
                return self._fail(feature.id, e.reason())
            self.store.features.save_artifact(feature.id, "missions", [m.to_dict() for m in missions])
        return self._fire_advance(feature.id, stage, "missions")

    def _generate_tasks(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage.TASK_GENERATION
        if self._load(feature.id, "tasks") is None:
            try:
                tasks = self._call_agent(feature, stage)
            except AgentFailure as e:
                return self._fail(feature.id, e.reason())
            self.store.features.save_artifact(feature.id, "tasks", tasks)
        return self._fire_advance(feature.id, stage, "tasks")

    # Execution stages

    def _build(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage.BUILDING
        report = self._load(feature.id, "build_report")
        if report and report.get("passed"):
            return self._fire_advance(feature.id, stage, "build_report")

        handle = self.workspaces.get(feature.id)
        if handle is None or not handle.is_open:
            handle = self.workspaces.open(feature.id)
            snapshot_id = self.store.snapshot("pre_build")
            with self.store.features.update(feature.id) as record:
                record.workspace_ref = handle.id
                record.last_snapshot = snapshot_id
            self.bus.publish(
                EventKind.WORKSPACE_OPENED, "coordinator", feature.id,
                {"workspace": handle.id, "branch": handle.branch, "parent_commit": handle.parent_commit},
            )

        feedback = self._load(feature.id, "building_feedback")
        attempt = feature.retry_count + 1
        try:
            built = self._call_agent(feature, stage, workspace=handle.path, feedback=(feedback or {}).get("text"))
            sha = self.workspaces.commit(feature.id, f"catalyst: {feature.id} build attempt {attempt}")
            self._run_tool(feature.id, stage, self.config.build_command, handle.path, self.config.build_timeout)
        except (AgentFailure, BuildFailure) as e:
            return self._retry(feature.id, stage, e)

        report = built.to_dict()
        report.update({"passed": True, "attempt": attempt, "commit": sha})
        self.store.features.save_artifact(feature.id, "build_report", report)
        return self._fire_advance(feature.id, stage, "build_report")

    def _test(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage.TESTING
        report = self._load(feature.id, "test_report")
        if report and report.get("passed"):
            return self._fire_advance(feature.id, stage, "test_report")

        handle = self.workspaces.get(feature.id)
        if handle is None or not handle.is_open:
            return self._fail(feature.id, f"InvariantViolation: no open workspace for {feature.id} in testing")

        feedback = self._load(feature.id, "testing_feedback")
        summaries = []
        try:
            if self.ctx.agents.test is not None:
                result: TestReport = self._call_agent(
                    feature, stage, workspace=handle.path, feedback=(feedback or {}).get("text"),
                )
                self.workspaces.commit(feature.id, f"catalyst: {feature.id} test changes")
                if not result.passed:
                    raise TestFailure(result.summary or "test agent reported failure", result.diagnostics)
                summaries.append(result.summary)
            summaries.append(
                self._run_tool(feature.id, stage, self.config.test_command, handle.path, self.config.test_timeout)
            )
        except (AgentFailure, TestFailure) as e:
            return self._retry(feature.id, stage, e)

        summary = "\n".join(s for s in summaries if s) or "no tests configured"
        self.store.features.save_artifact(feature.id, "test_report", {
            "passed": True, "summary": summary, "attempt": feature.retry_count + 1,
        })
        return self._fire_advance(feature.id, stage, "test_report")

    def _run_tool(self, feature_id: str, stage: PipelineStage, command: str, cwd: Path, timeout: int) -> str:
        """
        Run the configured build or test command in the workspace.

        Returns a short summary. Raises BuildFailure/TestFailure with parsed diagnostics.
        """
        if not command:
            return ""
        kind = "build" if stage == PipelineStage.BUILDING else "test"
        logger.info(f"[coordinator] {feature_id}: running {kind} command: {command}")
        result = run_command(command, cwd=cwd, timeout=timeout)
        if result.success:
            return f"{kind} command passed in {result.duration:.1f}s"

        error_cls = BuildFailure if kind == "build" else TestFailure
        if result.timed_out:
            raise error_cls(f"{kind} command timed out after {timeout}s", [], result.stdout + result.stderr)
        diagnostics = parse_output(result.stdout, result.stderr, kind=kind)
        raise error_cls(
            f"{kind} command exited {result.returncode}: {summarize(diagnostics)}",
            [d.to_dict() for d in diagnostics],
            (result.stdout + result.stderr)[-4000:],
        )

    def _retry(self, feature_id: str, stage: PipelineStage, error: CatalystError) -> StageOutcome:
        """
        Record failure feedback and retry the stage in place (or fail when out of attempts).

        After an agent timeout the abandoned call may still be editing the
        workspace. The retry waits up to STALE_AGENT_GRACE for it to stop and
        then drops its uncommitted edits; if it is still running the feature
        fails instead of sharing the workspace with it.
        """
        if feature_id in self._abandoned:
            if not self._await_abandoned(feature_id):
                return self._fail(
                    feature_id,
                    f"AgentFailure: [{stage.value}] timed-out agent still running after "
                    f"{self.config.stale_agent_grace}s; workspace not reused",
                )
            self.workspaces.reset(feature_id)

        diagnostics = getattr(error, "diagnostics", None) or []
        if not isinstance(error, AgentFailure):
            self.bus.publish(
                EventKind.AGENT_FAILED, AGENT_NAMES[stage], feature_id,
                {"error": error.reason(), "diagnostics": diagnostics},
            )
        lines = [error.reason()] + [
            f"{d.get('file') or '?'}:{d.get('line') or '?'}: {d.get('message', '')}" for d in diagnostics
        ]
        self.store.features.save_artifact(feature_id, f"{stage.value}_feedback", {
            "source": error.kind, "text": "\n".join(lines),
        })
        return self._transition(feature_id, "retry", reason=error.reason())

    def _merge(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage.MERGING
        handle = self.workspaces.get(feature.id)
        if handle is not None and handle.status == STATUS_MERGED:
            recorded = self._load(feature.id, "merge_result") or {}
            if recorded.get("status") != MERGED:
                # Merge landed but the result was not saved before a crash
                logger.warning(f"[coordinator] {feature.id}: rebuilding merge result from {handle.merge_commit}")
                rebuilt = MergeResult(status=MERGED, commit_sha=handle.merge_commit)
                self.store.features.save_artifact(feature.id, "merge_result", rebuilt.to_dict())
            return self._fire_advance(feature.id, stage, "merge_result")

        snapshot_id = self.store.snapshot("pre_merge")
        with self.store.features.update(feature.id) as record:
            record.last_snapshot = snapshot_id

        result = self.workspaces.merge(feature.id)
        self.store.features.save_artifact(feature.id, "merge_result", result.to_dict())
        if result.is_merged:
            return self._fire_advance(feature.id, stage, "merge_result")

        error = MergeConflict(feature.id, result.conflicts)
        self.bus.publish(
            EventKind.MERGE_CONFLICTS, "coordinator", feature.id,
            {"paths": result.conflicted_paths, "conflicts": [c.to_dict() for c in result.conflicts]},
        )
        self.workspaces.prepare_resolution(feature.id, result)
        return self._transition(feature.id, "merge_conflict", reason=error.reason())

    def _resolve_conflicts(self, feature: Feature) -> StageOutcome:
        """Pause until the conflict markers are gone, then re-enter merging."""
        unresolved = self.workspaces.unresolved_files(feature.id)
        if not unresolved:
            self.workspaces.commit(feature.id, f"catalyst: {feature.id} resolve merge conflicts")
            return self._transition(feature.id, "retry_merge")

        merge_result = self._load(feature.id, "merge_result") or {}
        conflicts = [
            ConflictRegion.from_dict(c) for c in merge_result.get("conflicts", []) if c["path"] in unresolved
        ]
        hint = self._conflict_hint(feature, conflicts)
        handle = self.workspaces.get(feature.id)
        interaction = self._ask(
            feature, "merge_conflicts",
            title=f"Resolve merge conflicts in {len(unresolved)} file(s)",
            description=f"Edit the conflict markers under {handle.path}, then answer Resolved.",
            options=CONFLICT_OPTIONS_WITH_HINT if hint else CONFLICT_OPTIONS,
            payload={
                "workspace": str(handle.path),
                "paths": unresolved,
                "conflicts": [c.to_dict() for c in conflicts],
                "suggestion": hint,
            },
        )
        return self._paused(feature, interaction)

    def _conflict_hint(self, feature: Feature, conflicts: list[ConflictRegion]) -> dict | None:
        """Optional suggestion from the resolve_conflicts agent. Never applied without a human."""
        if self.ctx.agents.resolve_conflicts is None or not conflicts:
            return None
        handle = self.workspaces.get(feature.id)
        try:
            return self._call_agent(
                feature, PipelineStage.MERGE_CONFLICTS, workspace=handle.path, conflicts=conflicts,
            )
        except AgentFailure as e:
            logger.warning(f"[coordinator] {feature.id}: no conflict suggestion: {e}")
            if feature.id in self._abandoned and not self._await_abandoned(feature.id):
                logger.warning(f"[coordinator] {feature.id}: conflict agent still running in {handle.path}")
            return None

    def _await_abandoned(self, feature_id: str) -> bool:
        """Wait for a timed-out workspace agent to return. False if it outlives the grace period."""
        future = self._abandoned.pop(feature_id)
        logger.info(f"[coordinator] {feature_id}: waiting up to {self.config.stale_agent_grace}s for timed-out agent")
        concurrent.futures.wait([future], timeout=self.config.stale_agent_grace)
        if future.done():
            return True
        self._abandoned[feature_id] = future
        return False

    # Interaction answers

    def _answer_blocker(self, feature_id: str, interaction: PendingInteraction, response: HumanResponse) -> None:
        unknown_id = interaction.payload.get("unknown_id")
        answer = (response.text or response.selected_option or "").strip()
        ambiguities = self._load(feature_id, "ambiguities", [])
        for ambiguity in ambiguities:
            if ambiguity["id"] == unknown_id:
                ambiguity["resolved"] = True
                ambiguity["evidence"] = f"{interaction.id}: {answer}"
        self.store.features.save_artifact(feature_id, "ambiguities", ambiguities)
        self.store.fragments.append("unknowns", f"- {unknown_id} answered ({interaction.id}): {answer}")

    def _answer_architect_approval(self, feature_id: str, interaction: PendingInteraction, response: HumanResponse) -> None:
        if response.choice == "approve":
            self._set_decision_status(feature_id, "approved", by=response.responded_by)
            return
        self.store.features.save_artifact(feature_id, "architecting_feedback", {
            "source": "human",
            "decision_id": interaction.payload.get("decision_id"),
            "text": response.text or f"{response.selected_option} requested",
        })
        self._set_decision_status(feature_id, "superseded")

    def _answer_critic_override(self, feature_id: str, interaction: PendingInteraction, response: HumanResponse) -> None:
        verdict = self._load(feature_id, "verdict")
        if response.choice == "override":
            verdict["approved"] = True
            verdict["overridden_by"] = response.responded_by
            self.store.features.save_artifact(feature_id, "verdict", verdict)
            self._set_decision_status(feature_id, "approved", by=response.responded_by)
        else:
            verdict["confirmed_by"] = response.responded_by
            self.store.features.save_artifact(feature_id, "verdict", verdict)

    def _answer_merge_conflicts(self, feature_id: str, interaction: PendingInteraction, response: HumanResponse) -> None:
        suggestion = interaction.payload.get("suggestion")
        if response.choice == "accept" and suggestion:
            self.workspaces.apply_files(feature_id, suggestion)
            logger.info(f"[coordinator] {feature_id}: applied suggested resolution for {len(suggestion)} file(s)")

    # Transitions

    def _fire_advance(self, feature_id: str, stage: PipelineStage, artifact: str) -> StageOutcome:
        outcome = self._transition(feature_id, "advance")
        if outcome.stage == stage:
            return self._fail(feature_id, f"InvariantViolation: {stage.value} output '{artifact}' is incomplete")
        if outcome.status != ADVANCED:
            return outcome
        self.bus.publish(
            EventKind.DATA_PASSED, AGENT_NAMES.get(stage, "coordinator"), feature_id,
            {"from": stage.value, "to": outcome.stage.value, "artifact": artifact},
        )
        return outcome

    def _transition(self, feature_id: str, trigger: str, reason: str | None = None) -> StageOutcome:
        """Fire a trigger with the persisted artifacts and write the result before anything else."""
        artifacts = self._artifacts(feature_id)
        with self.store.features.update(feature_id) as feature:
            before = PipelineStage(feature.stage)
            pipeline = Pipeline.from_feature(feature, self.config)
            fired = pipeline.fire(trigger, artifacts, reason=reason)
            pipeline.apply_to(feature)

        if not fired:
            logger.warning(f"[coordinator] {feature_id}: {trigger} refused in {before.value}")
            return StageOutcome(feature_id, before, PAUSED, reason=f"{trigger} not possible in {before.value}")

        if feature.stage == PipelineStage.COMPLETE.value:
            return self._complete(feature)
        if feature.stage == PipelineStage.FAILED.value:
            return self._settle_failure(feature)
        status = RETRYING if trigger == "retry" else ADVANCED
        return StageOutcome(feature_id, PipelineStage(feature.stage), status)

    def _fail(self, feature_id: str, reason: str) -> StageOutcome:
        return self._transition(feature_id, "fail", reason=reason)

    def _complete(self, feature: Feature) -> StageOutcome:
        merge_result = self._load(feature.id, "merge_result") or {}
        self.store.fragments.append(
            "features", f"- **{feature.id}** complete (merged at {(merge_result.get('commit_sha') or '?')[:8]})",
        )
        self.store.features.archive(feature.id)
        self.bus.publish(
            EventKind.PIPELINE_COMPLETED, "coordinator", feature.id,
            {"title": feature.title, "commit": merge_result.get("commit_sha"),
             "rejection_count": feature.rejection_count},
        )
        logger.info(f"[coordinator] {feature.id}: complete")
        return StageOutcome(feature.id, PipelineStage.COMPLETE, COMPLETE)

    def _settle_failure(self, feature: Feature) -> StageOutcome:
        if self.workspaces.discard(feature.id):
            self.bus.publish(EventKind.WORKSPACE_DISCARDED, "coordinator", feature.id, {"workspace": feature.workspace_ref})
        if feature.last_snapshot is None:
            latest = self.store.snapshots.latest_valid()
            if latest is not None:
                with self.store.features.update(feature.id) as record:
                    record.last_snapshot = latest
        self.store.features.archive(feature.id)
        self.bus.publish(
            EventKind.PIPELINE_FAILED, "coordinator", feature.id,
            {"reason": feature.failure_reason, "stage": feature.history[-1]["from"] if feature.history else None},
        )
        logger.error(f"[coordinator] {feature.id}: failed: {feature.failure_reason}")
        return StageOutcome(feature.id, PipelineStage.FAILED, FAILED, reason=feature.failure_reason)

    # Helpers

    def _call_agent(self, feature: Feature, stage: PipelineStage, **input_fields):
        """
        Invoke the stage's agent under the agent timeout.

        Raises:
            AgentFailure: the agent raised, timed out or returned unusable output
        """
        agent_name = AGENT_NAMES[stage]
        agent = self.ctx.agents.bound(stage)
        if agent is None:
            raise AgentFailure(stage.value, "no agent bound to this stage")

        stage_input = self._stage_input(feature, stage, **input_fields)
        self.bus.publish(EventKind.AGENT_STARTED, agent_name, feature.id, {"stage": stage.value})
        outcomes = self.ctx.dispatch.run(
            {stage.value: lambda: coerce_output(stage, agent(stage_input))},
            timeout=self.config.agent_timeout,
        )
        outcome = outcomes[stage.value]
        if outcome.future is not None and input_fields.get("workspace") is not None:
            self._abandoned[feature.id] = outcome.future
        if not outcome.ok:
            self.bus.publish(
                EventKind.AGENT_FAILED, agent_name, feature.id,
                {"stage": stage.value, "status": outcome.status, "error": outcome.error},
            )
            logger.error(f"[coordinator] {feature.id}: {agent_name} failed in {stage.value}: {outcome.error}")
            raise AgentFailure(stage.value, outcome.error or outcome.status, {"status": outcome.status})

        self.bus.publish(
            EventKind.AGENT_COMPLETED, agent_name, feature.id,
            {"stage": stage.value, "duration": round(outcome.duration, 3)},
        )
        return outcome.value

    def _stage_input(self, feature: Feature, stage: PipelineStage, **fields) -> StageInput:
        return StageInput(
            feature_id=feature.id,
            stage=stage,
            title=feature.title,
            goal=feature.description,
            mode=self.config.mode.value,
            artifacts=self._artifacts(feature.id),
            **fields,
        )

    def _ask(
        self,
        feature: Feature,
        reason: str,
        title: str,
        description: str = "",
        kind: str = "decision",
        options: list[str] | None = None,
        payload: dict | None = None,
        unknown_id: str | None = None,
    ) -> PendingInteraction:
        interaction = self.store.interactions.add(
            feature.id, reason, title, description,
            kind=kind, stage=feature.stage, from_agent=AGENT_NAMES.get(PipelineStage(feature.stage), ""),
            options=options, payload=payload,
        )
        self.bus.publish(
            EventKind.INTERACTION_REQUIRED, interaction.from_agent or "coordinator", feature.id,
            {"interaction_id": interaction.id, "reason": reason, "title": title, "options": interaction.options},
            unknown_id=unknown_id,
        )
        return interaction

    def _paused(self, feature: Feature, interaction: PendingInteraction) -> StageOutcome:
        return StageOutcome(
            feature.id, PipelineStage(feature.stage), PAUSED,
            interaction_id=interaction.id, reason=interaction.title,
        )

    def _terminal_outcome(self, feature: Feature) -> StageOutcome:
        stage = PipelineStage(feature.stage)
        status = COMPLETE if stage == PipelineStage.COMPLETE else FAILED
        return StageOutcome(feature.id, stage, status, reason=feature.failure_reason)

    def _collect(self, feature_id: str, outcome: TaskOutcome) -> StageOutcome:
        if outcome.ok:
            return outcome.value
        stage = PipelineStage(self.store.features.load(feature_id).stage)
        return StageOutcome(feature_id, stage, ERROR, reason=outcome.error)

    def _load(self, feature_id: str, name: str, default=None):
        return self.store.features.load_artifact(feature_id, name, default)

    def _artifacts(self, feature_id: str) -> dict:
        artifacts = {}
        for name in ARTIFACT_NAMES:
            value = self._load(feature_id, name)
            if value is not None:
                artifacts[name] = value
        return artifacts
