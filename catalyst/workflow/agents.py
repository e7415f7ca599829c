"""
Stage agent contract.

Each pipeline stage binds to one function `StageInput -> stage output`
through the fixed STAGE_BINDINGS table. The Coordinator only sees these
types; how an agent produces them (LLM call, script, test double) is its
own business. CommandAgent backs a stage with an external command from
agents.yaml that prints JSON.
"""

import json
import logging
import re
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from catalyst.lib.agents_config import AgentsConfig, get_stage_command
from catalyst.lib.commands import run_command
from catalyst.lib.config import SEVERITIES
from catalyst.state.io import now_iso
from catalyst.workflow.pipeline import PipelineStage
from catalyst.workflow.reconcile import ConflictRegion

logger = logging.getLogger(__name__)

CATEGORIES = ("infrastructure", "logic", "security", "ux")
CRITICALITIES = ("blocker", "high", "low")


class AgentError(Exception):
    """Raised by an agent to report that it could not produce its output."""


@dataclass
class Ambiguity:
    """An open question blocking planning."""
    id: str
    category: str
    question: str
    criticality: str = "low"
    context: str = ""
    resolved: bool = False
    evidence: str | None = None

    @property
    def is_blocker(self) -> bool:
        return self.criticality == "blocker"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Ambiguity":
        category = str(data.get("category", "logic")).lower()
        criticality = str(data.get("criticality", "low")).lower()
        if category not in CATEGORIES:
            raise ValueError(f"unknown ambiguity category {category!r}")
        if criticality not in CRITICALITIES:
            raise ValueError(f"unknown criticality {criticality!r}")
        if not data.get("question"):
            raise ValueError("ambiguity has no question")
        return cls(
            id=str(data.get("id") or f"U-{uuid.uuid4().hex[:6]}"),
            category=category,
            question=data["question"],
            criticality=criticality,
            context=data.get("context") or "",
            resolved=bool(data.get("resolved", False)),
            evidence=data.get("evidence"),
        )


@dataclass
class ResearchFinding:
    """Result of investigating one ambiguity."""
    unknown_id: str = ""  # filled in from the dispatched ambiguity when omitted
    summary: str = ""
    recommendation: str = ""
    options: list[str] = field(default_factory=list)
    resolves: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ResearchFinding":
        return cls(
            unknown_id=str(data.get("unknown_id") or ""),
            summary=str(data.get("summary", "")),
            recommendation=str(data.get("recommendation", "")),
            options=[str(o) for o in data.get("options", [])],
            resolves=bool(data.get("resolves", False)),
        )


@dataclass
class Decision:
    """A binding architectural choice. Never edited once approved; superseded instead."""
    chosen_option: str
    rationale: str = ""
    unknown_id: str | None = None
    rejected_alternatives: list[str] = field(default_factory=list)
    id: str = ""
    status: str = "proposed"  # proposed, approved, superseded
    approved_by: str | None = None
    superseded_by: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Decision":
        if not data.get("chosen_option"):
            raise ValueError("decision has no chosen_option")
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["rejected_alternatives"] = [str(a) for a in known.get("rejected_alternatives") or []]
        return cls(**known)


@dataclass
class Concern:
    severity: str
    description: str
    suggested_fix: str | None = None


@dataclass
class CriticVerdict:
    """Critic review of the current Decision."""
    approved: bool
    summary: str = ""
    concerns: list[Concern] = field(default_factory=list)

    @property
    def max_severity(self) -> str | None:
        ranked = [c.severity for c in self.concerns if c.severity in SEVERITIES]
        if not ranked:
            return None
        return max(ranked, key=SEVERITIES.index)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CriticVerdict":
        approved = data.get("approved")
        if approved is None and "verdict" in data:
            approved = str(data["verdict"]).lower() == "approved"
        if not isinstance(approved, bool):
            raise ValueError("critic verdict has no approved flag")
        concerns = [
            Concern(
                severity=str(c.get("severity", "minor")).lower(),
                description=str(c.get("description", "")),
                suggested_fix=c.get("suggested_fix"),
            )
            for c in data.get("concerns", [])
        ]
        return cls(approved=approved, summary=str(data.get("summary", "")), concerns=concerns)


@dataclass
class Mission:
    """A unit of executable work for the build stage."""
    id: str
    files: list[str]
    signatures: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    constraints: dict = field(default_factory=dict)
    description: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Mission":
        files = data.get("files") or ([data["path"]] if data.get("path") else [])
        if not files:
            raise ValueError("mission has no target files")
        return cls(
            id=str(data.get("id") or f"M-{uuid.uuid4().hex[:6]}"),
            files=[str(f) for f in files],
            signatures=[str(s) for s in data.get("signatures", [])],
            dependencies=[str(d) for d in data.get("dependencies", [])],
            constraints=dict(data.get("constraints", {})),
            description=str(data.get("description", "")),
        )


@dataclass
class BuildReport:
    files_written: list[str] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "BuildReport":
        return cls(
            files_written=[str(f) for f in data.get("files_written", [])],
            summary=str(data.get("summary", "")),
        )


@dataclass
class TestReport:
    __test__ = False

    passed: bool
    summary: str = ""
    diagnostics: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TestReport":
        if not isinstance(data.get("passed"), bool):
            raise ValueError("test report has no passed flag")
        return cls(
            passed=data["passed"],
            summary=str(data.get("summary", "")),
            diagnostics=list(data.get("diagnostics", [])),
        )


@dataclass
class StageInput:
    """Everything an agent gets to see."""
    feature_id: str
    stage: PipelineStage
    title: str
    goal: str
    mode: str
    artifacts: dict[str, Any] = field(default_factory=dict)
    workspace: Path | None = None
    feedback: str | None = None
    ambiguity: Ambiguity | None = None
    conflicts: list[ConflictRegion] = field(default_factory=list)


@dataclass
class StageAgents:
    """Binding of pipeline stages to agent functions."""
    parse_unknowns: Callable[[StageInput], list[Ambiguity]]
    research: Callable[[StageInput], ResearchFinding]
    architect: Callable[[StageInput], Decision]
    critic: Callable[[StageInput], CriticVerdict]
    atomize: Callable[[StageInput], list[Mission]]
    generate_tasks: Callable[[StageInput], dict[str, str]]
    build: Callable[[StageInput], BuildReport]
    test: Callable[[StageInput], TestReport] | None = None
    resolve_conflicts: Callable[[StageInput], dict[str, str]] | None = None

    def bound(self, stage: PipelineStage) -> Callable | None:
        return getattr(self, STAGE_BINDINGS[stage])


STAGE_BINDINGS: dict[PipelineStage, str] = {
    PipelineStage.UNKNOWNS_PARSING: "parse_unknowns",
    PipelineStage.RESEARCHING: "research",
    PipelineStage.ARCHITECTING: "architect",
    PipelineStage.CRITIQUING: "critic",
    PipelineStage.ATOMIZING: "atomize",
    PipelineStage.TASK_GENERATION: "generate_tasks",
    PipelineStage.BUILDING: "build",
    PipelineStage.TESTING: "test",
    PipelineStage.MERGE_CONFLICTS: "resolve_conflicts",
}

AGENT_NAMES: dict[PipelineStage, str] = {
    PipelineStage.UNKNOWNS_PARSING: "parser",
    PipelineStage.RESEARCHING: "researcher",
    PipelineStage.ARCHITECTING: "architect",
    PipelineStage.CRITIQUING: "critic",
    PipelineStage.ATOMIZING: "atomizer",
    PipelineStage.TASK_GENERATION: "taskmaster",
    PipelineStage.BUILDING: "builder",
    PipelineStage.TESTING: "tester",
    PipelineStage.MERGING: "coordinator",
    PipelineStage.MERGE_CONFLICTS: "resolver",
}


def _as(cls, value):
    if isinstance(value, cls):
        return value
    if isinstance(value, dict):
        return cls.from_dict(value)
    raise ValueError(f"expected {cls.__name__}, got {type(value).__name__}")


def coerce_output(stage: PipelineStage, value: Any) -> Any:
    """
    Check an agent's return value and convert dict forms to typed outputs.

    Raises:
        ValueError: output has the wrong shape for the stage
    """
    if stage == PipelineStage.UNKNOWNS_PARSING:
        if isinstance(value, dict):
            value = value.get("ambiguities")
        if not isinstance(value, list):
            raise ValueError("expected a list of ambiguities")
        ambiguities = [_as(Ambiguity, a) for a in value]
        ids = [a.id for a in ambiguities]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate ambiguity ids")
        return ambiguities
    if stage == PipelineStage.RESEARCHING:
        return _as(ResearchFinding, value)
    if stage == PipelineStage.ARCHITECTING:
        return _as(Decision, value)
    if stage == PipelineStage.CRITIQUING:
        return _as(CriticVerdict, value)
    if stage == PipelineStage.ATOMIZING:
        if isinstance(value, dict):
            value = value.get("missions")
        if not isinstance(value, list) or not value:
            raise ValueError("expected a non-empty list of missions")
        missions = [_as(Mission, m) for m in value]
        if len({m.id for m in missions}) != len(missions):
            raise ValueError("duplicate mission ids")
        return missions
    if stage == PipelineStage.TASK_GENERATION:
        if isinstance(value, dict) and isinstance(value.get("tasks"), dict):
            value = value["tasks"]
        if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
            raise ValueError("expected a mapping of mission id to task prompt")
        return {str(k): v for k, v in value.items()}
    if stage == PipelineStage.BUILDING:
        return _as(BuildReport, value)
    if stage == PipelineStage.TESTING:
        return _as(TestReport, value)
    if stage == PipelineStage.MERGE_CONFLICTS:
        if isinstance(value, dict) and isinstance(value.get("files"), dict):
            value = value["files"]
        if not isinstance(value, dict):
            raise ValueError("expected a mapping of path to resolved content")
        return {str(k): (None if v is None else str(v)) for k, v in value.items()}
    raise ValueError(f"stage {stage.value} has no agent output")


# JSON shape each command-backed agent must print
OUTPUT_SHAPES = {
    PipelineStage.UNKNOWNS_PARSING: '{"ambiguities": [{"id": "U-1", "category": "infrastructure|logic|security|ux", '
                                    '"question": "...", "criticality": "blocker|high|low", "context": "..."}]}',
    PipelineStage.RESEARCHING: '{"unknown_id": "U-1", "summary": "...", "recommendation": "...", '
                               '"options": ["..."], "resolves": true}',
    PipelineStage.ARCHITECTING: '{"unknown_id": "U-1", "chosen_option": "...", "rationale": "...", '
                                '"rejected_alternatives": ["..."]}',
    PipelineStage.CRITIQUING: '{"approved": false, "summary": "...", "concerns": [{"severity": '
                              '"suggestion|minor|major|blocking", "description": "...", "suggested_fix": "..."}]}',
    PipelineStage.ATOMIZING: '{"missions": [{"id": "M-1", "files": ["src/x.py"], "signatures": ["def f(a: int) -> str"], '
                             '"dependencies": [], "constraints": {"max_lines": 200}, "description": "..."}]}',
    PipelineStage.TASK_GENERATION: '{"tasks": {"M-1": "step-by-step implementation prompt"}}',
    PipelineStage.BUILDING: '{"files_written": ["src/x.py"], "summary": "..."}',
    PipelineStage.TESTING: '{"passed": true, "summary": "...", "diagnostics": []}',
    PipelineStage.MERGE_CONFLICTS: '{"files": {"path/to/file": "full resolved content"}}',
}


def render_prompt(stage_input: StageInput) -> str:
    """Prompt text for a command-backed agent."""
    stage = stage_input.stage
    parts = [
        f"# {stage.value.replace('_', ' ').title()} for feature {stage_input.feature_id}",
        f"## Goal\n{stage_input.goal}",
        f"## Mode\n{stage_input.mode}",
    ]
    if stage_input.artifacts:
        parts.append("## Artifacts so far\n```json\n" + json.dumps(stage_input.artifacts, indent=2) + "\n```")
    if stage_input.ambiguity:
        parts.append("## Question to investigate\n" + json.dumps(stage_input.ambiguity.to_dict(), indent=2))
    if stage_input.conflicts:
        parts.append("## Conflicts\n```json\n"
                     + json.dumps([c.to_dict() for c in stage_input.conflicts], indent=2) + "\n```")
    if stage_input.feedback:
        parts.append(f"## Feedback from the previous attempt\n{stage_input.feedback}")
    if stage_input.workspace:
        parts.append(f"## Workspace\nWork only inside {stage_input.workspace}.")
    parts.append(f"## Output\nRespond with JSON only, shaped like:\n{OUTPUT_SHAPES[stage]}")
    return "\n\n".join(parts) + "\n"


def extract_json(text: str) -> Any:
    """
    Parse agent stdout as JSON.

    Accepts a bare JSON document, a CLI envelope whose "result" field holds
    the answer, or JSON inside a fenced code block.
    """
    text = text.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("result"), str):
        text, data = data["result"].strip(), None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None
    if data is not None:
        return data

    fenced = re.search(r"```(?:json)?\s*\n(.*?)\n```", text, re.DOTALL)
    if fenced:
        return json.loads(fenced.group(1))
    raise ValueError("agent output contains no JSON")


class CommandAgent:
    """Agent backed by an external command configured in agents.yaml."""

    def __init__(self, stage: PipelineStage, config: AgentsConfig, timeout: float = 600):
        self.stage = stage
        self.config = config
        self.timeout = timeout

    def __call__(self, stage_input: StageInput) -> Any:
        prompt = render_prompt(stage_input)
        context = {"prompt": prompt}
        if stage_input.workspace:
            context["workspace"] = str(stage_input.workspace)
        command = get_stage_command(self.config, self.stage.value, context)

        logger.info(f"[agent] {stage_input.feature_id}: running {command.cmd[0]} for {self.stage.value}")
        result = run_command(
            command.cmd,
            cwd=stage_input.workspace,
            timeout=self.timeout,
            stdin=command.get_stdin_input(prompt),
        )
        if not result.success:
            raise AgentError(
                f"{self.stage.value} command exited {result.returncode}: {result.stderr.strip()[:500]}"
            )
        try:
            return coerce_output(self.stage, extract_json(result.stdout))
        except (ValueError, TypeError) as e:
            raise AgentError(f"{self.stage.value} produced unusable output: {e}") from None


def build_command_agents(config: AgentsConfig, timeout: float = 600) -> StageAgents:
    """StageAgents where every stage runs its configured command."""
    timeout = config.timeout or timeout
    agents = {
        name: CommandAgent(stage, config, timeout)
        for stage, name in STAGE_BINDINGS.items()
        if stage.value in config.stages
    }
    return StageAgents(**agents)


def new_decision_id() -> str:
    return f"D-{uuid.uuid4().hex[:8]}"


def stamp_decision(decision: Decision) -> Decision:
    """
    Give a freshly proposed decision its id, status and timestamp.

    The id is always minted here. Agents see earlier decisions in their
    prompt and may echo an id back; reusing it would tie the new proposal
    to the old verdict and history entry.
    """
    decision.id = new_decision_id()
    decision.status = "proposed"
    decision.approved_by = None
    decision.superseded_by = None
    decision.created_at = now_iso()
    return decision
