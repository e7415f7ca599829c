"""
Which external command backs each agent stage.

Bindings come from <state_dir>/agents.yaml; stages it leaves out keep
DEFAULT_STAGE_COMMANDS. A template may reference two placeholders:

    {prompt}     the rendered prompt, as an argument. Without it the
                 prompt is fed on stdin.
    {workspace}  the feature's worktree (execution stages only)

    stages:
      architecting: "claude -p --output-format json --model opus"
      building: "codex exec --full-auto -C {workspace} {prompt}"
    timeout: 900
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

_JSON_CLI = "claude -p --output-format json"

DEFAULT_STAGE_COMMANDS = {
    "unknowns_parsing": _JSON_CLI,
    "researching": _JSON_CLI,
    "architecting": _JSON_CLI,
    "critiquing": _JSON_CLI,
    "atomizing": _JSON_CLI,
    "task_generation": _JSON_CLI,
    "building": f"{_JSON_CLI} --permission-mode acceptEdits --add-dir {{workspace}}",
    "testing": f"{_JSON_CLI} --add-dir {{workspace}}",
    "merge_conflicts": f"{_JSON_CLI} --add-dir {{workspace}}",
}

# Stages that run inside a workspace cannot be bound without one
WORKSPACE_STAGES = frozenset({"building", "testing", "merge_conflicts"})

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass
class AgentsConfig:
    stages: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STAGE_COMMANDS))
    timeout: Optional[int] = None


def load_agents_config(state_dir: Optional[Path]) -> AgentsConfig:
    """Read agents.yaml if there is one. Unreadable YAML is logged and ignored."""
    path = Path(state_dir) / "agents.yaml" if state_dir is not None else None
    if path is None or not path.is_file():
        return AgentsConfig()

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring {path}, not valid YAML: {e}")
        return AgentsConfig()
    if not isinstance(data, dict):
        return AgentsConfig()

    config = AgentsConfig()
    overrides = data.get("stages")
    if isinstance(overrides, dict):
        config.stages.update((str(stage), str(cmd)) for stage, cmd in overrides.items())
    if data.get("timeout"):
        config.timeout = int(data["timeout"])
    return config


@dataclass
class StageCommand:
    cmd: list[str]
    prompt_via_stdin: bool

    def get_stdin_input(self, prompt: str) -> str | None:
        return prompt if self.prompt_via_stdin else None


def get_stage_command(
    config: AgentsConfig,
    stage: str,
    context: dict[str, str] | None = None,
) -> StageCommand:
    """
    Turn a stage's template into an argv list.

    The template is split first and placeholders are filled per argument,
    so substituted values (prompts with quotes or newlines, paths with
    spaces) always stay a single argument.

    Raises:
        ValueError: unknown stage, or a workspace stage without a workspace
    """
    template = config.stages.get(stage)
    if template is None:
        raise ValueError(f"Unknown stage: {stage}")

    context = {k: str(v) for k, v in (context or {}).items()}
    if stage in WORKSPACE_STAGES and "workspace" not in context:
        raise ValueError(f"Stage '{stage}' needs 'workspace' in its context")

    unresolved = set()

    def fill(match):
        name = match.group(1)
        if name in context:
            return context[name]
        unresolved.add(name)
        return match.group(0)

    cmd = [_PLACEHOLDER.sub(fill, arg) for arg in shlex.split(template)]
    if unresolved:
        logger.error(f"Stage '{stage}' template has unfilled placeholders: {sorted(unresolved)}")

    return StageCommand(cmd=cmd, prompt_via_stdin="{prompt}" not in template)
