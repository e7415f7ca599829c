"""
Engine configuration.

Resolved by layering built-in defaults, the project mode profile, and
explicit keys from the settings namespace (settings.env).
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

STATE_DIR_ENV = "CATALYST_STATE_DIR"
DEFAULT_STATE_DIRNAME = ".catalyst"


class ProjectMode(Enum):
    SPEED_RUN = "speed_run"
    LAB = "lab"
    FORTRESS = "fortress"


# Critic concern severities, least to most severe
SEVERITIES = ["suggestion", "minor", "major", "blocking"]


@dataclass(frozen=True)
class EngineConfig:
    """Knobs the Coordinator, Pipeline and Workspace Manager read."""
    mode: ProjectMode = ProjectMode.LAB
    mainline_branch: str = "main"
    max_rejections: int = 3
    max_merge_attempts: int = 3
    max_build_attempts: int = 3
    require_architect_approval: bool = False
    require_critic_approval: bool = True
    critic_severity_threshold: str = "major"
    agent_timeout: int = 600
    research_timeout: int = 300
    stale_agent_grace: int = 60
    build_command: str = ""
    test_command: str = ""
    build_timeout: int = 600
    test_timeout: int = 600
    max_concurrent_features: int = 3
    max_research_workers: int = 4

    def needs_critic_approval(self, severity: str | None) -> bool:
        """Whether a critic rejection at this severity must be confirmed by a human."""
        if not self.require_critic_approval or severity is None:
            return False
        return severity_rank(severity) >= severity_rank(self.critic_severity_threshold)


# Mode profiles only adjust strictness; the stage graph is the same for all modes
MODE_PROFILES: dict[ProjectMode, dict] = {
    ProjectMode.SPEED_RUN: {
        "max_rejections": 1,
        "require_architect_approval": False,
        "require_critic_approval": False,
        "critic_severity_threshold": "blocking",
    },
    ProjectMode.LAB: {
        "max_rejections": 3,
        "require_architect_approval": False,
        "require_critic_approval": True,
        "critic_severity_threshold": "major",
    },
    ProjectMode.FORTRESS: {
        "max_rejections": 5,
        "require_architect_approval": True,
        "require_critic_approval": True,
        "critic_severity_threshold": "minor",
    },
}


def severity_rank(severity: str) -> int:
    """Position of severity in SEVERITIES; unknown values rank as most severe."""
    try:
        return SEVERITIES.index(severity.lower())
    except ValueError:
        return len(SEVERITIES) - 1


def parse_mode(value: str | None) -> ProjectMode:
    """Parse a mode name, accepting SpeedRun / speed-run / speed_run spellings."""
    if not value:
        return ProjectMode.LAB
    normalized = value.strip().lower().replace("-", "_")
    if normalized == "speedrun":
        normalized = "speed_run"
    try:
        return ProjectMode(normalized)
    except ValueError:
        logger.warning(f"Unknown mode '{value}', using lab")
        return ProjectMode.LAB


def _coerce(value: str, default):
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(value)
    return value


def resolve_config(mode: ProjectMode | str | None, settings: dict[str, str]) -> EngineConfig:
    """Build EngineConfig from mode profile plus explicit settings.

    Settings keys are the upper-case field names (MAX_REJECTIONS, ...).
    Malformed numeric values are logged and ignored.
    """
    if not isinstance(mode, ProjectMode):
        mode = parse_mode(settings.get("MODE") if mode is None else mode)

    config = replace(EngineConfig(), mode=mode, **MODE_PROFILES[mode])

    overrides = {}
    for f in fields(EngineConfig):
        if f.name == "mode":
            continue
        key = f.name.upper()
        if key not in settings:
            continue
        try:
            overrides[f.name] = _coerce(settings[key], getattr(config, f.name))
        except ValueError:
            logger.warning(f"Ignoring invalid setting {key}={settings[key]!r}")

    if overrides.get("critic_severity_threshold", "major") not in SEVERITIES:
        logger.warning(f"Unknown severity threshold {overrides['critic_severity_threshold']!r}")
        overrides.pop("critic_severity_threshold")

    return replace(config, **overrides)


def default_state_dir(repo_path: Path) -> Path:
    """State directory: $CATALYST_STATE_DIR or <repo>/.catalyst."""
    override = os.environ.get(STATE_DIR_ENV)
    if override:
        return Path(override)
    return repo_path / DEFAULT_STATE_DIRNAME
