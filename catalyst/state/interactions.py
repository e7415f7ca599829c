"""
Human interaction records.

Questions the pipeline needs a human to answer (blocker ambiguities,
architect approval, critic overrides, merge conflicts). Records are
append-only: each revision is a JSON line in interactions/<feature>.jsonl,
and the latest revision per id is the current state.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from catalyst.lib.errors import CorruptState, InteractionNotFound
from catalyst.lib.validate import ValidationError, validate, validate_before_write
from catalyst.state.io import append_line, now_iso
from catalyst.state.locking import interaction_lock

logger = logging.getLogger(__name__)

INTERACTIONS_DIR = "interactions"

DECISION_OPTIONS = ["Approve", "Reject", "Modify"]


@dataclass
class HumanResponse:
    """A human's answer to a pending interaction."""
    selected_option: Optional[str] = None
    text: Optional[str] = None
    responded_by: str = "human"

    @property
    def choice(self) -> str:
        """Normalized selected option ("approve", "reject", ...), or ""."""
        return (self.selected_option or "").strip().lower()


@dataclass
class PendingInteraction:
    """A question put to a human, pending until answered."""
    id: str
    feature_id: str
    kind: str  # decision, input, alert
    reason: str  # blocker, architect_approval, critic_override, merge_conflicts
    title: str
    description: str = ""
    stage: str = ""
    from_agent: str = ""
    options: list[str] = field(default_factory=list)
    payload: dict = field(default_factory=dict)
    status: str = "pending"  # pending, responded
    created_at: str = ""
    resolved_at: Optional[str] = None
    response: Optional[HumanResponse] = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingInteraction":
        data = dict(data)
        response = data.pop("response", None)
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known, response=HumanResponse(**response) if response else None)


class InteractionLog:
    """Append-only interaction records, one log per feature."""

    def __init__(self, root: Path):
        self.root = root
        self.dir = root / INTERACTIONS_DIR

    def _log_path(self, feature_id: str) -> Path:
        return self.dir / f"{feature_id}.jsonl"

    def revisions(self, feature_id: str) -> list[dict]:
        """Every revision ever written for this feature, oldest first."""
        path = self._log_path(feature_id)
        if not path.exists():
            return []
        revisions = []
        for lineno, line in enumerate(path.read_text().splitlines(), 1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                validate(data, "interaction")
            except (json.JSONDecodeError, ValidationError) as e:
                raise CorruptState(path, f"line {lineno}: {e}") from None
            revisions.append(data)
        return revisions

    def all(self, feature_id: str) -> list[PendingInteraction]:
        """Current state of each interaction, in creation order."""
        latest: dict[str, dict] = {}
        for data in self.revisions(feature_id):
            latest[data["id"]] = data
        return [PendingInteraction.from_dict(d) for d in latest.values()]

    def get(self, feature_id: str, interaction_id: str) -> PendingInteraction:
        for interaction in self.all(feature_id):
            if interaction.id == interaction_id:
                return interaction
        raise InteractionNotFound(f"{feature_id}: no interaction {interaction_id}")

    def pending(self, feature_id: str) -> PendingInteraction | None:
        """Oldest unanswered interaction for a feature."""
        for interaction in self.all(feature_id):
            if interaction.is_pending:
                return interaction
        return None

    def _next_id(self, feature_id: str) -> str:
        ids = {d["id"] for d in self.revisions(feature_id)}
        return f"INT-{len(ids) + 1:03d}"

    def _append(self, interaction: PendingInteraction) -> None:
        data = interaction.to_dict()
        path = self._log_path(interaction.feature_id)
        validate_before_write(data, "interaction", path)
        append_line(path, json.dumps(data))

    def add(
        self,
        feature_id: str,
        reason: str,
        title: str,
        description: str = "",
        kind: str = "decision",
        stage: str = "",
        from_agent: str = "",
        options: list[str] | None = None,
        payload: dict | None = None,
    ) -> PendingInteraction:
        """Record a new pending interaction."""
        with interaction_lock(self.root, feature_id):
            interaction = PendingInteraction(
                id=self._next_id(feature_id),
                feature_id=feature_id,
                kind=kind,
                reason=reason,
                title=title,
                description=description,
                stage=stage,
                from_agent=from_agent,
                options=list(options if options is not None else DECISION_OPTIONS),
                payload=payload or {},
                created_at=now_iso(),
            )
            self._append(interaction)
        logger.info(f"[state] {feature_id}: interaction {interaction.id} pending ({reason})")
        return interaction

    def answer(self, feature_id: str, interaction_id: str, response: HumanResponse) -> PendingInteraction:
        """Append the responded revision of an interaction.

        Raises:
            InteractionNotFound: unknown id, or already answered
        """
        with interaction_lock(self.root, feature_id):
            interaction = self.get(feature_id, interaction_id)
            if not interaction.is_pending:
                raise InteractionNotFound(f"{feature_id}: {interaction_id} already answered")
            interaction.status = "responded"
            interaction.resolved_at = now_iso()
            interaction.response = response
            self._append(interaction)
        logger.info(
            f"[state] {feature_id}: interaction {interaction_id} answered "
            f"({response.selected_option or response.text or 'no text'})"
        )
        return interaction
