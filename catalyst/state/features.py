"""
Sharded feature records.

One JSON file per feature under features/, plus a per-feature artifacts/
directory for stage outputs. Each record has its own lock so features
update concurrently without contending.

Terminal features are archived to features/_archived/ and stay loadable.
"""

import logging
import secrets
import shutil
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterator

from catalyst.lib.errors import FeatureNotFound
from catalyst.state.io import now_iso, read_json, write_json
from catalyst.state.locking import feature_lock

logger = logging.getLogger(__name__)

FEATURES_DIR = "features"
ARCHIVE_DIR = "_archived"
ARTIFACTS_DIR = "artifacts"

# Working artifacts dropped once a feature is archived
TRANSIENT_ARTIFACTS = ("missions", "tasks")


def generate_feature_id(now: datetime | None = None) -> str:
    """f-YYYYmmdd-HHMMSS-xxxx; the suffix keeps same-second starts distinct."""
    now = now or datetime.now()
    return f"f-{now:%Y%m%d-%H%M%S}-{secrets.token_hex(2)}"


@dataclass
class Feature:
    """Persisted feature record."""
    id: str
    title: str
    stage: str
    description: str = ""
    rejection_count: int = 0
    retry_count: int = 0
    merge_attempts: int = 0
    created_at: str = ""
    updated_at: str = ""
    workspace_ref: str | None = None
    failure_reason: str | None = None
    last_snapshot: str | None = None
    archived: bool = False
    history: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Feature":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def record_transition(self, from_stage: str, to_stage: str, trigger: str) -> None:
        self.history.append({"from": from_stage, "to": to_stage, "trigger": trigger, "at": now_iso()})


class FeatureShards:
    """Per-feature records and artifacts."""

    def __init__(self, root: Path):
        self.root = root
        self.dir = root / FEATURES_DIR
        self.archive_dir = self.dir / ARCHIVE_DIR
        self.artifacts_dir = root / ARTIFACTS_DIR

    def _active_path(self, feature_id: str) -> Path:
        return self.dir / f"{feature_id}.json"

    def _archived_path(self, feature_id: str) -> Path:
        return self.archive_dir / f"{feature_id}.json"

    def path_for(self, feature_id: str) -> Path:
        """Current record path (archived location if the feature was archived)."""
        active = self._active_path(feature_id)
        if active.exists():
            return active
        archived = self._archived_path(feature_id)
        if archived.exists():
            return archived
        return active

    def exists(self, feature_id: str) -> bool:
        return self.path_for(feature_id).exists()

    def create(self, title: str, description: str, stage: str) -> Feature:
        """Register a new feature record in stage."""
        now = now_iso()
        feature_id = generate_feature_id()
        while self.exists(feature_id):
            feature_id = generate_feature_id()
        feature = Feature(
            id=feature_id,
            title=title,
            description=description,
            stage=stage,
            created_at=now,
            updated_at=now,
        )
        with feature_lock(self.root, feature_id):
            write_json(self._active_path(feature_id), feature.to_dict(), "feature")
        logger.info(f"[state] created feature {feature_id}: {title}")
        return feature

    def load(self, feature_id: str) -> Feature:
        """
        Load a feature record.

        Raises:
            FeatureNotFound: no record with this id
            CorruptState: record unreadable or fails schema validation
        """
        try:
            data = read_json(self.path_for(feature_id), "feature")
        except FileNotFoundError:
            raise FeatureNotFound(f"Feature not found: {feature_id}") from None
        return Feature.from_dict(data)

    def _write(self, feature: Feature) -> None:
        feature.updated_at = now_iso()
        write_json(self.path_for(feature.id), feature.to_dict(), "feature")

    def save(self, feature: Feature) -> None:
        with feature_lock(self.root, feature.id):
            self._write(feature)

    @contextmanager
    def update(self, feature_id: str) -> Iterator[Feature]:
        """Load, yield for mutation, and save under the feature's lock.

        Nothing is written if the body raises.
        """
        with feature_lock(self.root, feature_id):
            feature = self.load(feature_id)
            yield feature
            self._write(feature)

    def all(self, include_archived: bool = False) -> list[Feature]:
        """Feature records ordered by creation time."""
        paths = sorted(self.dir.glob("*.json")) if self.dir.exists() else []
        if include_archived and self.archive_dir.exists():
            paths += sorted(self.archive_dir.glob("*.json"))
        features = [Feature.from_dict(read_json(p, "feature")) for p in paths]
        return sorted(features, key=lambda f: (f.created_at, f.id))

    def archive(self, feature_id: str) -> Feature:
        """Move a record to the archive and drop its transient artifacts."""
        with feature_lock(self.root, feature_id):
            feature = self.load(feature_id)
            if feature.archived:
                return feature
            feature.archived = True
            feature.updated_at = now_iso()
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            write_json(self._archived_path(feature_id), feature.to_dict(), "feature")
            self._active_path(feature_id).unlink(missing_ok=True)
            for name in TRANSIENT_ARTIFACTS:
                self._artifact_path(feature_id, name).unlink(missing_ok=True)
        logger.info(f"[state] archived feature {feature_id} ({feature.stage})")
        return feature

    # Artifacts

    def _artifact_path(self, feature_id: str, name: str) -> Path:
        return self.artifacts_dir / feature_id / f"{name}.json"

    def save_artifact(self, feature_id: str, name: str, data) -> None:
        write_json(self._artifact_path(feature_id, name), data)

    def load_artifact(self, feature_id: str, name: str, default=None):
        """Stored artifact, or default if absent. Raises CorruptState if unreadable."""
        try:
            return read_json(self._artifact_path(feature_id, name))
        except FileNotFoundError:
            return default

    def has_artifact(self, feature_id: str, name: str) -> bool:
        return self._artifact_path(feature_id, name).exists()

    def delete_artifact(self, feature_id: str, name: str) -> None:
        self._artifact_path(feature_id, name).unlink(missing_ok=True)

    def remove_artifacts(self, feature_id: str) -> None:
        shutil.rmtree(self.artifacts_dir / feature_id, ignore_errors=True)
