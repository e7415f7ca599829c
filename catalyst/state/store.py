"""
StateStore: one façade over the state directory.

Layout:
    <state_dir>/
        .gitignore              keeps the directory out of mainline status
        settings.env            key-value settings
        project.json            project configuration document
        plan/<fragment>.md      plan document fragments
        features/<id>.json      one record per feature (features/_archived/ once terminal)
        artifacts/<id>/*.json   stage outputs per feature
        interactions/<id>.jsonl append-only human interaction records
        snapshots/<id>/         document snapshots
        locks/                  flock files

Callers go through the narrow interfaces (config, fragments, features,
interactions) plus snapshot/rollback, never through the files directly.
"""

import logging
from pathlib import Path

from catalyst.lib.config import EngineConfig, ProjectMode, resolve_config
from catalyst.lib.errors import CorruptState
from catalyst.state.features import FeatureShards
from catalyst.state.fragments import FragmentStore
from catalyst.state.interactions import InteractionLog
from catalyst.state.settings import ConfigStore, ProjectDocument
from catalyst.state.snapshots import SnapshotStore

logger = logging.getLogger(__name__)


class StateStore:
    """Transactional persistence for one project."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.config = ConfigStore(self.root)
        self.fragments = FragmentStore(self.root)
        self.features = FeatureShards(self.root)
        self.interactions = InteractionLog(self.root)
        self.snapshots = SnapshotStore(self.root)

    def ensure_layout(self) -> None:
        """Create the state directory and its ignore file."""
        self.root.mkdir(parents=True, exist_ok=True)
        gitignore = self.root / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("*\n")

    def init_project(
        self,
        name: str,
        mode: ProjectMode = ProjectMode.LAB,
        stack: list[str] | None = None,
        metadata: dict | None = None,
    ) -> ProjectDocument:
        """Create project document and default fragments. Idempotent."""
        self.ensure_layout()
        doc = self.config.load_project()
        if doc is None:
            doc = ProjectDocument.new(name, mode, stack)
            doc.metadata = dict(metadata or {})
            self.config.save_project(doc)
            logger.info(f"[state] initialized project {doc.project_id} ({mode.value}) at {self.root}")
        self.fragments.ensure_defaults()
        return doc

    def engine_config(self) -> EngineConfig:
        """Resolve EngineConfig from the project mode and settings."""
        doc = self.config.load_project()
        return resolve_config(doc.mode if doc else None, self.config.settings())

    def snapshot(self, reason: str) -> str:
        return self.snapshots.create(reason)

    def rollback(self, snapshot_id: str) -> str:
        return self.snapshots.rollback(snapshot_id)

    def verify_documents(self) -> None:
        """
        Load every document once so corruption surfaces early.

        Raises:
            CorruptState: settings, project document or a fragment is unreadable
        """
        self.config.settings()
        self.config.load_project()
        for name in self.fragments.names():
            path = self.fragments.path_for(name)
            try:
                path.read_text(encoding="utf-8")
            except UnicodeDecodeError as e:
                raise CorruptState(path, f"fragment is not valid UTF-8: {e}") from None

    def recover(self) -> None:
        """
        Verify documents; on corruption roll back to the latest valid snapshot.

        Returns quietly when documents are healthy.

        Raises:
            CorruptState: always when corruption was found, with restored_from
                set to the snapshot used (None if no valid snapshot existed)
        """
        try:
            self.verify_documents()
            return
        except CorruptState as e:
            logger.error(f"[state] {e}")
            snapshot_id = self.snapshots.latest_valid()
            if snapshot_id is None:
                raise
            self.rollback(snapshot_id)
            raise CorruptState(e.path, e.message, restored_from=snapshot_id) from e
