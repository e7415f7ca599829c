"""
Snapshots of the mutable documents (settings, project document, fragments).

Each snapshot is a directory snapshots/<reason>_<timestamp>/ holding byte
copies of the documents plus a manifest.json with a sha256 per file.
Feature records are never captured, so their history survives rollback.
"""

import hashlib
import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from catalyst.lib.errors import CorruptState, SnapshotNotFound
from catalyst.state.fragments import FRAGMENTS_DIR
from catalyst.state.io import atomic_write_bytes, now_iso, read_json, write_json
from catalyst.state.locking import document_lock
from catalyst.state.settings import PROJECT_FILE, SETTINGS_FILE

logger = logging.getLogger(__name__)

SNAPSHOTS_DIR = "snapshots"
MANIFEST_FILE = "manifest.json"


@dataclass
class SnapshotInfo:
    id: str
    reason: str
    created_at: str
    files: dict[str, str]
    parent_id: str | None = None


def _slug(reason: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", reason.strip().lower()).strip("_")
    return slug or "snapshot"


def _sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


class SnapshotStore:
    """Capture and restore document state."""

    def __init__(self, root: Path):
        self.root = root
        self.dir = root / SNAPSHOTS_DIR

    def _document_files(self) -> list[str]:
        """Relative paths of the documents currently on disk."""
        files = [name for name in (PROJECT_FILE, SETTINGS_FILE) if (self.root / name).exists()]
        fragments = self.root / FRAGMENTS_DIR
        if fragments.exists():
            files += [f"{FRAGMENTS_DIR}/{p.name}" for p in sorted(fragments.glob("*.md"))]
        return files

    def _new_id(self, reason: str) -> str:
        base = f"{_slug(reason)}_{datetime.now():%Y%m%d_%H%M%S_%f}"
        snapshot_id, n = base, 1
        while (self.dir / snapshot_id).exists():
            n += 1
            snapshot_id = f"{base}_{n}"
        return snapshot_id

    def _capture(self, reason: str, parent_id: str | None = None) -> str:
        """Copy documents into a new snapshot. Caller holds the document lock."""
        snapshot_id = self._new_id(reason)
        target = self.dir / snapshot_id
        files = {}
        for rel in self._document_files():
            data = (self.root / rel).read_bytes()
            atomic_write_bytes(target / rel, data)
            files[rel] = hashlib.sha256(data).hexdigest()
        # Manifest last: a snapshot without one is incomplete and never restored
        write_json(target / MANIFEST_FILE, {
            "id": snapshot_id,
            "reason": reason,
            "created_at": now_iso(),
            "parent_id": parent_id,
            "files": files,
        }, "snapshot")
        logger.info(f"[state] snapshot {snapshot_id} ({len(files)} file(s))")
        return snapshot_id

    def create(self, reason: str) -> str:
        """Snapshot the current documents. Returns the snapshot id."""
        with document_lock(self.root):
            return self._capture(reason)

    def load(self, snapshot_id: str) -> SnapshotInfo:
        """
        Read a snapshot manifest.

        Raises:
            SnapshotNotFound: no such snapshot
            CorruptState: manifest unreadable
        """
        manifest = self.dir / snapshot_id / MANIFEST_FILE
        if not (self.dir / snapshot_id).is_dir():
            raise SnapshotNotFound(f"Snapshot not found: {snapshot_id}")
        try:
            data = read_json(manifest, "snapshot")
        except FileNotFoundError:
            raise CorruptState(manifest, "snapshot has no manifest") from None
        return SnapshotInfo(
            id=data["id"],
            reason=data["reason"],
            created_at=data["created_at"],
            files=data["files"],
            parent_id=data.get("parent_id"),
        )

    def verify(self, snapshot_id: str) -> bool:
        """True if the manifest loads and every captured file matches its hash."""
        try:
            info = self.load(snapshot_id)
        except (CorruptState, SnapshotNotFound):
            return False
        base = self.dir / snapshot_id
        for rel, digest in info.files.items():
            path = base / rel
            if not path.exists() or _sha256(path) != digest:
                return False
        return True

    def all(self) -> list[SnapshotInfo]:
        """Readable snapshots, oldest first."""
        if not self.dir.exists():
            return []
        infos = []
        for entry in self.dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                infos.append(self.load(entry.name))
            except (CorruptState, SnapshotNotFound) as e:
                logger.warning(f"[state] skipping unreadable snapshot {entry.name}: {e}")
        return sorted(infos, key=lambda s: (s.created_at, s.id))

    def latest_valid(self) -> str | None:
        """Most recent snapshot whose files still match the manifest."""
        for info in reversed(self.all()):
            if info.reason != "pre_rollback" and self.verify(info.id):
                return info.id
        return None

    def rollback(self, snapshot_id: str) -> str:
        """
        Restore documents to exactly what snapshot_id captured.

        A pre_rollback snapshot of the current documents is taken first and
        its id returned. Documents that did not exist at capture time are
        removed.

        Raises:
            SnapshotNotFound: no such snapshot
            CorruptState: snapshot incomplete or tampered with
        """
        with document_lock(self.root):
            info = self.load(snapshot_id)
            if not self.verify(snapshot_id):
                raise CorruptState(self.dir / snapshot_id, "snapshot files do not match manifest")

            safety_id = self._capture("pre_rollback", parent_id=snapshot_id)

            for rel in self._document_files():
                if rel not in info.files:
                    (self.root / rel).unlink()
            source = self.dir / snapshot_id
            for rel in info.files:
                atomic_write_bytes(self.root / rel, (source / rel).read_bytes())

        logger.warning(f"[state] rolled back documents to {snapshot_id} (previous state in {safety_id})")
        return safety_id

    def delete(self, snapshot_id: str) -> None:
        shutil.rmtree(self.dir / snapshot_id, ignore_errors=True)
