"""
Plan document fragments.

Each named section of the project plan is its own markdown file under
plan/, so a fragment can be read or rewritten without touching the rest.
"""

import logging
from pathlib import Path

from catalyst.state.io import atomic_write_text
from catalyst.state.locking import document_lock

logger = logging.getLogger(__name__)

FRAGMENTS_DIR = "plan"

DEFAULT_FRAGMENTS = {
    "context": "# Context\n\n",
    "unknowns": "# Unknowns\n\n",
    "architecture": "# Architecture\n\n",
    "features": "# Features\n\n",
    "constraints": "# Constraints\n\n",
    "decisions": "# Decisions\n\n",
}


def normalize_slug(name: str) -> str:
    """Fragment file stem for a section name: "Unknowns.md" -> "unknowns"."""
    slug = name.strip()
    if slug.lower().endswith(".md"):
        slug = slug[:-3]
    slug = slug.strip().lower().replace(" ", "_")
    if not slug or "/" in slug or "\\" in slug or slug.startswith("."):
        raise ValueError(f"Invalid fragment name: {name!r}")
    return slug


class FragmentStore:
    """Named markdown fragments, serialized through the document lock."""

    def __init__(self, root: Path):
        self.root = root
        self.dir = root / FRAGMENTS_DIR

    def path_for(self, name: str) -> Path:
        return self.dir / f"{normalize_slug(name)}.md"

    def read(self, name: str) -> str | None:
        """Fragment content, or None if it does not exist."""
        path = self.path_for(name)
        with document_lock(self.root):
            if not path.exists():
                return None
            return path.read_text()

    def write(self, name: str, content: str) -> None:
        path = self.path_for(name)
        with document_lock(self.root):
            atomic_write_text(path, content)
        logger.debug(f"[state] wrote fragment {path.stem}")

    def append(self, name: str, text: str) -> None:
        """Append a block to a fragment, creating it if needed."""
        path = self.path_for(name)
        with document_lock(self.root):
            current = path.read_text() if path.exists() else ""
            if current and not current.endswith("\n"):
                current += "\n"
            atomic_write_text(path, current + text.rstrip("\n") + "\n")

    def names(self) -> list[str]:
        if not self.dir.exists():
            return []
        return sorted(p.stem for p in self.dir.glob("*.md"))

    def ensure_defaults(self) -> list[str]:
        """Create any missing default fragments. Returns names created."""
        created = []
        with document_lock(self.root):
            for name, header in DEFAULT_FRAGMENTS.items():
                path = self.dir / f"{name}.md"
                if not path.exists():
                    atomic_write_text(path, header)
                    created.append(name)
        return created
