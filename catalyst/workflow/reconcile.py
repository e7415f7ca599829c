"""
Three-way reconciliation of a workspace branch with mainline.

Given base (the workspace's parent commit), ours (the workspace) and theirs
(current mainline), edits are combined line by line:

- files touched on only one side take that side
- non-overlapping hunks within a file are combined
- identical edits on both sides are taken once
- overlapping, differing edits become ConflictRegions and are never guessed

Hunks come from difflib.SequenceMatcher opcodes of base against each side.
"""

import logging
from dataclasses import asdict, dataclass, field
from difflib import SequenceMatcher

logger = logging.getLogger(__name__)

MERGED = "merged"
CONFLICTS = "conflicts"

MARKER_OURS = "<<<<<<< workspace"
MARKER_BASE = "||||||| base"
MARKER_SEP = "======="
MARKER_THEIRS = ">>>>>>> mainline"


@dataclass(frozen=True)
class ConflictRegion:
    """Overlapping edits to one region of one file.

    Lines are 1-based and inclusive over the base version. A pure insertion
    point has end_line == start_line - 1.
    """
    path: str
    start_line: int
    end_line: int
    base_text: str
    ours_text: str
    theirs_text: str
    kind: str = "content"  # content, delete_modify, add_add

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ConflictRegion":
        return cls(**data)


@dataclass
class MergeResult:
    """Outcome of reconciliation.

    files holds merged content per path (None means deleted). When status is
    conflicts, files covers only the cleanly merged paths and marked holds the
    conflicted files rendered with conflict markers for a human to resolve.
    """
    status: str
    files: dict[str, str | None] = field(default_factory=dict)
    conflicts: list[ConflictRegion] = field(default_factory=list)
    marked: dict[str, str] = field(default_factory=dict)
    commit_sha: str | None = None
    mainline_commit: str | None = None

    @property
    def is_merged(self) -> bool:
        return self.status == MERGED

    @property
    def conflicted_paths(self) -> list[str]:
        return sorted({c.path for c in self.conflicts})

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "paths": sorted(self.files),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "commit_sha": self.commit_sha,
            "mainline_commit": self.mainline_commit,
        }


@dataclass
class FileMerge:
    path: str
    text: str | None
    conflicts: list[ConflictRegion]
    marked: str | None = None


@dataclass
class _Hunk:
    start: int  # base line index, inclusive
    end: int  # base line index, exclusive
    lines: list[str]
    side: str

    @property
    def is_insertion(self) -> bool:
        return self.start == self.end


def _hunks(base_lines: list[str], other_lines: list[str], side: str) -> list[_Hunk]:
    matcher = SequenceMatcher(None, base_lines, other_lines, autojunk=False)
    return [
        _Hunk(i1, i2, other_lines[j1:j2], side)
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]


def _overlaps(a: _Hunk, b: _Hunk) -> bool:
    if a.is_insertion and b.is_insertion:
        return a.start == b.start
    if a.is_insertion:
        return b.start < a.start < b.end
    if b.is_insertion:
        return a.start < b.start < a.end
    return a.start < b.end and b.start < a.end


def _cluster(hunks: list[_Hunk]) -> list[list[_Hunk]]:
    """Group hunks that transitively overlap, in base order."""
    clusters: list[list[_Hunk]] = []
    for hunk in sorted(hunks, key=lambda h: (h.start, h.end, h.side)):
        if clusters and any(_overlaps(hunk, other) for other in clusters[-1]):
            clusters[-1].append(hunk)
        else:
            clusters.append([hunk])
    return clusters


def _apply(base_lines: list[str], lo: int, hi: int, hunks: list[_Hunk]) -> list[str]:
    out: list[str] = []
    pos = lo
    for hunk in sorted(hunks, key=lambda h: (h.start, h.end)):
        out.extend(base_lines[pos:hunk.start])
        out.extend(hunk.lines)
        pos = hunk.end
    out.extend(base_lines[pos:hi])
    return out


def _with_newline(text: str) -> str:
    return text if not text or text.endswith("\n") else text + "\n"


def _markers(ours: str, base: str, theirs: str) -> str:
    return (
        f"{MARKER_OURS}\n{_with_newline(ours)}"
        f"{MARKER_BASE}\n{_with_newline(base)}"
        f"{MARKER_SEP}\n{_with_newline(theirs)}"
        f"{MARKER_THEIRS}\n"
    )


def _whole_file_conflict(path: str, base: str | None, ours: str | None, theirs: str | None) -> FileMerge:
    if base is None:
        kind, start, end = "add_add", 1, 0
    else:
        kind, start, end = "delete_modify", 1, len(base.splitlines())
    region = ConflictRegion(
        path=path,
        start_line=start,
        end_line=end,
        base_text=base or "",
        ours_text=ours or "",
        theirs_text=theirs or "",
        kind=kind,
    )
    return FileMerge(path, None, [region], _markers(ours or "", base or "", theirs or ""))


def merge_file(path: str, base: str | None, ours: str | None, theirs: str | None) -> FileMerge:
    """Three-way merge of one file. None means the file is absent on that side."""
    if ours == theirs:
        return FileMerge(path, ours, [])
    if ours == base:
        return FileMerge(path, theirs, [])
    if theirs == base:
        return FileMerge(path, ours, [])
    if base is None or ours is None or theirs is None:
        return _whole_file_conflict(path, base, ours, theirs)

    base_lines = base.splitlines(keepends=True)
    clusters = _cluster(
        _hunks(base_lines, ours.splitlines(keepends=True), "ours")
        + _hunks(base_lines, theirs.splitlines(keepends=True), "theirs")
    )

    merged: list[str] = []
    marked: list[str] = []
    conflicts: list[ConflictRegion] = []
    pos = 0
    for cluster in clusters:
        lo = min(h.start for h in cluster)
        hi = max(h.end for h in cluster)
        merged.extend(base_lines[pos:lo])
        marked.extend(base_lines[pos:lo])
        pos = hi

        ours_hunks = [h for h in cluster if h.side == "ours"]
        theirs_hunks = [h for h in cluster if h.side == "theirs"]
        ours_lines = _apply(base_lines, lo, hi, ours_hunks)
        theirs_lines = _apply(base_lines, lo, hi, theirs_hunks)

        if not ours_hunks or not theirs_hunks or ours_lines == theirs_lines:
            resolved = ours_lines if ours_hunks else theirs_lines
            merged.extend(resolved)
            marked.extend(resolved)
            continue

        region = ConflictRegion(
            path=path,
            start_line=lo + 1,
            end_line=hi,
            base_text="".join(base_lines[lo:hi]),
            ours_text="".join(ours_lines),
            theirs_text="".join(theirs_lines),
        )
        conflicts.append(region)
        marked.append(_markers(region.ours_text, region.base_text, region.theirs_text))

    merged.extend(base_lines[pos:])
    marked.extend(base_lines[pos:])

    if conflicts:
        return FileMerge(path, None, conflicts, "".join(marked))
    return FileMerge(path, "".join(merged), [])


def merge_trees(
    base: dict[str, str | None],
    ours: dict[str, str | None],
    theirs: dict[str, str | None],
) -> MergeResult:
    """Merge per-path contents. Paths missing from a mapping count as absent."""
    paths = sorted(set(base) | set(ours) | set(theirs))
    files: dict[str, str | None] = {}
    marked: dict[str, str] = {}
    conflicts: list[ConflictRegion] = []

    for path in paths:
        result = merge_file(path, base.get(path), ours.get(path), theirs.get(path))
        if result.conflicts:
            conflicts.extend(result.conflicts)
            marked[path] = result.marked
        else:
            files[path] = result.text

    if conflicts:
        logger.info(f"[merge] {len(conflicts)} conflict region(s) across {len(marked)} file(s)")
        return MergeResult(status=CONFLICTS, files=files, conflicts=conflicts, marked=marked)

    logger.debug(f"[merge] merged {len(files)} path(s) cleanly")
    return MergeResult(status=MERGED, files=files)


def has_conflict_markers(text: str) -> bool:
    """True if text still contains unresolved conflict markers."""
    return any(
        line.startswith((MARKER_OURS, MARKER_THEIRS)) or line == MARKER_SEP
        for line in text.splitlines()
    )
