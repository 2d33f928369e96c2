"""Deterministic ``repo_context`` and ``recent_deltas`` sections derived from a change request."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final

from context_bundler.integration_plane.sources import ChangedFile

ORDERING_NOTE: Final[str] = (
    "Ordered by: recent_deltas → distilled references → pinned/core; "
    "then lexicographic path"
)
DEFAULT_MAX_FILES: Final[int] = 5
DEFAULT_EXCERPT_MAX_CHARS: Final[int] = 300
DEFAULT_DELTA_SUMMARY_MAX_CHARS: Final[int] = 500

_CONTEXT_LINES_KEPT: Final[int] = 3
_CONTEXT_LINES_BEFORE_ADDITIONS: Final[int] = 2
_BOUNDARY_FRACTION: Final[float] = 0.8
_ELLIPSIS: Final[str] = "..."

_HUNK_HEADER: Final[re.Pattern[str]] = re.compile(r"@@\s*-\d+(?:,\d+)?\s*\+(\d+)(?:,(\d+))?")
_DIFF_FILE_HEADER: Final[re.Pattern[str]] = re.compile(r"^diff --git a/(.+?) b/", re.MULTILINE)


@dataclass(frozen=True, slots=True)
class RepoContextEntry:
    path: str
    excerpt: str
    line_range: tuple[int, int] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"path": self.path}
        if self.line_range is not None:
            payload["line_range"] = list(self.line_range)
        payload["excerpt"] = self.excerpt
        return payload


def build_repo_context(
    repo_full_name: str,
    files: Iterable[ChangedFile],
    *,
    max_files: int = DEFAULT_MAX_FILES,
    excerpt_max_chars: int = DEFAULT_EXCERPT_MAX_CHARS,
) -> dict[str, object]:
    """Pick the largest changes (ties by path) and render one pointer per file."""
    ordered = sorted(files, key=lambda item: (-item.changes, item.path))[: max(0, max_files)]
    entries = [_entry_for(item, excerpt_max_chars) for item in ordered]
    return empty_repo_context(repo_full_name) | {"entries": [entry.to_dict() for entry in entries]}


def empty_repo_context(repo_full_name: str) -> dict[str, object]:
    return {"repo_full_name": repo_full_name, "ordering_note": ORDERING_NOTE, "entries": []}


def first_hunk_range(patch: str) -> tuple[int, int] | None:
    """``@@ -a,b +c,d @@`` gives ``(c, c + d - 1)``; a missing ``d`` counts as 1."""
    match = _HUNK_HEADER.search(patch)
    if match is None:
        return None
    start = int(match.group(1))
    count = int(match.group(2)) if match.group(2) is not None else 1
    return start, start + count - 1


def excerpt_from_patch(patch: str, *, max_chars: int = DEFAULT_EXCERPT_MAX_CHARS) -> str:
    """Added lines, led by up to two context lines; context-only hunks keep up to three."""
    added: list[str] = []
    context: list[str] = []
    for line in patch.split("\n"):
        if line.startswith("+") and not line.startswith("+++"):
            added.append(line[1:])
        elif line.startswith(" ") and len(context) < _CONTEXT_LINES_KEPT:
            context.append(line[1:])
        if len("\n".join(_excerpt_parts(added, context))) >= max_chars:
            break

    return truncate_excerpt("\n".join(_excerpt_parts(added, context)), max_chars)


def truncate_excerpt(text: str, max_chars: int) -> str:
    """Cut at a newline, else a space, past 80% of ``max_chars``; else hard cut. Adds ``...``."""
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    threshold = max_chars * _BOUNDARY_FRACTION
    last_newline = truncated.rfind("\n")
    if last_newline > threshold:
        return truncated[:last_newline] + _ELLIPSIS
    last_space = truncated.rfind(" ")
    if last_space > threshold:
        return truncated[:last_space] + _ELLIPSIS
    return truncated + _ELLIPSIS


def recent_deltas_from_diff(
    diff: str, *, max_chars: int = DEFAULT_DELTA_SUMMARY_MAX_CHARS
) -> dict[str, object]:
    summary = diff[:max_chars] + (_ELLIPSIS if len(diff) > max_chars else "")
    files_touched = [path for path in _DIFF_FILE_HEADER.findall(diff) if path]
    return {"summary": summary, "files_touched": files_touched}


def _excerpt_parts(added: list[str], context: list[str]) -> list[str]:
    if added:
        return [*context[:_CONTEXT_LINES_BEFORE_ADDITIONS], *added]
    return list(context)


def _entry_for(item: ChangedFile, excerpt_max_chars: int) -> RepoContextEntry:
    if not item.patch:
        return RepoContextEntry(path=item.path, excerpt=f"[File: {item.path}]")
    return RepoContextEntry(
        path=item.path,
        excerpt=excerpt_from_patch(item.patch, max_chars=excerpt_max_chars),
        line_range=first_hunk_range(item.patch),
    )


__all__ = [
    "ORDERING_NOTE",
    "RepoContextEntry",
    "build_repo_context",
    "empty_repo_context",
    "excerpt_from_patch",
    "first_hunk_range",
    "recent_deltas_from_diff",
    "truncate_excerpt",
]
