from __future__ import annotations

import pytest

from context_bundler.integration_plane.sources import ChangedFile
from context_bundler.synthesis_plane.repo_context import (
    ORDERING_NOTE,
    build_repo_context,
    empty_repo_context,
    excerpt_from_patch,
    first_hunk_range,
    recent_deltas_from_diff,
    truncate_excerpt,
)

from tests import REPO, SAMPLE_DIFF, SAMPLE_PATCH


def test_excerpt_keeps_leading_context_and_added_lines() -> None:
    assert excerpt_from_patch(SAMPLE_PATCH) == (
        "    header = read_header(buffer)\n"
        "    length = header.length\n"
        "    if length > MAX_FRAME:\n"
        "        raise FrameTooLarge(length)"
    )


def test_context_only_hunk_keeps_three_lines() -> None:
    patch = "@@ -1,5 +1,4 @@\n one\n two\n three\n four\n-five\n"

    assert excerpt_from_patch(patch) == "one\ntwo\nthree"


@pytest.mark.parametrize(
    ("patch", "expected"),
    [
        ("@@ -10,3 +10,4 @@ def parse", (10, 13)),
        ("@@ -1 +7 @@", (7, 7)),
        ("no hunk header", None),
    ],
)
def test_first_hunk_range(patch: str, expected: tuple[int, int] | None) -> None:
    assert first_hunk_range(patch) == expected


def test_truncate_prefers_line_then_word_boundaries() -> None:
    assert truncate_excerpt("short", 50) == "short"
    assert truncate_excerpt("word " * 20, 50) == ("word " * 10).rstrip() + "..."
    assert truncate_excerpt("abcdefghi\n" * 10, 50) == ("abcdefghi\n" * 5).rstrip("\n") + "..."
    assert truncate_excerpt("x" * 60, 50) == "x" * 50 + "..."


def test_repo_context_picks_the_largest_changes() -> None:
    files = [
        ChangedFile(path="b.py", additions=3, deletions=2, patch=SAMPLE_PATCH),
        ChangedFile(path="a.py", additions=5, deletions=0, patch=SAMPLE_PATCH),
        ChangedFile(path="z.bin", additions=10, deletions=0),
        ChangedFile(path="c.py", additions=1, deletions=0, patch=SAMPLE_PATCH),
    ]

    context = build_repo_context(REPO, files, max_files=3)

    assert context["repo_full_name"] == REPO
    assert context["ordering_note"] == ORDERING_NOTE
    entries = context["entries"]
    assert [entry["path"] for entry in entries] == ["z.bin", "a.py", "b.py"]
    assert entries[0] == {"path": "z.bin", "excerpt": "[File: z.bin]"}
    assert entries[1]["line_range"] == [10, 13]


def test_empty_repo_context_has_no_entries() -> None:
    assert empty_repo_context(REPO)["entries"] == []
    assert build_repo_context(REPO, [], max_files=5)["entries"] == []


def test_recent_deltas_summarize_the_diff() -> None:
    deltas = recent_deltas_from_diff(SAMPLE_DIFF)
    assert deltas == {"summary": SAMPLE_DIFF, "files_touched": ["src/parser.py"]}

    short = recent_deltas_from_diff(SAMPLE_DIFF, max_chars=10)
    assert short["summary"] == SAMPLE_DIFF[:10] + "..."
