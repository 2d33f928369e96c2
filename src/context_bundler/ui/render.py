"""Output rendering for the context-bundler CLI.

File: src/context_bundler/ui/render.py
Last updated: 2026-02-16

Purpose
- Print command results either as one deterministic JSON object per command
  (``--json``) or as short plain-text summaries for a terminal.

Functional requirements
- JSON output is sorted and compact so it can be diffed and piped.
- Plain-text rendering needs nothing beyond the standard library.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Mapping, Sequence
from typing import TextIO


def dumps_json(payload: Mapping[str, object]) -> str:
    """Deterministic JSON encoding used for every ``--json`` payload."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class CLIRenderer:
    """Thin plain-text renderer writing to ``stream`` (stdout by default)."""

    def __init__(self, *, verbose: bool = False, stream: TextIO | None = None) -> None:
        self.verbose = verbose
        self._stream = stream

    def _write(self, line: str) -> None:
        print(line, file=self._stream if self._stream is not None else sys.stdout)

    def json(self, payload: Mapping[str, object]) -> None:
        self._write(dumps_json(payload))

    def heading(self, text: str) -> None:
        self._write(text)

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._write(f"\n{title}")

    def warning(self, text: str) -> None:
        self._write(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a left-aligned ASCII table; nothing when ``rows`` is empty."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(header) for header in headers]
        for row in rows:
            for index in range(min(len(row), col_count)):
                widths[index] = max(widths[index], len(str(row[index])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for index in range(col_count):
                cell = str(cells[index]) if index < len(cells) else ""
                parts.append(cell.ljust(widths[index]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._write(f"  {_pad(list(headers))}")
        self._write(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self._write(f"  {_pad(list(row))}")

    def ok(self, label: str) -> None:
        self._write(f"  OK  {label}")

    def fail(self, label: str) -> None:
        self._write(f"  FAIL  {label}")

    # ------------------------------------------------------------------
    # Result summaries

    def build_error(self, payload: Mapping[str, object]) -> None:
        self.fail(f"{payload.get('kind')}: {payload.get('message')}")
        details = payload.get("details")
        breakdown = details.get("section_breakdown") if isinstance(details, Mapping) else None
        if isinstance(breakdown, Mapping):
            rows = [
                [str(name), str(size)]
                for name, size in sorted(breakdown.items(), key=lambda item: str(item[0]))
            ]
            self.table(["section", "characters"], rows, title="Section breakdown:")

    def budget(self, payload: Mapping[str, object]) -> None:
        self.kv(
            "Budget",
            f"{payload.get('character_count')} / {payload.get('hard_limit')} characters "
            f"({payload.get('display_name')})",
        )
        if payload.get("exceeds"):
            self.warning(f"over budget by {payload.get('overage')} characters")

    def degraded(self, reasons: Sequence[Mapping[str, object]]) -> None:
        if not reasons:
            return
        self.section("Degraded sources:")
        self.items(
            [
                f"{item.get('source')} ({item.get('code')}): {item.get('message')}"
                for item in reasons
            ]
        )

    def ranking(self, entries: Sequence[Mapping[str, object]]) -> None:
        rows = [
            [
                "*" if entry.get("selected") else "",
                str(entry.get("artifact_id")),
                f"{float(str(entry.get('score', 0.0))):.2f}",
                str(entry.get("title")),
                str(entry.get("exclusion_reason") or ""),
            ]
            for entry in entries
        ]
        if not rows:
            self.text("No candidate artifacts.")
            return
        self.table(["sel", "artifact", "score", "title", "excluded"], rows)

    def messages(self, title: str, entries: Sequence[str]) -> None:
        if entries:
            self.section(title)
            self.items(list(entries))


def create_renderer(*, verbose: bool = False, stream: TextIO | None = None) -> CLIRenderer:
    return CLIRenderer(verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer", "dumps_json"]
