"""Load agent instruction files (``*.md`` / ``*.mdc`` with YAML front matter)."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Final, TypeAlias, cast

import yaml

from context_bundler.domain.models import Instruction

PathLike: TypeAlias = str | os.PathLike[str]

INSTRUCTION_SUFFIXES: Final[tuple[str, ...]] = (".md", ".mdc")
_FRONT_MATTER_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL
)
_ALLOWED_FRONT_MATTER_KEYS: Final[frozenset[str]] = frozenset(
    {
        "agent_types",
        "agentTypes",
        "always_apply",
        "alwaysApply",
        "description",
        "title",
        "topic_id",
        "topicId",
    }
)


def split_front_matter(text: str, *, location: str = "<text>") -> tuple[dict[str, object], str]:
    """Return ``(front_matter, body)``; text without a front-matter block has ``{}``."""
    match = _FRONT_MATTER_PATTERN.match(text)
    if match is None:
        return {}, text
    try:
        loaded = cast("object", yaml.safe_load(match.group(1)))
    except yaml.YAMLError as exc:
        raise ValueError(f"{location}: invalid YAML front matter ({exc})") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, Mapping):
        raise ValueError(f"{location}: front matter must be a mapping, got {type(loaded).__name__}")
    return {str(key): value for key, value in loaded.items()}, text[match.end() :].lstrip("\r\n")


def parse_instruction(repo_full_name: str, filename: str, text: str) -> Instruction:
    front, body = split_front_matter(text, location=filename)
    unknown = sorted(set(front) - _ALLOWED_FRONT_MATTER_KEYS)
    if unknown:
        raise ValueError(f"{filename}: unsupported front matter keys: {', '.join(unknown)}")

    stem = Path(filename).stem
    topic_id = _first_str(front, "topic_id", "topicId") or stem
    title = _first_str(front, "title") or stem.replace("-", " ")
    agent_types = _agent_types(front, filename)
    always_apply = front.get("always_apply", front.get("alwaysApply", False))
    if not isinstance(always_apply, bool):
        raise ValueError(f"{filename}: always_apply must be a boolean")

    return Instruction(
        repo_full_name=repo_full_name,
        topic_id=topic_id,
        filename=filename,
        title=title,
        content_md=body,
        agent_types=agent_types,
        always_apply=always_apply,
    )


def load_instruction_dir(repo_full_name: str, directory: PathLike) -> list[Instruction]:
    """Parse every instruction file in ``directory`` (non-recursive), ordered by filename."""
    root = Path(directory).expanduser()
    if not root.exists():
        raise FileNotFoundError(f"instruction directory does not exist: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"instruction path is not a directory: {root}")

    files = sorted(
        (path for path in root.iterdir() if path.is_file() and path.suffix in INSTRUCTION_SUFFIXES),
        key=lambda path: path.name,
    )
    return [
        parse_instruction(repo_full_name, path.name, path.read_text(encoding="utf-8"))
        for path in files
    ]


def _first_str(front: Mapping[str, object], *keys: str) -> str:
    for key in keys:
        value = front.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _agent_types(front: Mapping[str, object], filename: str) -> tuple[str, ...]:
    raw = front.get("agent_types", front.get("agentTypes", ()))
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise ValueError(f"{filename}: agent_types must be a list of strings")
    values: list[str] = []
    for item in raw:
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"{filename}: agent_types must be a list of strings")
        if item.strip() not in values:
            values.append(item.strip())
    return tuple(values)


__all__ = [
    "INSTRUCTION_SUFFIXES",
    "load_instruction_dir",
    "parse_instruction",
    "split_front_matter",
]
