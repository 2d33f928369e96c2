from __future__ import annotations

import pytest

from context_bundler.knowledge_plane.instructions import (
    load_instruction_dir,
    parse_instruction,
    split_front_matter,
)

from tests import REPO


def test_front_matter_is_split_from_body() -> None:
    front, body = split_front_matter("---\ntitle: Style\n---\n\nUse ruff.\n")
    assert front == {"title": "Style"}
    assert body == "Use ruff.\n"

    assert split_front_matter("No front matter here.") == ({}, "No front matter here.")


def test_invalid_front_matter_is_reported_with_location() -> None:
    with pytest.raises(ValueError, match="style.md: invalid YAML"):
        split_front_matter("---\ntitle: [unclosed\n---\nbody", location="style.md")
    with pytest.raises(ValueError, match="front matter must be a mapping"):
        split_front_matter("---\n- a\n- b\n---\nbody")


def test_defaults_come_from_the_filename() -> None:
    instruction = parse_instruction(
        REPO, "error-handling.md", "---\nagent_types: qa\n---\nRaise typed errors.\n"
    )

    assert instruction.topic_id == "error-handling"
    assert instruction.title == "error handling"
    assert instruction.agent_types == ("qa",)
    assert instruction.always_apply is False
    assert instruction.content_md == "Raise typed errors.\n"


def test_camel_case_keys_are_accepted() -> None:
    instruction = parse_instruction(
        REPO,
        "style.mdc",
        "---\ntopicId: code-style\nagentTypes: [implementation, qa, qa]\nalwaysApply: true\n---\n"
        "Format with ruff.\n",
    )

    assert instruction.topic_id == "code-style"
    assert instruction.agent_types == ("implementation", "qa")
    assert instruction.always_apply is True
    assert instruction.applies_to("process-review")


def test_instruction_without_targets_applies_to_no_role() -> None:
    instruction = parse_instruction(REPO, "notes.md", "Just notes.\n")
    assert not instruction.applies_to("implementation")


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("---\nowner: alice\n---\nbody", "unsupported front matter keys: owner"),
        ("---\nalways_apply: 'yes'\n---\nbody", "always_apply must be a boolean"),
        ("---\nagent_types: [1, 2]\n---\nbody", "agent_types must be a list of strings"),
    ],
)
def test_invalid_instruction_files(text: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_instruction(REPO, "bad.md", text)


def test_load_instruction_dir_reads_markdown_sorted(tmp_path) -> None:
    (tmp_path / "b-testing.md").write_text("---\nagent_types: [qa]\n---\nTest.\n", "utf-8")
    (tmp_path / "a-style.mdc").write_text("---\nalways_apply: true\n---\nStyle.\n", "utf-8")
    (tmp_path / "readme.txt").write_text("ignored", "utf-8")
    (tmp_path / "nested").mkdir()

    loaded = load_instruction_dir(REPO, tmp_path)

    assert [item.filename for item in loaded] == ["a-style.mdc", "b-testing.md"]
    assert all(item.repo_full_name == REPO for item in loaded)


def test_load_instruction_dir_requires_a_directory(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_instruction_dir(REPO, tmp_path / "missing")
    file_path = tmp_path / "file.md"
    file_path.write_text("x", "utf-8")
    with pytest.raises(NotADirectoryError):
        load_instruction_dir(REPO, file_path)
