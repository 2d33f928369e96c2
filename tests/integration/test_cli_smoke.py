"""
context-bundler — CLI subprocess smoke contracts

File: tests/integration/test_cli_smoke.py
Last updated: 2026-02-16

Purpose
- Drive ``python -m context_bundler`` against a real git clone and state DB.
- Verify exit codes, JSON payloads and the files the commands leave behind.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"
REPO = "acme/widgets"
WORK_ITEM = "W-101"
ROLE = "implementation-agent"
TARGET = ("--repo", REPO, "--work-item", WORK_ITEM)

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _env(home: Path) -> dict[str, str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("BUNDLER_")}
    existing_pythonpath = env.get("PYTHONPATH")
    env["PYTHONPATH"] = (
        str(SRC_PATH)
        if not existing_pythonpath
        else f"{SRC_PATH}{os.pathsep}{existing_pythonpath}"
    )
    env["HOME"] = str(home)
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GIT_CONFIG_NOSYSTEM"] = "1"
    for prefix in ("GIT_AUTHOR", "GIT_COMMITTER"):
        env[f"{prefix}_NAME"] = "Bundler Smoke"
        env[f"{prefix}_EMAIL"] = "smoke@example.invalid"
    return env


def _run_cli(repo_root: Path, env: dict[str, str], *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "context_bundler", *args],
        cwd=repo_root,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def _git(repo_root: Path, env: dict[str, str], *args: str) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=repo_root, text=True, capture_output=True, check=False, env=env
    )
    if completed.returncode != 0:
        detail = completed.stderr.strip() or completed.stdout.strip()
        raise RuntimeError(f"git command failed: git {' '.join(args)}: {detail}")
    return completed.stdout.strip()


def _write(path: Path, contents: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")


def _commit(repo_root: Path, env: dict[str, str], message: str) -> str:
    _git(repo_root, env, "add", "--all")
    _git(repo_root, env, "commit", "-q", "-m", message)
    return _git(repo_root, env, "rev-parse", "HEAD")


def _red() -> dict[str, object]:
    return {
        "title": "Frame parser hardening",
        "description": "Harden the frame parser against malformed input from peers.",
        "functional_requirements": [
            "Reject frames whose declared length exceeds 64 KiB",
            "Parse nested frames up to a depth of eight levels",
            "Report the byte offset of the first malformed header",
            "Expose a streaming API that yields one frame at a time",
            "Preserve frame ordering across partial socket reads",
        ],
        "edge_cases": [
            f"Edge case number {index} is covered by a dedicated parser test" for index in range(8)
        ],
        "non_functional_requirements": ["Parsing one megabyte completes under fifty milliseconds"],
        "out_of_scope": ["Compression of frame payloads is handled by another layer"],
        "assumptions": ["Peers always send big-endian length prefixes on the wire"],
        "acceptance_criteria": ["All edge cases are covered by parser unit tests"],
    }


@pytest.fixture
def workspace(tmp_path: Path) -> tuple[Path, dict[str, str], str, str]:
    home = tmp_path / "home"
    home.mkdir()
    env = _env(home)
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    _git(repo_root, env, "init", "-q")
    parser = repo_root / "src" / "parser.py"
    _write(parser, "MAX_FRAME = 1024\n\n\ndef parse(buffer):\n    return []\n")
    base = _commit(repo_root, env, "initial parser")
    _write(
        parser,
        "MAX_FRAME = 65536\n\ndef parse(buffer):\n    if len(buffer) > MAX_FRAME:\n"
        "        raise ValueError('frame too large')\n    return []\n",
    )
    head = _commit(repo_root, env, "raise frame limit")

    _write(repo_root / "red.json", json.dumps(_red()))
    _write(
        repo_root / ".bundler" / "instructions" / "testing.md",
        "---\ntitle: Testing\nagent_types: [implementation]\n---\nRun pytest before pushing.\n",
    )
    return repo_root, env, base, head


def test_cli_generate_verify_render_roundtrip(workspace) -> None:
    repo_root, env, base, head = workspace

    inserted = _run_cli(repo_root, env, "red-insert", *TARGET, "--file", "red.json", "--json")
    assert inserted.returncode == 0, inserted.stderr
    assert json.loads(inserted.stdout)["validation_status"] == "valid"

    imported = _run_cli(repo_root, env, "import-instructions", "--repo", REPO, "--json")
    assert imported.returncode == 0, imported.stderr
    assert json.loads(imported.stdout)["filenames"] == ["testing.md"]

    change = ("--base-sha", base, "--head-sha", head)
    generated = _run_cli(repo_root, env, "generate", *TARGET, "--role", ROLE, *change, "--json")
    assert generated.returncode == 0, generated.stderr
    payload = json.loads(generated.stdout)
    bundle = payload["bundle"]["bundle_json"]
    assert bundle["recent_deltas"]["files_touched"] == ["src/parser.py"]
    assert [entry["path"] for entry in bundle["repo_context"]["entries"]] == ["src/parser.py"]
    assert [item["filename"] for item in bundle["instructions"]] == ["testing.md"]
    assert payload["receipt"]["change_ref"]["base_sha"] == base
    assert (repo_root / "state" / "bundler.sqlite3").is_file()

    bundle_id = payload["bundle"]["bundle_id"]
    verified = _run_cli(repo_root, env, "verify", "--bundle-id", bundle_id, "--json")
    assert verified.returncode == 0, verified.stderr
    assert json.loads(verified.stdout)["report"]["passed"] is True

    rendered = _run_cli(repo_root, env, "render", "--bundle-id", bundle_id)
    assert rendered.returncode == 0, rendered.stderr
    assert rendered.stdout.startswith("# Handoff: Frame parser hardening\n")
    assert "## Recent changes" in rendered.stdout
    assert "Run pytest before pushing." in rendered.stdout


def test_cli_unknown_profile_is_a_config_error(workspace) -> None:
    repo_root, env, _base, _head = workspace

    completed = _run_cli(repo_root, env, "config", "--profile", "missing")

    assert completed.returncode == 2
    assert "profile 'missing' is not defined" in completed.stderr


def test_cli_unreachable_revision_degrades_the_preview(workspace) -> None:
    repo_root, env, base, _head = workspace
    inserted = _run_cli(repo_root, env, "red-insert", *TARGET, "--file", "red.json")
    assert inserted.returncode == 0, inserted.stderr

    change = ("--base-sha", base, "--head-sha", "f" * 40)
    completed = _run_cli(repo_root, env, "preview", *TARGET, "--role", ROLE, *change, "--json")

    assert completed.returncode == 0, completed.stderr
    degraded = json.loads(completed.stdout)["degraded"]
    assert {item["code"] for item in degraded if item["source"] == "diff"} == {"fetch_failed"}
