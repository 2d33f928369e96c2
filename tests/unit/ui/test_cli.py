from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from context_bundler.main import ExitCode, cli_entrypoint
from context_bundler.persistence.repositories import ArtifactRepo
from context_bundler.persistence.state_db import StateDB, StateDBError
from context_bundler.synthesis_plane.handoff import verify_handoff_digest

from tests import REPO, ROLE, WORK_ITEM, make_artifact, make_red_json


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.chdir(tmp_path)
    for name in ("BUNDLER_PROFILE", "BUNDLER_PATHS_STATE_DB", "BUNDLER_OBSERVABILITY_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    yield
    structlog.reset_defaults()


@pytest.fixture
def cli(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    state_db = tmp_path / "state.sqlite3"
    log_dir = tmp_path / "logs"

    def run(*args: str, json_output: bool = True) -> tuple[int, object, str]:
        argv = [*args, "--state-db", str(state_db), "--log-dir", str(log_dir)]
        if json_output:
            argv.append("--json")
        code = cli_entrypoint(argv)
        captured = capsys.readouterr()
        payload: object = captured.out
        if json_output and captured.out.strip():
            payload = json.loads(captured.out)
        return code, payload, captured.err

    run.state_db = state_db  # type: ignore[attr-defined]
    return run


def _write_red(tmp_path: Path, *, valid: bool = True) -> Path:
    path = tmp_path / ("red.json" if valid else "red-invalid.json")
    path.write_text(json.dumps(make_red_json(valid=valid)), encoding="utf-8")
    return path


_RED_TARGET = ("--repo", REPO, "--work-item", WORK_ITEM)
_TARGET = ("--repo", REPO, "--work-item", WORK_ITEM, "--role", ROLE)


def test_generate_receipt_verify_render_flow(cli, tmp_path: Path) -> None:
    code, inserted, _ = cli("red-insert", *_RED_TARGET, "--file", str(_write_red(tmp_path)))
    assert code == ExitCode.SUCCESS
    assert inserted["validation_status"] == "valid"

    code, generated, _ = cli("generate", *_TARGET)
    assert code == ExitCode.SUCCESS
    assert generated["command"] == "generate"
    bundle_id = generated["bundle"]["bundle_id"]
    receipt_id = generated["receipt"]["receipt_id"]
    assert generated["bundle"]["version"] == 1

    code, receipt, _ = cli("receipt", "--bundle-id", bundle_id)
    assert code == ExitCode.SUCCESS
    assert receipt["receipt"]["receipt_id"] == receipt_id

    code, verified, _ = cli("verify", "--receipt-id", receipt_id)
    assert code == ExitCode.SUCCESS
    assert verified["report"]["passed"] is True

    output = tmp_path / "out" / "handoff.md"
    code, rendered, _ = cli("render", "--bundle-id", bundle_id, "--output", str(output))
    assert code == ExitCode.SUCCESS
    assert rendered["output"] == output.as_posix()
    assert verify_handoff_digest(output.read_text(encoding="utf-8"))

    code, check, _ = cli("cold-start-check")
    assert code == ExitCode.SUCCESS
    assert check["check"]["verdict"] == "PASS"

    code, listed, _ = cli("cold-start-check", "--list")
    assert code == ExitCode.SUCCESS
    assert [item["check_id"] for item in listed["checks"]] == [check["check"]["check_id"]]


def test_text_output_is_human_readable(cli, tmp_path: Path) -> None:
    cli("red-insert", *_RED_TARGET, "--file", str(_write_red(tmp_path)))

    code, text, _ = cli("generate", *_TARGET, json_output=False)

    assert code == ExitCode.SUCCESS
    assert "  OK  bundle " in text
    assert "Budget: " in text
    assert "(Implementation Agent)" in text


def test_generate_without_valid_red_is_rejected(cli, tmp_path: Path) -> None:
    invalid = _write_red(tmp_path, valid=False)
    code, inserted, _ = cli("red-insert", *_RED_TARGET, "--file", str(invalid))
    assert code == ExitCode.SUCCESS
    assert inserted["validation_status"] == "invalid"
    assert inserted["validation"]["pass"] is False

    code, payload, _ = cli("generate", *_TARGET)

    assert code == ExitCode.REJECTED
    assert payload["error"]["kind"] == "no_valid_requirements_document"


def test_rank_and_pin_commands(cli, tmp_path: Path) -> None:
    db = StateDB(cli.state_db)
    artifacts = [ArtifactRepo(db).add(make_artifact(seed)) for seed in range(3)]
    oldest = artifacts[-1].artifact_id

    code, pinned, _ = cli("pin", "--work-item", WORK_ITEM, "--artifact", oldest, "--role", ROLE)
    assert code == ExitCode.SUCCESS
    assert pinned["status"] == "pinned"

    code, ranked, _ = cli("rank", *_TARGET, "--max-artifacts", "1")
    assert code == ExitCode.SUCCESS
    selected = [item["artifact_id"] for item in ranked["ranking"] if item["selected"]]
    assert selected == [oldest]

    code, unpinned, _ = cli("unpin", "--work-item", WORK_ITEM, "--artifact", oldest)
    assert code == ExitCode.SUCCESS
    assert unpinned["status"] == "unpinned"


def test_lookup_failures_exit_with_rejected(cli) -> None:
    code, _, err = cli("receipt", "--bundle-id", "bnd-missing")
    assert code == ExitCode.REJECTED
    assert err.startswith("error: ")

    code, _, err = cli("rank", "--repo", REPO, "--work-item", WORK_ITEM, "--role", "nobody")
    assert code == ExitCode.REJECTED

    code, _, _ = cli("pin", "--work-item", WORK_ITEM, "--artifact", "art-missing")
    assert code == ExitCode.REJECTED


def test_cold_start_check_without_bundles_fails(cli) -> None:
    code, payload, _ = cli("cold-start-check", "--work-item", WORK_ITEM)

    assert code == ExitCode.REJECTED
    assert payload["check"]["failure_reason"] == "missing_receipt"


@pytest.mark.parametrize(
    "args",
    [
        ("generate", *_TARGET, "--base-sha", "abc"),
        ("config", "--config", "does-not-exist.toml"),
        ("cold-start-check", "--list", "--limit", "0"),
        ("generate", "--repo", REPO),
    ],
)
def test_usage_and_config_errors_exit_with_config_code(cli, args) -> None:
    code, _, _ = cli(*args)
    assert code == ExitCode.CONFIG_ERROR


def test_invalid_red_file_is_a_config_error(cli, tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    code, _, err = cli("red-insert", *_RED_TARGET, "--file", str(broken))

    assert code == ExitCode.CONFIG_ERROR
    assert "invalid JSON" in err


def test_config_command_prints_redacted_effective_config(cli) -> None:
    code, payload, _ = cli("config")

    assert code == ExitCode.SUCCESS
    assert payload["command"] == "config"
    assert payload["active_profile"] is None
    assert payload["config"]["paths"]["state_db"] == str(cli.state_db)


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
        (StateDBError("database is locked"), ExitCode.CONFIG_ERROR),
        (SystemExit(7), ExitCode.INTERNAL_ERROR),
        (SystemExit(None), ExitCode.SUCCESS),
    ],
)
def test_entrypoint_maps_unhandled_outcomes(monkeypatch, capsys, error, expected) -> None:
    def explode(argv):
        raise error

    monkeypatch.setattr("context_bundler.ui.cli.run_cli", explode)

    assert cli_entrypoint([]) == expected
    err = capsys.readouterr().err
    if expected is ExitCode.INTERNAL_ERROR and isinstance(error, RuntimeError):
        assert "Traceback" in err
    if expected is ExitCode.CONFIG_ERROR:
        assert err == "error: database is locked\n"
