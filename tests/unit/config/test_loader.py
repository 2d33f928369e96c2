from __future__ import annotations

import json
from pathlib import Path

import pytest

from context_bundler.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
)
from context_bundler.config.schema import ConfigValidationError


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_load_without_a_config_file(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={})

    assert config["selection"]["max_artifacts"] == 10
    assert config["paths"]["state_db"] == (
        tmp_path.resolve() / "state" / "bundler.sqlite3"
    ).as_posix()


def test_explicit_missing_file_is_an_error(tmp_path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_an_error(tmp_path) -> None:
    path = _write(tmp_path / "bundler.toml", "[selection\nmax_artifacts = 3\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(path, environ={})


def test_precedence_cli_over_env_over_file(tmp_path) -> None:
    path = _write(
        tmp_path / "bundler.toml",
        "[selection]\nmax_artifacts = 4\nkeyword_weight = 2.5\n",
    )
    environ = {"BUNDLER_SELECTION_MAX_ARTIFACTS": "6"}

    from_file = load_config(path, environ={})
    from_env = load_config(path, environ=environ)
    from_cli = load_config(path, environ=environ, cli_overrides={"selection.max_artifacts": 8})

    assert from_file["selection"]["max_artifacts"] == 4
    assert from_file["selection"]["keyword_weight"] == 2.5
    assert from_env["selection"]["max_artifacts"] == 6
    assert from_cli["selection"]["max_artifacts"] == 8


def test_role_budget_env_names_use_underscores() -> None:
    assert (
        env_name_for_path(("budgets", "roles", "qa-agent", "hard_limit"))
        == "BUNDLER_BUDGETS_ROLES_QA_AGENT_HARD_LIMIT"
    )


def test_env_overrides_role_budget_and_booleans(tmp_path) -> None:
    config = load_config(
        _write(tmp_path / "bundler.toml", ""),
        environ={
            "BUNDLER_BUDGETS_ROLES_QA_AGENT_HARD_LIMIT": "1234",
            "BUNDLER_OBSERVABILITY_LOG_TO_STDOUT": "yes",
        },
    )

    assert config["budgets"]["roles"]["qa-agent"]["hard_limit"] == 1234
    assert config["observability"]["log_to_stdout"] is True


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("BUNDLER_SELECTION_MAX_ARTIFACTS", "many", "must be an integer"),
        ("BUNDLER_OBSERVABILITY_REDACT_SECRETS", "maybe", "must be a boolean"),
        ("BUNDLER_SELECTION_TAG_WEIGHT", "heavy", "must be a number"),
    ],
)
def test_env_coercion_errors(tmp_path, name: str, value: str, message: str) -> None:
    path = _write(tmp_path / "bundler.toml", "")
    with pytest.raises(ConfigLoadError, match=message):
        load_config(path, environ={name: value})


def test_profile_from_environment(tmp_path) -> None:
    path = _write(tmp_path / "bundler.toml", "")

    config = load_config(path, environ={"BUNDLER_PROFILE": "strict"})

    assert config["selection"]["max_artifacts"] == 5


def test_explicit_profile_wins_over_environment(tmp_path) -> None:
    path = _write(tmp_path / "bundler.toml", "")

    config = load_config(path, profile="permissive", environ={"BUNDLER_PROFILE": "strict"})

    assert config["selection"]["max_artifacts"] == 10
    assert config["observability"]["log_level"] == "DEBUG"


def test_invalid_override_fails_validation(tmp_path) -> None:
    path = _write(tmp_path / "bundler.toml", "")
    with pytest.raises(ConfigValidationError, match="builder.distill_concurrency"):
        load_config(path, environ={}, cli_overrides={"builder.distill_concurrency": 0})


def test_paths_are_relative_to_the_config_file(tmp_path) -> None:
    config_dir = tmp_path / "conf"
    config_dir.mkdir()
    path = _write(
        config_dir / "bundler.toml",
        '[paths]\nstate_db = "../var/state.sqlite3"\ninstructions_dir = "/abs/instructions"\n',
    )

    config = load_config(path, environ={})

    assert config["paths"]["state_db"] == (tmp_path.resolve() / "var" / "state.sqlite3").as_posix()
    assert config["paths"]["instructions_dir"] == "/abs/instructions"


def test_dump_effective_config_is_sorted_json(tmp_path) -> None:
    config = load_config(_write(tmp_path / "bundler.toml", ""), environ={})

    dumped = dump_effective_config(config)

    assert json.loads(dumped)["selection"]["max_artifacts"] == 10
    assert dumped == dump_effective_config(dict(reversed(list(config.items()))))
