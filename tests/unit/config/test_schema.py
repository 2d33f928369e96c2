from __future__ import annotations

import pytest

from context_bundler.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issue_paths(config: object) -> dict[str, str]:
    result = validate_config(config)
    assert result.config is None
    return {issue.path: issue.message for issue in result.issues}


def test_defaults_are_valid_and_copied() -> None:
    result = validate_config(default_config())
    assert result.is_valid
    assert result.config is not None
    assert result.config["budgets"]["roles"]["qa-agent"]["hard_limit"] == 200_000

    copy = default_config()
    copy["selection"]["max_artifacts"] = 99
    assert DEFAULT_CONFIG["selection"]["max_artifacts"] == 10


def test_unknown_and_sensitive_keys_are_rejected() -> None:
    config = default_config()
    config["selection"]["fuzzy_matching"] = True  # type: ignore[typeddict-unknown-key]
    config["builder"]["api_key"] = "sk-live-123"  # type: ignore[typeddict-unknown-key]

    issues = _issue_paths(config)

    assert issues["selection.fuzzy_matching"] == "unknown field"
    assert issues["builder.api_key"] == "embedded secret values are forbidden in bundler config"


def test_missing_sections_and_bad_values_are_reported_with_paths() -> None:
    config = default_config()
    del config["quality_gate"]  # type: ignore[misc]
    config["selection"]["recency_decay_days"] = 0
    config["builder"]["distill_concurrency"] = 65
    config["observability"]["log_level"] = "TRACE"

    issues = _issue_paths(config)

    assert issues["quality_gate"] == "missing required field"
    assert issues["selection.recency_decay_days"] == "must be > 0.0"
    assert issues["builder.distill_concurrency"] == "must be <= 64"
    assert "TRACE" in issues["observability.log_level"]


def test_role_names_must_be_kebab_case() -> None:
    config = default_config()
    config["budgets"]["roles"]["QA_Agent"] = {"hard_limit": 10, "display_name": "QA"}

    issues = _issue_paths(config)

    assert issues["budgets.roles.QA_Agent"].startswith("role name must match")


def test_booleans_are_not_integers() -> None:
    config = default_config()
    config["selection"]["max_artifacts"] = True  # type: ignore[typeddict-item]

    issues = _issue_paths(config)

    assert issues["selection.max_artifacts"] == "expected integer, got bool"


def test_profile_overlay_is_applied_and_validated() -> None:
    strict = apply_profile_overlay(default_config(), "strict")
    assert strict["selection"]["max_artifacts"] == 5
    assert strict["quality_gate"]["min_string_length"] == 30
    assert strict["quality_gate"]["min_edge_cases"] == 8

    assert apply_profile_overlay(default_config(), None) == assert_valid_config(default_config())


def test_undefined_profile_raises() -> None:
    with pytest.raises(ConfigValidationError, match="profile 'nightly' is not defined"):
        apply_profile_overlay(default_config(), "nightly")


def test_profile_overlays_reject_meta_section() -> None:
    config = default_config()
    config["profiles"]["bad"] = {"meta": {"schema_version": 2}}

    issues = _issue_paths(config)

    assert issues["profiles.bad.meta"] == "unknown field"


def test_merge_is_deep_and_does_not_mutate_inputs() -> None:
    base = {"selection": {"max_artifacts": 10, "tag_weight": 15.0}}
    overlay = {"selection": {"max_artifacts": 3}}

    merged = merge_config(base, overlay)

    assert merged == {"selection": {"max_artifacts": 3, "tag_weight": 15.0}}
    assert base["selection"]["max_artifacts"] == 10


def test_redaction_masks_sensitive_keys() -> None:
    redacted = redact_config({"builder": {"auth_token": "abc", "excerpt_max_chars": 300}})
    assert redacted == {"builder": {"auth_token": "<redacted>", "excerpt_max_chars": 300}}
    assert redact_config("not a mapping") == {}


def test_migration_guidance_mentions_direction() -> None:
    assert "older" in migration_guidance(0)
    assert "newer" in migration_guidance(99)
