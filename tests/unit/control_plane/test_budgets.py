from __future__ import annotations

import pytest

from context_bundler.config.schema import default_config
from context_bundler.control_plane.budgets import (
    BudgetTable,
    RoleBudget,
    UnknownRoleError,
    calculate_overage,
    exceeds_budget,
    get_role_budget,
    require_role_budget,
)


class _RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, object]]] = []

    def warning(self, event: str, **fields: object) -> None:
        self.events.append((event, fields))


def test_default_limits() -> None:
    assert get_role_budget("implementation-agent").hard_limit == 200_000
    assert get_role_budget("qa-agent").hard_limit == 200_000
    assert get_role_budget("project-manager").hard_limit == 150_000
    assert get_role_budget("process-review").hard_limit == 100_000
    assert get_role_budget("release-manager") is None


@pytest.mark.parametrize(
    ("count", "exceeds", "overage"),
    [(199_999, False, 0), (200_000, False, 0), (200_001, True, 1), (210_000, True, 10_000)],
)
def test_limit_is_inclusive(count: int, exceeds: bool, overage: int) -> None:
    assert exceeds_budget("qa-agent", count) is exceeds
    assert calculate_overage("qa-agent", count) == overage


def test_unknown_roles_are_lenient_for_queries_but_strict_for_require() -> None:
    assert exceeds_budget("release-manager", 10**9) is False
    assert calculate_overage("release-manager", 10**9) == 0
    with pytest.raises(UnknownRoleError) as excinfo:
        require_role_budget("release-manager")
    assert "qa-agent" in excinfo.value.known_roles


def test_evaluate_logs_overages() -> None:
    logger = _RecordingLogger()
    table = BudgetTable((RoleBudget("qa-agent", 200_000, "QA Agent"),), logger=logger)

    report = table.evaluate("qa-agent", 210_000)

    assert report.exceeds
    assert report.overage == 10_000
    assert report.to_dict()["display_name"] == "QA Agent"
    assert logger.events == [
        (
            "bundle_budget_exceeded",
            {
                "role": "qa-agent",
                "character_count": 210_000,
                "hard_limit": 200_000,
                "overage": 10_000,
            },
        )
    ]
    assert not table.evaluate("qa-agent", 10).exceeds
    assert len(logger.events) == 1


def test_table_from_config_uses_configured_roles() -> None:
    config = default_config()
    config["budgets"]["roles"] = {"reviewer": {"hard_limit": 5_000, "display_name": "Reviewer"}}

    table = BudgetTable.from_config(config)

    assert table.roles == ("reviewer",)
    assert table.require("reviewer").hard_limit == 5_000
    assert BudgetTable.from_config({}).roles == BudgetTable.default().roles


@pytest.mark.parametrize("hard_limit", [0, -5, True])
def test_role_budget_validation(hard_limit: object) -> None:
    with pytest.raises(ValueError):
        RoleBudget("qa-agent", hard_limit, "QA")  # type: ignore[arg-type]


def test_duplicate_roles_are_rejected() -> None:
    budget = RoleBudget("qa-agent", 10, "QA")
    with pytest.raises(ValueError, match="duplicate"):
        BudgetTable((budget, budget))
