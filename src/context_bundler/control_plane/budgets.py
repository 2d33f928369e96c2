"""
Per-role character budgets for context bundles.

A bundle's size is the length of its exact serialized payload (see
``utils.canonical.serialized_length``). Each role has a hard limit; a bundle
over the limit is rejected by the builder, never trimmed.

Unknown roles are lenient here (``exceeds_budget`` is False, overage is 0);
the builder uses ``require_role_budget`` which raises instead.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

import structlog

from context_bundler.constants import (
    ROLE_IMPLEMENTATION,
    ROLE_PROCESS_REVIEW,
    ROLE_PROJECT_MANAGER,
    ROLE_QA,
)


class UnknownRoleError(ValueError):
    """Raised when a role has no budget entry."""

    def __init__(self, role: str, known_roles: tuple[str, ...]) -> None:
        self.role = role
        self.known_roles = known_roles
        super().__init__(f"unknown role: {role!r}; expected one of: {', '.join(known_roles)}")


@dataclass(frozen=True, slots=True)
class RoleBudget:
    role: str
    hard_limit: int
    display_name: str

    def __post_init__(self) -> None:
        if not isinstance(self.role, str) or not self.role.strip():
            raise ValueError("RoleBudget.role must be a non-empty string")
        if isinstance(self.hard_limit, bool) or not isinstance(self.hard_limit, int):
            raise ValueError("RoleBudget.hard_limit must be an integer")
        if self.hard_limit <= 0:
            raise ValueError("RoleBudget.hard_limit must be > 0")

    def to_dict(self) -> dict[str, object]:
        return {"role": self.role, "hard_limit": self.hard_limit, "display_name": self.display_name}


@dataclass(frozen=True, slots=True)
class BudgetReport:
    """Outcome of measuring one serialized bundle against its role budget."""

    role: str
    display_name: str
    character_count: int
    hard_limit: int

    @property
    def overage(self) -> int:
        return max(0, self.character_count - self.hard_limit)

    @property
    def exceeds(self) -> bool:
        return self.character_count > self.hard_limit

    def to_dict(self) -> dict[str, object]:
        return {
            "character_count": self.character_count,
            "hard_limit": self.hard_limit,
            "role": self.role,
            "display_name": self.display_name,
            "exceeds": self.exceeds,
            "overage": self.overage,
        }


DEFAULT_ROLE_BUDGETS: Final[tuple[RoleBudget, ...]] = (
    RoleBudget(ROLE_IMPLEMENTATION, 200_000, "Implementation Agent"),
    RoleBudget(ROLE_QA, 200_000, "QA Agent"),
    RoleBudget(ROLE_PROJECT_MANAGER, 150_000, "Project Manager"),
    RoleBudget(ROLE_PROCESS_REVIEW, 100_000, "Process Review"),
)


class BudgetTable:
    """Immutable role -> budget lookup."""

    __slots__ = ("_budgets", "_logger")

    def __init__(self, budgets: tuple[RoleBudget, ...], *, logger: Any | None = None) -> None:
        if not budgets:
            raise ValueError("BudgetTable requires at least one role budget")
        table: dict[str, RoleBudget] = {}
        for budget in budgets:
            if budget.role in table:
                raise ValueError(f"duplicate role budget: {budget.role}")
            table[budget.role] = budget
        self._budgets = table
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def default(cls) -> BudgetTable:
        return cls(DEFAULT_ROLE_BUDGETS)

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> BudgetTable:
        """Build from the ``[budgets.roles]`` tables of a validated config."""
        budgets = config.get("budgets")
        roles = budgets.get("roles") if isinstance(budgets, Mapping) else None
        if not isinstance(roles, Mapping) or not roles:
            return cls.default()
        entries: list[RoleBudget] = []
        for role in sorted(roles):
            entry = roles[role]
            if not isinstance(entry, Mapping):
                raise ValueError(f"budgets.roles.{role} must be a mapping")
            hard_limit = entry.get("hard_limit")
            display_name = entry.get("display_name", role)
            if not isinstance(hard_limit, int):
                raise ValueError(f"budgets.roles.{role}.hard_limit must be an integer")
            entries.append(RoleBudget(role, hard_limit, str(display_name)))
        return cls(tuple(entries))

    @property
    def roles(self) -> tuple[str, ...]:
        return tuple(self._budgets)

    def get(self, role: str) -> RoleBudget | None:
        return self._budgets.get(role)

    def require(self, role: str) -> RoleBudget:
        budget = self._budgets.get(role)
        if budget is None:
            raise UnknownRoleError(role, self.roles)
        return budget

    def exceeds(self, role: str, character_count: int) -> bool:
        budget = self._budgets.get(role)
        return budget is not None and character_count > budget.hard_limit

    def overage(self, role: str, character_count: int) -> int:
        budget = self._budgets.get(role)
        if budget is None:
            return 0
        return max(0, character_count - budget.hard_limit)

    def evaluate(self, role: str, character_count: int) -> BudgetReport:
        """Measure ``character_count`` against ``role``; raises ``UnknownRoleError``."""
        budget = self.require(role)
        report = BudgetReport(
            role=budget.role,
            display_name=budget.display_name,
            character_count=character_count,
            hard_limit=budget.hard_limit,
        )
        if report.exceeds:
            self._logger.warning(
                "bundle_budget_exceeded",
                role=role,
                character_count=character_count,
                hard_limit=budget.hard_limit,
                overage=report.overage,
            )
        return report


_DEFAULT_TABLE: Final[BudgetTable] = BudgetTable.default()


def get_role_budget(role: str, *, table: BudgetTable | None = None) -> RoleBudget | None:
    return (table or _DEFAULT_TABLE).get(role)


def require_role_budget(role: str, *, table: BudgetTable | None = None) -> RoleBudget:
    return (table or _DEFAULT_TABLE).require(role)


def exceeds_budget(role: str, character_count: int, *, table: BudgetTable | None = None) -> bool:
    """True only for a known role whose limit ``character_count`` is strictly over."""
    return (table or _DEFAULT_TABLE).exceeds(role, character_count)


def calculate_overage(role: str, character_count: int, *, table: BudgetTable | None = None) -> int:
    return (table or _DEFAULT_TABLE).overage(role, character_count)


__all__ = [
    "BudgetReport",
    "BudgetTable",
    "DEFAULT_ROLE_BUDGETS",
    "RoleBudget",
    "UnknownRoleError",
    "calculate_overage",
    "exceeds_budget",
    "get_role_budget",
    "require_role_budget",
]
