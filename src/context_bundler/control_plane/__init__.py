"""Control-plane role budgets. Import ``BundleService`` from ``control_plane.bundle_service``."""

from context_bundler.control_plane.budgets import (
    BudgetReport,
    BudgetTable,
    RoleBudget,
    UnknownRoleError,
)

__all__ = ["BudgetReport", "BudgetTable", "RoleBudget", "UnknownRoleError"]
