"""Stable constants shared across bundler planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 2
BUNDLE_SCHEMA_VERSION: Final[str] = "v0"
DEFAULT_MANIFEST_SCHEMA_VERSION: Final[str] = "v0"

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_STATE_DB: Final[PurePosixPath] = STATE_DIR / "bundler.sqlite3"
DEFAULT_LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")
DEFAULT_INSTRUCTIONS_DIR: Final[PurePosixPath] = PurePosixPath(".bundler/instructions")

# Known agent roles, in display order.
ROLE_IMPLEMENTATION: Final[str] = "implementation-agent"
ROLE_QA: Final[str] = "qa-agent"
ROLE_PROJECT_MANAGER: Final[str] = "project-manager"
ROLE_PROCESS_REVIEW: Final[str] = "process-review"
KNOWN_ROLES: Final[tuple[str, ...]] = (
    ROLE_IMPLEMENTATION,
    ROLE_QA,
    ROLE_PROJECT_MANAGER,
    ROLE_PROCESS_REVIEW,
)

# Role -> agent type used by instruction targeting and agent-run lookups.
ROLE_AGENT_TYPES: Final[dict[str, str]] = {
    ROLE_IMPLEMENTATION: "implementation",
    ROLE_QA: "qa",
    ROLE_PROJECT_MANAGER: "project-manager",
    ROLE_PROCESS_REVIEW: "process-review",
}


def agent_type_for_role(role: str) -> str:
    """Map a bundle role onto the agent type stored on instructions and runs."""

    return ROLE_AGENT_TYPES.get(role, role)


__all__ = [
    "BUNDLE_SCHEMA_VERSION",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_INSTRUCTIONS_DIR",
    "DEFAULT_LOG_DIR",
    "DEFAULT_MANIFEST_SCHEMA_VERSION",
    "DEFAULT_STATE_DB",
    "KNOWN_ROLES",
    "ROLE_AGENT_TYPES",
    "ROLE_IMPLEMENTATION",
    "ROLE_PROCESS_REVIEW",
    "ROLE_PROJECT_MANAGER",
    "ROLE_QA",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "agent_type_for_role",
]
