"""SQLite state DB and the repositories built on it."""

from context_bundler.persistence.repositories import (
    AgentRunRepo,
    ArtifactRepo,
    BundleRepo,
    ContinuityCheckRepo,
    InstructionRepo,
    ManifestRepo,
    PinRepo,
    RequirementsDocumentRepo,
    RequirementsVersionConflictError,
)
from context_bundler.persistence.state_db import StateDB, StateDBError

__all__ = [
    "AgentRunRepo",
    "ArtifactRepo",
    "BundleRepo",
    "ContinuityCheckRepo",
    "InstructionRepo",
    "ManifestRepo",
    "PinRepo",
    "RequirementsDocumentRepo",
    "RequirementsVersionConflictError",
    "StateDB",
    "StateDBError",
]
