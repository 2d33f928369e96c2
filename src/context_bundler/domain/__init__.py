"""Domain models and identifiers."""

from context_bundler.domain import ids
from context_bundler.domain.models import (
    ArtifactCandidate,
    BundleReceipt,
    BundleRecord,
    ChangeRef,
    ContinuityCheckRecord,
    Instruction,
    IntegrationManifest,
    RequirementsDocument,
)

__all__ = [
    "ArtifactCandidate",
    "BundleReceipt",
    "BundleRecord",
    "ChangeRef",
    "ContinuityCheckRecord",
    "Instruction",
    "IntegrationManifest",
    "RequirementsDocument",
    "ids",
]
