"""Source collaborator interfaces and the local git change provider."""

from context_bundler.integration_plane.sources import (
    ChangeProviderError,
    ChangeRequestProvider,
    DegradedReason,
    Distiller,
    GitChangeProvider,
    NullDistiller,
    SourceName,
    SourceResult,
)

__all__ = [
    "ChangeProviderError",
    "ChangeRequestProvider",
    "DegradedReason",
    "Distiller",
    "GitChangeProvider",
    "NullDistiller",
    "SourceName",
    "SourceResult",
]
