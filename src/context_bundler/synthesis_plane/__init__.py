"""Bundle assembly, artifact distillation and handoff rendering."""

from context_bundler.synthesis_plane.bundle_builder import (
    BuildError,
    BuildErrorKind,
    BuildRequest,
    BuildResult,
    BundleBuilder,
)
from context_bundler.synthesis_plane.distillation import ExtractiveDistiller
from context_bundler.synthesis_plane.handoff import render_handoff, verify_handoff_digest

__all__ = [
    "BuildError",
    "BuildErrorKind",
    "BuildRequest",
    "BuildResult",
    "BundleBuilder",
    "ExtractiveDistiller",
    "render_handoff",
    "verify_handoff_digest",
]
