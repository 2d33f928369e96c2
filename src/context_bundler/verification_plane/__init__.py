"""Continuity verification: rebuild from receipt and compare."""

from context_bundler.verification_plane.continuity import (
    ContinuityReport,
    ContinuityVerifier,
    cold_start_verdict,
    run_id_continuity,
)

__all__ = ["ContinuityReport", "ContinuityVerifier", "cold_start_verdict", "run_id_continuity"]
