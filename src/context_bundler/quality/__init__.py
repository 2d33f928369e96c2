"""Requirements-document quality gate."""

from context_bundler.quality.requirements_gate import (
    GateThresholds,
    ValidationResult,
    validate_requirements_document,
)

__all__ = ["GateThresholds", "ValidationResult", "validate_requirements_document"]
