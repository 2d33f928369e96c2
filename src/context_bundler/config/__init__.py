"""Configuration loading (``bundler.toml`` + env + CLI) and schema validation."""

from context_bundler.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from context_bundler.config.schema import (
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
