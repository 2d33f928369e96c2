"""Canonical serialization, checksums and bounded concurrency helpers."""

from context_bundler.utils.canonical import (
    bundle_checksum,
    calculate_section_metrics,
    calculate_total_characters,
    canonicalize,
    checksum,
    content_checksum,
    is_checksum,
    section_breakdown,
    serialized_length,
    sha256_text,
)
from context_bundler.utils.concurrency import BoundedSemaphore, WorkerPool, map_bounded

__all__ = [
    "BoundedSemaphore",
    "WorkerPool",
    "bundle_checksum",
    "calculate_section_metrics",
    "calculate_total_characters",
    "canonicalize",
    "checksum",
    "content_checksum",
    "is_checksum",
    "map_bounded",
    "section_breakdown",
    "serialized_length",
    "sha256_text",
]
