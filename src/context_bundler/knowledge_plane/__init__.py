"""Artifact relevance scoring and instruction-file loading."""

from context_bundler.knowledge_plane.instructions import load_instruction_dir, parse_instruction
from context_bundler.knowledge_plane.scoring import (
    ScoredArtifact,
    ScoringOptions,
    SelectionInvariantError,
    rank_candidates,
    score_artifact,
    select_artifacts,
)

__all__ = [
    "ScoredArtifact",
    "ScoringOptions",
    "SelectionInvariantError",
    "load_instruction_dir",
    "parse_instruction",
    "rank_candidates",
    "score_artifact",
    "select_artifacts",
]
