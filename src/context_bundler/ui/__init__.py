"""Command-line interface."""

from context_bundler.ui.cli import build_parser, run_cli

__all__ = ["build_parser", "run_cli"]
