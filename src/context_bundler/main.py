"""
context-bundler — process entrypoint

File: src/context_bundler/main.py
Last updated: 2026-02-16

Purpose
- Turn whatever the CLI router returns or raises into one of four exit codes.

Exit codes
- 0 success, 1 rejected (missing record, unknown role, invalid input state),
  2 configuration or usage error, 4 unexpected internal failure.
- Configuration and state-DB errors print one line; internal failures print
  the traceback so they can be reported.
"""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    REJECTED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI with ``argv`` (``sys.argv[1:]`` when None) and return the exit code."""

    try:
        from context_bundler.ui.cli import run_cli

        return _coerce(run_cli(argv))
    except SystemExit as exc:
        # argparse exits 2 on usage errors and 0 after --help.
        return _coerce(exc.code)
    except Exception as exc:  # noqa: BLE001 - last line before the process exits.
        code = _classify(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            print(f"error: {str(exc).strip() or type(exc).__name__}", file=sys.stderr)
        return int(code)


def _coerce(code: object) -> int:
    if code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(code, int):
        try:
            return int(ExitCode(code))
        except ValueError:
            return int(ExitCode.INTERNAL_ERROR)
    print(f"error: {code}", file=sys.stderr)
    return int(ExitCode.INTERNAL_ERROR)


def _classify(exc: BaseException) -> ExitCode:
    from context_bundler.config.loader import ConfigLoadError
    from context_bundler.config.schema import ConfigValidationError
    from context_bundler.persistence.state_db import StateDBError

    config_errors = (
        ConfigLoadError,
        ConfigValidationError,
        StateDBError,
        FileNotFoundError,
        NotADirectoryError,
        PermissionError,
    )
    if any(isinstance(item, config_errors) for item in _causes(exc)):
        return ExitCode.CONFIG_ERROR
    return ExitCode.INTERNAL_ERROR


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


__all__ = ["ExitCode", "cli_entrypoint"]
