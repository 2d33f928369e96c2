"""Module entrypoint for ``python -m context_bundler``."""

from __future__ import annotations

from context_bundler.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
