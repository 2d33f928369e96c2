"""
context-bundler — package root

File: src/context_bundler/__init__.py
Last updated: 2026-02-16

Purpose
- Builds deterministic, budget-checked context bundles for work agents from a
  work item's requirements document, integration manifest, change request,
  prior artifacts and instruction files, and proves later that a bundle can be
  rebuilt from its receipt alone.

Import boundary
- Importing the package has no side effects: no config loading, no logging
  setup, no database access. Subpackages are imported on demand.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
