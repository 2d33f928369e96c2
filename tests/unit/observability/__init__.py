"""Tests for observability."""
