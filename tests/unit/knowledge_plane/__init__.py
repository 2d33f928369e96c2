"""Tests for the knowledge plane."""
