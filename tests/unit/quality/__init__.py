"""Tests for quality."""
