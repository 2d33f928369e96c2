"""Tests for the integration plane."""
