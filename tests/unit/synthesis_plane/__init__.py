"""Tests for the synthesis plane."""
