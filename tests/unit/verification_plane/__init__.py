"""Tests for the verification plane."""
