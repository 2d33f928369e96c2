"""Tests for the control plane."""
