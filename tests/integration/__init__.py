"""End-to-end tests over a real state DB."""
