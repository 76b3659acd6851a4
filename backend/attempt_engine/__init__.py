"""Timed multi-section test-attempt engine."""
