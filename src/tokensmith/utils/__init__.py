"""Utility helpers shared across tokensmith."""
