"""Utility helpers shared across the proxy."""
