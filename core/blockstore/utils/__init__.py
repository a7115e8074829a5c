"""Utility helpers for blockstore."""
