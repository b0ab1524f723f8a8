"""Shared helpers for domain normalization and integer money arithmetic."""
