"""Offering Engine — publisher offering pricing and order line-item lifecycle."""

__version__ = "0.1.0"
