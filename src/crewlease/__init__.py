"""Lease-based work scheduling and messaging for cooperating role agents."""

__version__ = "0.1.0"
