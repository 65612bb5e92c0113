"""Triage Gateway: issue queue, scheduler and tool-use security gate."""

__version__ = "0.1.0"
