"""Agent Review - batched AI code review engine."""

__version__ = "0.3.0"
