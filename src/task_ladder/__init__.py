"""Task lifecycle and escalation engine for sequential agent task lists."""

__version__ = "0.1.0"
