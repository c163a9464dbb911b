"""Run supervision and scheduling for agent task cards."""

__version__ = "0.1.0"
