"""Agent instance and task queue orchestrator."""

__version__ = "0.1.0"
