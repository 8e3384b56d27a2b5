"""Local goal/task work queue for autonomous agents."""

__version__ = "0.1.0"
