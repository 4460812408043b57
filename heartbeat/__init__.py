"""Heartbeat: periodic checks and bounded-concurrency agent dispatch."""

__version__ = "0.1.0"
