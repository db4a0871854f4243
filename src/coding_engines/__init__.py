"""Execution core for AI coding engines (CLI agents and local agent servers)."""

__version__ = "0.4.0"
