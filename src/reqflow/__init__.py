"""File-backed requirement delivery orchestrator."""

__version__ = "0.1.0"
