"""Supervised execution of long-running AI agent tasks."""

__version__ = "0.1.0"
