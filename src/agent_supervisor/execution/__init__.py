"""Supervised single-call agent execution with workspace checkpoints."""
