"""Adaptive training orchestrator for a board-game predictor."""

__version__ = "0.1.0"
