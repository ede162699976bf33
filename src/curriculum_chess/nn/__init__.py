"""Neural training stack for curriculum chess.

A small belief-layer + LSTM predictor, the stateful forward/backward
contract around it, and the orchestrator that feeds it from curriculum
levels, spaced-repetition reviews and Pavlovian pairings.
"""

from __future__ import annotations
