from __future__ import annotations

import numpy as np


def sign(x: float) -> float:
    if x > 0:
        return 1.0
    if x < 0:
        return -1.0
    return 0.0


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def vectors_match(a: np.ndarray, b: np.ndarray, tol: float) -> bool:
    # per-component tolerance; different lengths never match
    if a.shape != b.shape:
        return False
    return bool(np.all(np.abs(a - b) <= tol))


def all_finite(x: np.ndarray) -> bool:
    return bool(np.all(np.isfinite(x)))
