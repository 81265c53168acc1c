# similarity.py
import math

import numpy as np

from compare_core import CFG

# BGR, for cv2 drawing
BAND_COLORS = {
    "low": (37, 48, 217),      # #d93025
    "medium": (0, 171, 249),   # #f9ab00
    "high": (62, 142, 30),     # #1e8e3e
}


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    dot(a, b) / (|a| * |b|).

    Both vectors must have the same length; a mismatch is a caller bug and
    raises ValueError. If either vector has zero magnitude the result is NaN.
    It is returned as-is so callers can decide how to present it.
    """
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if a.shape != b.shape:
        raise ValueError(f"embedding length mismatch: {a.shape[0]} vs {b.shape[0]}")

    denom = np.linalg.norm(a) * np.linalg.norm(b)
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.dot(a, b) / denom)


def similarity_band(score: float, low: float = CFG.band_low, high: float = CFG.band_high) -> str:
    if score is None or math.isnan(score) or score <= low:
        return "low"
    if score <= high:
        return "medium"
    return "high"


def similarity_percent(score: float) -> int:
    # NaN (zero-magnitude embedding) is shown as 0%
    if score is None or math.isnan(score):
        return 0
    return int(math.floor(score * 100 + 0.5))
