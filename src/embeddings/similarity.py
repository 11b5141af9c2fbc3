"""Vector similarity helpers."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors.

    Returns exactly 0.0 when either vector is empty or has zero norm, and when
    the dimensions differ. A dimension mismatch means two different embedding
    models were mixed; it is logged as an error but never raised so that one
    bad vector cannot abort a retrieval fan-out.
    """
    if len(a) == 0 or len(b) == 0:
        return 0.0
    if len(a) != len(b):
        logger.error("Vector length mismatch: %d != %d", len(a), len(b))
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denominator = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denominator == 0.0:
        return 0.0
    score = float(np.dot(va, vb) / denominator)
    # Rounding can push |score| a hair past 1
    return max(-1.0, min(1.0, score))
