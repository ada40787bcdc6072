"""Brute-force cosine ranking used when no native vector index is available."""

from __future__ import annotations

import logging
from typing import Sequence, TypeVar

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def rank_by_cosine(
    query: Sequence[float],
    candidates: Sequence[tuple[str, Sequence[float], T]],
    *,
    top_k: int,
    threshold: float = 0.0,
) -> list[tuple[T, float]]:
    """Rank ``(id, vector, item)`` candidates against ``query``.

    Candidates are assumed to be pre-filtered (scope, validity, context).
    Ties are broken by id so the ordering is reproducible.
    """
    if top_k <= 0 or not candidates:
        return []

    q = np.asarray(query, dtype=np.float64)
    q_norm = float(np.linalg.norm(q))
    if q_norm == 0.0:
        return []

    usable = [(cid, vec, item) for cid, vec, item in candidates if vec is not None and len(vec) == len(q)]
    skipped = len(candidates) - len(usable)
    if skipped:
        logger.debug("Skipped %d candidates with missing or mismatched embeddings", skipped)
    if not usable:
        return []

    matrix = np.asarray([vec for _, vec, _ in usable], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1)
    norms[norms == 0.0] = np.inf
    scores = (matrix @ q) / (norms * q_norm)

    scored = [
        (cid, float(score), item)
        for (cid, _, item), score in zip(usable, scores)
        if float(score) >= threshold
    ]
    scored.sort(key=lambda x: (-x[1], x[0]))
    return [(item, score) for _, score, item in scored[:top_k]]
