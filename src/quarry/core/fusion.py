"""
Fusion of per-sub-search ranked lists into one ranked result list.

Each list is normalized on its own (top hit = 1.0), weighted by position
(the first sub-search counts double) and summed. The sum is divided by the
total weight so fused scores stay in [0, 1] and min_score means the same
thing whatever the number of sub-searches.
"""

import logging
from typing import Callable, Dict, List, Sequence

from .models import DocumentRef, FusedResult, RawHit

logger = logging.getLogger(__name__)

FIRST_SOURCE_WEIGHT = 2.0
SOURCE_WEIGHT = 1.0
DEFAULT_RRF_K = 60
NORMALIZATIONS = ("max", "rrf")


def source_weights(count: int) -> List[float]:
    """Weight per sub-search position."""
    return [FIRST_SOURCE_WEIGHT if i == 0 else SOURCE_WEIGHT for i in range(count)]


def normalize_max(hits: Sequence[RawHit]) -> Dict[str, float]:
    """Scale scores by the list's best score; duplicates keep their first (best) entry."""
    normalized: Dict[str, float] = {}
    top = max((hit.score for hit in hits), default=0.0)
    for hit in hits:
        if hit.doc_id in normalized:
            continue
        normalized[hit.doc_id] = hit.score / top if top > 0 else 0.0
    return normalized


def normalize_rrf(hits: Sequence[RawHit], k: int = DEFAULT_RRF_K) -> Dict[str, float]:
    """Reciprocal-rank score scaled so rank 0 maps to 1.0; raw scores are ignored."""
    normalized: Dict[str, float] = {}
    for hit in hits:
        if hit.doc_id in normalized:
            continue
        rank = len(normalized)
        normalized[hit.doc_id] = (k + 1) / (k + rank + 1)
    return normalized


def fuse(
    sub_results: Sequence[Sequence[RawHit]],
    resolve: Callable[[str], DocumentRef],
    min_score: float = 0.0,
    limit: int = 10,
    normalization: str = "max",
    rrf_k: int = DEFAULT_RRF_K,
) -> List[FusedResult]:
    """
    Merge ranked lists into one deduplicated, ranked list.

    Args:
        sub_results: One ranked hit list per sub-search, in sub-search order
        resolve: Document lookup for path, collection and snippet
        min_score: Drop documents whose fused score is below this
        limit: Maximum number of results
        normalization: "max" (score / list maximum) or "rrf" (rank based)
        rrf_k: Rank offset for "rrf"

    Returns:
        Results ordered by fused score, ties by doc id
    """
    if normalization not in NORMALIZATIONS:
        raise ValueError(f"Unknown normalization: {normalization!r}")

    weights = source_weights(len(sub_results))
    total_weight = sum(weights)
    if total_weight == 0:
        return []

    combined: Dict[str, float] = {}
    for weight, hits in zip(weights, sub_results):
        if normalization == "rrf":
            normalized = normalize_rrf(hits, rrf_k)
        else:
            normalized = normalize_max(hits)
        for doc_id, score in normalized.items():
            combined[doc_id] = combined.get(doc_id, 0.0) + weight * score

    scored = [(doc_id, total / total_weight) for doc_id, total in combined.items()]
    scored = [item for item in scored if item[1] >= min_score]
    scored.sort(key=lambda item: (-item[1], item[0]))

    results = []
    for doc_id, score in scored[:limit]:
        ref = resolve(doc_id)
        results.append(
            FusedResult(
                doc_id=doc_id,
                path=ref.path,
                score=score,
                collection=ref.collection,
                snippet=ref.snippet,
            )
        )

    logger.debug(
        f"Fused {len(sub_results)} lists into {len(results)} results "
        f"({len(combined)} candidates, {len(scored)} above min_score)"
    )
    return results


__all__ = [
    "FIRST_SOURCE_WEIGHT",
    "SOURCE_WEIGHT",
    "DEFAULT_RRF_K",
    "NORMALIZATIONS",
    "source_weights",
    "normalize_max",
    "normalize_rrf",
    "fuse",
]
