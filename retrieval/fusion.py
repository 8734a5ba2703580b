from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from vectorstore.chunk_index import IndexHit


def normalize_scores(scores: Dict[str, float]) -> Dict[str, float]:
    """
    Per-query max scaling: score / max(score) over one path's candidate set.

    Path scores are non-negative (cosine similarity is floored at 0, BM25 is
    >= 0), so this is min-max with the lower bound fixed at 0. The weakest
    candidate keeps a proportional score instead of collapsing to 0, and the
    result is independent of any historical range. An empty set yields {}; a
    set whose maximum is 0 normalizes to all zeros.
    """
    if not scores:
        return {}
    top = max(scores.values())
    if top <= 0:
        return {k: 0.0 for k in scores}
    return {k: max(0.0, min(1.0, v / top)) for k, v in scores.items()}


@dataclass
class FusedCandidate:
    hit: IndexHit
    fused_score: float
    vector_score: Optional[float] = None  # normalized, None when absent from the vector path
    keyword_score: Optional[float] = None  # normalized, None when absent from the keyword path
    rerank_score: Optional[float] = None
    highlights: List[str] = field(default_factory=list)

    @property
    def chunk_id(self) -> str:
        return self.hit.chunk_id

    @property
    def chunk_index(self) -> int:
        return self.hit.chunk_index


def sort_key(c: FusedCandidate):
    return (-c.fused_score, c.chunk_index, c.chunk_id)


def fuse(
    vector_hits: Sequence[IndexHit],
    keyword_hits: Sequence[IndexHit],
    vector_weight: float,
) -> List[FusedCandidate]:
    """
    fused = w * vector_norm + (1 - w) * keyword_norm

    A chunk missing from one path contributes nothing from that path: its
    fused score is the weighted normalized score of the path that found it.
    Output is de-duplicated by chunk id and ordered by fused score
    descending, then chunk index ascending.
    """
    w = min(1.0, max(0.0, vector_weight))
    vec_norm = normalize_scores({h.chunk_id: h.score for h in vector_hits})
    kw_norm = normalize_scores({h.chunk_id: h.score for h in keyword_hits})

    hits: Dict[str, IndexHit] = {}
    for h in list(vector_hits) + list(keyword_hits):
        hits.setdefault(h.chunk_id, h)
    kw_highlights = {h.chunk_id: h.highlights for h in keyword_hits}

    fused: List[FusedCandidate] = []
    for cid, hit in hits.items():
        v = vec_norm.get(cid)
        k = kw_norm.get(cid)
        score = w * (v or 0.0) + (1 - w) * (k or 0.0)
        fused.append(
            FusedCandidate(
                hit=hit,
                fused_score=min(1.0, max(0.0, score)),
                vector_score=v,
                keyword_score=k,
                highlights=list(kw_highlights.get(cid, [])),
            )
        )
    fused.sort(key=sort_key)
    return fused
