from __future__ import annotations

import math
import re
from collections import Counter
from typing import Dict, List, Sequence

_WORD = re.compile(r"\w+")

BM25_K1 = 1.2
BM25_B = 0.75


def query_terms(query: str) -> List[str]:
    """Lowercased query words longer than two characters, punctuation removed, de-duplicated."""
    seen: List[str] = []
    for raw in query.lower().split():
        word = re.sub(r"[^\w]", "", raw)
        if len(word) > 2 and word not in seen:
            seen.append(word)
    return seen


def tokenize(text: str) -> List[str]:
    return _WORD.findall(text.lower())


def bm25_scores(terms: Sequence[str], documents: Sequence[str]) -> List[float]:
    """
    Okapi BM25 of `terms` against each document, with corpus statistics taken
    from `documents` (the scoped candidate set).
    """
    if not terms or not documents:
        return [0.0] * len(documents)
    tokenized = [tokenize(d) for d in documents]
    avgdl = sum(len(t) for t in tokenized) / len(tokenized) or 1.0
    n = len(tokenized)
    df: Dict[str, int] = {t: 0 for t in terms}
    counts = [Counter(t) for t in tokenized]
    for c in counts:
        for t in terms:
            if c.get(t):
                df[t] += 1

    scores: List[float] = []
    for tokens, c in zip(tokenized, counts):
        score = 0.0
        for t in terms:
            tf = c.get(t, 0)
            if not tf:
                continue
            idf = math.log(1 + (n - df[t] + 0.5) / (df[t] + 0.5))
            norm = tf * (BM25_K1 + 1) / (
                tf + BM25_K1 * (1 - BM25_B + BM25_B * len(tokens) / avgdl)
            )
            score += idf * norm
        scores.append(score)
    return scores


def highlights(content: str, terms: Sequence[str], window: int = 60, max_fragments: int = 3) -> List[str]:
    """Short fragments of `content` around the first occurrences of query terms."""
    fragments: List[str] = []
    covered: List[range] = []
    lower = content.lower()
    for t in terms:
        pos = lower.find(t)
        if pos < 0 or any(pos in r for r in covered):
            continue
        start = max(0, pos - window)
        end = min(len(content), pos + len(t) + window)
        covered.append(range(start, end))
        frag = content[start:end].strip().replace("\n", " ")
        if start > 0:
            frag = "..." + frag
        if end < len(content):
            frag = frag + "..."
        fragments.append(frag)
        if len(fragments) >= max_fragments:
            break
    return fragments
