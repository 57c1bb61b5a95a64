"""
Trigram similarity compatible with PostgreSQL pg_trgm.

Each word is lowercased, padded with two leading blanks and one trailing
blank, and split into 3-character trigrams. Similarity is the Jaccard
overlap of the two trigram sets:

    similarity("The Hobbit", "the hobit") == 0.75

The function is registered on every SQLite connection as the SQL
function similarity(a, b) so the fuzzy matcher can filter in SQL.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import FrozenSet, Optional

_word_re = re.compile(r"[^\W_]+", re.UNICODE)


@lru_cache(maxsize=4096)
def trigrams(text: str) -> FrozenSet[str]:
    """Return the pg_trgm trigram set for a string."""
    grams = set()
    for word in _word_re.findall(text.lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return frozenset(grams)


def trigram_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Similarity in [0.0, 1.0]. NULL or empty input scores 0.0.
    """
    if not a or not b:
        return 0.0
    left = trigrams(a)
    right = trigrams(b)
    if not left or not right:
        return 0.0
    shared = len(left & right)
    return shared / float(len(left) + len(right) - shared)


def combined_similarity(
    title_sim: float,
    creator_sim: float,
    title_weight: float = 0.7,
    creator_weight: float = 0.3,
) -> float:
    """Weighted title/creator score used to rank fuzzy candidates."""
    return title_sim * title_weight + creator_sim * creator_weight
