"""
Collectable Fingerprints for the Catalog Service

Generates deterministic, normalized hashes used to decide whether two
observations (OCR, vision, discovery feeds) refer to the same collectable.

Three tiers:
1. exact       - title + primary creator + year + kind (+ platforms/formats).
                 Unique per collectable; None when there is no title.
2. lightweight - title + optional creator + kind. Not unique, used as a
                 fast pre-filter.
3. fuzzy       - title + creator + kind as seen by OCR. A collectable
                 accumulates many of these over time.

All tiers normalize before hashing so trivial OCR noise collapses:
    "The Hobbit" / "THE HOBBIT." / "  the   hobbit " -> same value

Hash: SHA1("|".join(normalized parts)) as 40-char hex.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Any, Iterable, Optional

_non_alnum_re = re.compile(r"[^a-z0-9]+")

# Plural / synonym spellings collapse onto one canonical kind
MEDIA_KIND_ALIASES = {
    "book": "book",
    "books": "book",
    "movie": "movie",
    "movies": "movie",
    "film": "movie",
    "films": "movie",
    "game": "game",
    "games": "game",
    "videogame": "game",
    "videogames": "game",
    "music": "music",
    "album": "music",
    "albums": "music",
    "vinyl": "music",
    "tv": "tv",
    "show": "tv",
    "shows": "tv",
}


# =============================================================================
# NORMALIZERS
# =============================================================================

def normalize_component(value: Any) -> str:
    """
    Normalize one fingerprint component.

    Strips accents, lowercases, turns punctuation runs into single spaces.

    Examples:
      - "THE HOBBIT." -> "the hobbit"
      - "Pokémon: Red" -> "pokemon red"
      - None -> ""
    """
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _non_alnum_re.sub(" ", text.lower())
    return " ".join(text.split())


def normalize_kind(value: Any) -> str:
    """Map a kind/media type onto its canonical alias ("" if empty)."""
    normalized = normalize_component(value)
    if not normalized:
        return ""
    compact = normalized.replace(" ", "")
    return MEDIA_KIND_ALIASES.get(normalized) or MEDIA_KIND_ALIASES.get(compact) or normalized


def normalize_collectable_kind(value: Any, fallback: Optional[str] = None) -> Optional[str]:
    """
    Normalize a stored collectable kind.

    Unknown kinds are preserved (lowercased) rather than mapped to "other".
    """
    if value is None:
        return fallback
    normalized = str(value).strip().lower()
    if not normalized:
        return fallback
    return normalize_kind(normalized)


def _normalize_list(value: Any) -> str:
    """Flatten, normalize, dedupe and sort a list component."""
    if value is None:
        return ""
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        return normalize_component(value)

    seen = set()
    stack = list(value)
    while stack:
        item = stack.pop()
        if isinstance(item, (list, tuple, set)):
            stack.extend(item)
            continue
        normalized = normalize_component(item)
        if normalized:
            seen.add(normalized)
    return ",".join(sorted(seen))


def _sha1(parts: Iterable[str]) -> str:
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()


# =============================================================================
# FINGERPRINT BUILDERS
# =============================================================================

def exact_fingerprint(
    title: Any,
    primary_creator: Any = None,
    year: Any = None,
    kind: Any = None,
    *,
    platforms: Any = None,
    formats: Any = None,
    unique_key: Any = None,
) -> Optional[str]:
    """
    Exact fingerprint: the unique identity of a collectable.

    Returns None when the title normalizes to empty; callers must then
    fall back to the fuzzy path instead of deduplicating deterministically.

    A unique_key (e.g. an ISBN-derived key supplied by an adapter) replaces
    the descriptive fields entirely.

    Example:
        exact_fingerprint("The Hobbit", "J.R.R. Tolkien", 1937, "books")
        == exact_fingerprint("THE HOBBIT.", "j r r tolkien", "1937", "book")
    """
    key = normalize_component(unique_key)
    if key:
        return _sha1([key])

    normalized_title = normalize_component(title)
    if not normalized_title:
        return None

    parts = [
        normalized_title,
        normalize_component(primary_creator),
        normalize_component(year),
    ]

    normalized_kind = normalize_kind(kind)
    if normalized_kind:
        parts.append(normalized_kind)

    platform = _normalize_list(platforms)
    if platform:
        parts.append(platform)

    fmt = _normalize_list(formats)
    if fmt:
        parts.append(fmt)

    return _sha1(parts)


def lightweight_fingerprint(
    title: Any,
    kind: Any = None,
    *,
    primary_creator: Any = None,
    platforms: Any = None,
    unique_key: Any = None,
) -> str:
    """
    Lightweight fingerprint: title (+ creator) + kind.

    Never None. Many collectables may share a value, so it is only a
    pre-filter and is never used as a uniqueness constraint.
    """
    key = normalize_component(unique_key)
    if key:
        return _sha1([key])

    parts = [normalize_component(title), normalize_component(primary_creator)]

    normalized_kind = normalize_kind(kind)
    if normalized_kind:
        parts.append(normalized_kind)

    platform = _normalize_list(platforms)
    if platform:
        parts.append(platform)

    return _sha1(parts)


def fuzzy_fingerprint(title: Any, primary_creator: Any, kind: Any = None) -> Optional[str]:
    """
    OCR/vision fingerprint for a raw (title, creator) reading.

    Requires both title and creator; returns None otherwise.
    """
    normalized_title = normalize_component(title)
    normalized_creator = normalize_component(primary_creator)
    if not normalized_title or not normalized_creator:
        return None

    parts = [normalized_title, normalized_creator]
    normalized_kind = normalize_kind(kind)
    if normalized_kind:
        parts.append(normalized_kind)
    return _sha1(parts)
