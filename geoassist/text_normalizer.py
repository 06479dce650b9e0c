# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Text normalization for place queries and display labels.

Every matching step in the resolver, the suggestion ranker and the entity
disambiguator compares strings through ``normalize`` so that
"Málaga", "MALAGA" and "malaga," are the same key. All functions are pure.
"""

import re
import unicodedata
from typing import Dict, Optional

# Any run of characters that is not a Unicode letter or number
_NON_ALNUM_RE = re.compile(r"[\W_]+", re.UNICODE)
_LATIN_RE = re.compile(r"[a-z]", re.IGNORECASE)


def strip_diacritics(text: str) -> str:
    """Remove combining marks while keeping base characters ('éàï' -> 'eai')."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize(text: Optional[str]) -> str:
    """
    Canonical matching form of a place string.

    Case-folds, strips diacritics, collapses every non letter/number run to a
    single space and trims. ``normalize(normalize(x)) == normalize(x)``.
    """
    if not text:
        return ""
    # Compatibility-fold first so decomposition cannot reintroduce upper case
    folded = unicodedata.normalize("NFKC", text).casefold()
    folded = strip_diacritics(folded).casefold()
    return _NON_ALNUM_RE.sub(" ", folded).strip()


def split_city_country(label: Optional[str]) -> Dict[str, Optional[str]]:
    """
    Split "City, Region, Country" into its city and country parts.

    The first comma segment is the city; the last one is the country when at
    least two segments exist.
    """
    parts = [part.strip() for part in (label or "").split(",")]
    parts = [part for part in parts if part]
    if not parts:
        return {"city": None, "country": None}
    return {
        "city": parts[0],
        "country": parts[-1] if len(parts) >= 2 else None,
    }


def label_matches(candidate_label: Optional[str], target: Optional[str]) -> bool:
    """
    True when both normalize to the same text or one is a prefix of the other.

    "Madrid" matches "Madrid, Comunidad de Madrid, España" and abbreviated
    queries such as "Barc" match "Barcelona".
    """
    left = normalize(candidate_label)
    right = normalize(target)
    if not left or not right:
        return False
    return left == right or left.startswith(right) or right.startswith(left)


def has_latin_letters(text: Optional[str]) -> bool:
    """Whether the text contains at least one ASCII Latin letter."""
    return bool(text) and bool(_LATIN_RE.search(text))
