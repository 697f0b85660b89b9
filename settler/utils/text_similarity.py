"""
String similarity helpers for fuzzy matching rules.
"""

from typing import Optional

from rapidfuzz.distance import Levenshtein


def normalize_text(value: Optional[str]) -> str:
    """Lowercase and collapse whitespace."""
    if value is None:
        return ""
    return " ".join(str(value).lower().split())


def levenshtein_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    1 - distance / max(len(a), len(b)) on normalized text.

    Two empty strings are identical (1.0); one empty string against a
    non-empty one scores 0.0.
    """
    left = normalize_text(a)
    right = normalize_text(b)
    if not left and not right:
        return 1.0
    return float(Levenshtein.normalized_similarity(left, right))
