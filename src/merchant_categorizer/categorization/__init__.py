"""Deterministic, local categorization building blocks.

Merchant key normalization, the category vocabulary and keyword heuristics.
Nothing here performs I/O, so it is safe on the interactive path.
"""

from .categories import CATEGORIES, DEFAULT_CATEGORY, canonical_category, is_valid_category
from .heuristics import classify, heuristic_stats, is_common_merchant
from .normalizer import normalize_merchant

__all__ = [
    "CATEGORIES",
    "DEFAULT_CATEGORY",
    "canonical_category",
    "classify",
    "heuristic_stats",
    "is_common_merchant",
    "is_valid_category",
    "normalize_merchant",
]
