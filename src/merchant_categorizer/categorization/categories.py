"""Fixed category vocabulary shared by heuristics, the AI prompt and overrides."""

from __future__ import annotations

DEFAULT_CATEGORY = "Other"

# Order is part of the contract: the AI prompt lists categories in this order
# and fuzzy matching of provider answers returns the first hit.
CATEGORIES: tuple[str, ...] = (
    "Groceries",
    "Dining & Takeaway",
    "Transport",
    "Fuel",
    "Entertainment",
    "Shopping",
    "Bills & Utilities",
    "Health & Medical",
    "Home & Garden",
    "Education",
    "Travel",
    "Hobbies",
    DEFAULT_CATEGORY,
)


def is_valid_category(category: str | None) -> bool:
    return category in CATEGORIES


def canonical_category(category: str | None) -> str | None:
    """Return the vocabulary spelling of ``category`` (case-insensitive), or None."""
    wanted = (category or "").strip().lower()
    for known in CATEGORIES:
        if known.lower() == wanted:
            return known
    return None
