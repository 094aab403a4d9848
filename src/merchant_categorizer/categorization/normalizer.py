"""Merchant key normalization.

Raw transaction descriptions carry store numbers, domains and entity suffixes
("WOOLWORTHS TOWN HALL 123", "NETFLIX.COM"). The merchant key is the canonical
uppercase name used to join heuristics, mappings and jobs.
"""

from __future__ import annotations

import re

_DOMAIN_SUFFIX = re.compile(r"\.COM\.AU|\.COM|\.NET|\.ORG")
_TRAILING_NUMBER = re.compile(r"\s+\d+$")
_TRAILING_ENTITY = re.compile(r"\s+(STORE|BRANCH|LOCATION|OUTLET|PTY LTD|PTY|LTD)$")
_TOKEN_SPLIT = re.compile(r"[\s\-_/]+")

MAX_KEY_LENGTH = 50

# Ordering matters: the first name contained in the description wins, so
# longer names must precede their prefixes (UBER EATS before UBER).
KNOWN_MERCHANTS: tuple[str, ...] = (
    "WOOLWORTHS",
    "COLES",
    "ALDI",
    "IGA",
    "BUNNINGS",
    "KMART",
    "TARGET",
    "BIG W",
    "MYER",
    "DAVID JONES",
    "JB HI-FI",
    "HARVEY NORMAN",
    "OFFICEWORKS",
    "CHEMIST WAREHOUSE",
    "PRICELINE",
    "DAN MURPHY",
    "BWS",
    "LIQUORLAND",
    "CALTEX",
    "BP",
    "SHELL",
    "7-ELEVEN",
    "MOBIL",
    "AMPOL",
    "NETFLIX",
    "SPOTIFY",
    "APPLE",
    "GOOGLE",
    "AMAZON",
    "PAYPAL",
    "UBER EATS",
    "UBER",
    "DELIVEROO",
    "MENULOG",
    "DOORDASH",
    "TELSTRA",
    "OPTUS",
    "VODAFONE",
    "COMMONWEALTH BANK",
    "WESTPAC",
    "ANZ",
    "NAB",
    "CINEWORLD",
    "EVENT CINEMAS",
    "HOYTS",
    "VILLAGE CINEMAS",
    "MCDONALD",
    "KFC",
    "HUNGRY JACK",
    "SUBWAY",
    "DOMINO",
    "PIZZA HUT",
    "RED ROOSTER",
    "OPORTO",
)


def _strip_noise(text: str) -> str:
    normalized = text.upper().strip()
    normalized = _DOMAIN_SUFFIX.sub("", normalized)
    normalized = _TRAILING_NUMBER.sub("", normalized)
    normalized = _TRAILING_ENTITY.sub("", normalized)
    return normalized


def normalize_merchant(description: str | None) -> str:
    """Reduce a free-text description to a merchant key.

    Examples:
        "WOOLWORTHS TOWN HALL 123" -> "WOOLWORTHS"
        "NETFLIX.COM" -> "NETFLIX"
        "BP NORTHSIDE" -> "BP"

    Pure and deterministic. Empty input yields an empty key.
    """
    normalized = _strip_noise(description or "")
    if not normalized:
        return ""

    for merchant in KNOWN_MERCHANTS:
        if merchant in normalized:
            return merchant

    parts = _TOKEN_SPLIT.split(normalized)

    if len(parts) >= 2:
        first_two = f"{parts[0]} {parts[1]}"
        if first_two in KNOWN_MERCHANTS:
            return first_two

    if parts[0] and len(parts[0]) > 2:
        return parts[0]

    return normalized[:MAX_KEY_LENGTH]
