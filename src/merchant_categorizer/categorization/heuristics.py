"""Keyword heuristics for instant, offline categorization.

Covers common Australian merchants so most transactions never reach the
external classifier. Pure functions: no I/O, safe to call unboundedly.
"""

from __future__ import annotations

EXACT_MATCH_SCORE = 100
MERCHANT_CONTAINS_SCORE = 50
DESCRIPTION_CONTAINS_SCORE = 10

# Ordering matters: on equal scores the earlier category wins.
CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    (
        "Groceries",
        (
            "woolworths", "coles", "iga", "aldi", "foodworks", "spar", "foodland",
            "ritchies", "drakes", "harris farm", "fresh food", "fruit market",
            "butcher", "baker", "supermarket",
        ),
    ),
    (
        "Dining & Takeaway",
        (
            "mcdonald", "hungry jack", "kfc", "red rooster", "oporto", "grill'd",
            "nando's", "pizza", "domino", "subway", "sushi", "cafe", "restaurant",
            "bistro", "dining", "takeaway", "uber eats", "menulog", "doordash",
            "deliveroo", "chinese", "thai", "indian", "japanese", "italian",
            "vietnamese", "korean", "bar & grill", "pub", "hotel", "club",
        ),
    ),
    (
        "Fuel",
        (
            "bp", "shell", "caltex", "ampol", "7-eleven", "7eleven", "mobil", "esso",
            "united petroleum", "metro petroleum", "costco fuel", "fuel", "petrol",
            "service station",
        ),
    ),
    (
        "Transport",
        (
            "uber", "didi", "ola", "taxi", "13cabs", "train", "bus", "tram", "metro",
            "opal", "myki", "go card", "smartrider", "metcard", "transport",
            "parking", "toll", "e-tag", "etoll", "linkt",
        ),
    ),
    (
        "Bills & Utilities",
        (
            "telstra", "optus", "vodafone", "energy australia", "agl", "origin",
            "electricity", "gas", "water corporation", "sydney water",
            "yarra valley water", "internet", "nbn", "tpg", "iinet",
            "aussie broadband", "insurance", "council rates", "utilities",
        ),
    ),
    (
        "Entertainment",
        (
            "netflix", "stan", "disney", "binge", "paramount", "spotify",
            "apple music", "youtube", "cinema", "hoyts", "event cinemas", "village",
            "reading cinemas", "theatre", "concert", "ticketek", "ticketmaster",
            "gaming", "playstation", "xbox", "nintendo", "steam",
        ),
    ),
    (
        "Shopping",
        (
            "kmart", "target", "big w", "myer", "david jones", "best & less",
            "amazon", "ebay", "catch", "temple & webster", "ikea", "bunnings",
            "officeworks", "jb hi-fi", "harvey norman", "good guys", "rebel sport",
            "amart", "fantastic furniture", "chemist warehouse", "priceline",
            "chemist", "pharmacy",
        ),
    ),
    (
        "Health & Medical",
        (
            "medical centre", "doctors", "clinic", "hospital", "pathology",
            "radiology", "dentist", "dental", "physiotherapy", "physio",
            "chiropractic", "optometrist", "healthscope", "bupa", "medibank",
            "ramsay health", "laverty", "douglass hanly", "qml", "snp",
            "capital pathology",
        ),
    ),
    (
        "Home & Garden",
        (
            "bunnings", "mitre 10", "total tools", "masters", "hardware", "plumbing",
            "electrical", "garden", "nursery", "landscaping", "furniture",
            "manchester", "spotlight", "lincraft", "freedom", "beacon lighting",
        ),
    ),
    (
        "Education",
        (
            "school", "university", "tafe", "college", "tuition", "textbooks",
            "bookshop", "stationery", "newsagent", "course", "training", "udemy",
            "coursera",
        ),
    ),
    (
        "Travel",
        (
            "qantas", "virgin", "jetstar", "rex", "tigerair", "airline", "flight",
            "hotel", "booking.com", "airbnb", "expedia", "wotif", "accommodation",
            "hostel", "motel", "resort", "car rental", "hertz", "avis", "budget",
            "thrifty", "europcar",
        ),
    ),
    (
        "Hobbies",
        (
            "gym", "fitness", "anytime fitness", "f45", "crossfit", "yoga",
            "pilates", "sports", "golf", "tennis", "bowling", "swimming",
            "climbing", "diving", "fishing", "craft", "art supplies", "hobby",
            "camera", "photo",
        ),
    ),
]


def score_categories(merchant_key: str, description: str) -> list[tuple[str, int]]:
    """Score every category against a merchant key and description.

    Per keyword: +100 when the key equals it, +50 when the key contains it,
    and independently +10 when the description contains it.

    Returns:
        (category, score) pairs in declaration order, including zero scores.
    """
    merchant = (merchant_key or "").lower()
    text = (description or "").lower()

    scores: list[tuple[str, int]] = []
    for category, keywords in CATEGORY_KEYWORDS:
        score = 0
        for keyword in keywords:
            if merchant == keyword:
                score += EXACT_MATCH_SCORE
            elif keyword in merchant:
                score += MERCHANT_CONTAINS_SCORE
            if keyword in text:
                score += DESCRIPTION_CONTAINS_SCORE
        scores.append((category, score))
    return scores


def classify(merchant_key: str, description: str) -> str | None:
    """Categorize by keyword heuristics.

    Args:
        merchant_key: Normalized merchant key (e.g. "WOOLWORTHS")
        description: Full expense description for additional context

    Returns:
        Highest scoring category (earliest declared on ties), or None when no
        keyword matched at all.
    """
    best_category: str | None = None
    best_score = 0
    for category, score in score_categories(merchant_key, description):
        if score > best_score:
            best_category, best_score = category, score
    return best_category


def is_common_merchant(merchant_key: str) -> bool:
    """True when the merchant key alone matches some keyword."""
    merchant = (merchant_key or "").lower()
    if not merchant:
        return False
    return any(
        merchant == keyword or keyword in merchant
        for _, keywords in CATEGORY_KEYWORDS
        for keyword in keywords
    )


def heuristic_stats() -> dict:
    """Keyword coverage figures for monitoring."""
    per_category = {category: len(keywords) for category, keywords in CATEGORY_KEYWORDS}
    return {
        "category_count": len(CATEGORY_KEYWORDS),
        "total_keywords": sum(per_category.values()),
        "keywords_per_category": per_category,
    }
