from __future__ import annotations

import re

from grantsync.normalize.schema import GrantCategory

CFDA_CATEGORY_MAP: dict[str, GrantCategory] = {
    "10": GrantCategory.NUTRITION,  # USDA
    "11": GrantCategory.OTHER,  # Commerce
    "12": GrantCategory.OTHER,  # Defense
    "14": GrantCategory.INFRASTRUCTURE,  # HUD
    "15": GrantCategory.OTHER,  # Interior
    "16": GrantCategory.OTHER,  # Justice
    "17": GrantCategory.OTHER,  # Labor
    "20": GrantCategory.INFRASTRUCTURE,  # Transportation
    "45": GrantCategory.ARTS,  # NEA, NEH
    "47": GrantCategory.STEM,  # NSF
    "66": GrantCategory.INFRASTRUCTURE,  # EPA
    "84": GrantCategory.FEDERAL,  # Education
    "93": GrantCategory.OTHER,  # HHS
}

# Checked in order; the first match wins.
KEYWORD_CATEGORY_RULES: tuple[tuple[GrantCategory, re.Pattern[str]], ...] = (
    (
        GrantCategory.NUTRITION,
        re.compile(r"\b(lunch|nutrition|food|meals?|snap|breakfast)\b", re.IGNORECASE),
    ),
    (
        GrantCategory.ARTS,
        re.compile(r"\b(arts?|music|theat(?:er|re)|dance|cultural|creative)\b", re.IGNORECASE),
    ),
    (
        GrantCategory.STEM,
        re.compile(r"\b(stem|science|technology|engineering|math|research)\b", re.IGNORECASE),
    ),
    (
        GrantCategory.INFRASTRUCTURE,
        re.compile(r"\b(infrastructure|building|facility|construction|energy)\b", re.IGNORECASE),
    ),
    (
        GrantCategory.STATE,
        re.compile(r"\b(state|california|texas|florida)\b", re.IGNORECASE),
    ),
)

# Portal category vocabulary, substring matched against the category column only.
STATE_PORTAL_CATEGORY_RULES: tuple[tuple[GrantCategory, tuple[str, ...]], ...] = (
    (GrantCategory.NUTRITION, ("food", "nutrition", "agriculture")),
    (GrantCategory.ARTS, ("art", "culture", "humanities")),
    (GrantCategory.STEM, ("science", "technology", "stem")),
    (GrantCategory.INFRASTRUCTURE, ("infrastructure", "energy", "environment")),
)


def cfda_prefix(cfda: str | None) -> str | None:
    if not cfda:
        return None
    prefix = str(cfda).strip().split(".", 1)[0].strip()
    return prefix or None


def category_from_cfda(cfda: str | None) -> GrantCategory | None:
    """Map a program code to a category by prefix; ``None`` when unmapped."""

    prefix = cfda_prefix(cfda)
    if prefix is None:
        return None
    return CFDA_CATEGORY_MAP.get(prefix)


def category_from_keywords(text: str | None) -> GrantCategory:
    if not text:
        return GrantCategory.FEDERAL
    for category, pattern in KEYWORD_CATEGORY_RULES:
        if pattern.search(text):
            return category
    return GrantCategory.FEDERAL


def infer_category(cfda: str | None, *text_parts: str | None) -> GrantCategory:
    mapped = category_from_cfda(cfda)
    if mapped is not None:
        return mapped
    return category_from_keywords(" ".join(part for part in text_parts if part))


def category_from_state_portal(categories: str | None, *text_parts: str | None) -> GrantCategory:
    lowered = (categories or "").lower()
    for category, needles in STATE_PORTAL_CATEGORY_RULES:
        if any(needle in lowered for needle in needles):
            return category

    text = " ".join(part for part in (*text_parts, categories) if part)
    if not text:
        return GrantCategory.STATE
    inferred = category_from_keywords(text)
    # Portal records are state grants unless the text says otherwise.
    return GrantCategory.STATE if inferred is GrantCategory.FEDERAL else inferred
