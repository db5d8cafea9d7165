from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class GrantCategory(StrEnum):
    FEDERAL = "FEDERAL"
    STATE = "STATE"
    NUTRITION = "NUTRITION"
    ARTS = "ARTS"
    STEM = "STEM"
    INFRASTRUCTURE = "INFRASTRUCTURE"
    PRIVATE_FOUNDATION = "PRIVATE_FOUNDATION"
    CORPORATE = "CORPORATE"
    OTHER = "OTHER"


class GrantSourceType(StrEnum):
    FEDERAL = "FEDERAL"
    STATE = "STATE"
    PRIVATE_FOUNDATION = "PRIVATE_FOUNDATION"
    CORPORATE = "CORPORATE"
    OTHER = "OTHER"


class Requirements(dict):
    """Source-specific metadata bag.

    Stored and compared as a plain JSON object; the accessors coerce on read
    and fall back to ``default`` instead of raising.
    """

    def get_str(self, key: str, default: str | None = None) -> str | None:
        value = self.get(key)
        if value is None:
            return default
        text = str(value).strip()
        return text or default

    def get_bool(self, key: str, default: bool | None = None) -> bool | None:
        value = self.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"yes", "y", "true", "1"}:
                return True
            if lowered in {"no", "n", "false", "0"}:
                return False
        return default

    def get_float(self, key: str, default: float | None = None) -> float | None:
        value = self.get(key)
        if isinstance(value, bool) or value is None:
            return default
        try:
            return float(str(value).replace(",", "").replace("$", ""))
        except ValueError:
            return default

    def get_list(self, key: str) -> list[Any]:
        value = self.get(key)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return [value]


@dataclass(slots=True)
class NormalizedGrant:
    """Canonical grant record produced from one provider record."""

    title: str
    category: GrantCategory
    source_type: GrantSourceType
    funding_amount_min: float
    funding_amount_max: float
    deadline: datetime
    external_id: str
    source_url: str | None = None
    application_url: str | None = None
    cfda: str | None = None
    agency_code: str | None = None
    description: str | None = None
    eligibility_criteria: str | None = None
    requirements: Requirements = field(default_factory=Requirements)
    is_active: bool = True
    open_ended: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.requirements, Requirements):
            self.requirements = Requirements(self.requirements or {})

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["category"] = str(self.category)
        payload["source_type"] = str(self.source_type)
        payload["deadline"] = self.deadline.isoformat()
        payload["requirements"] = dict(self.requirements)
        return payload
