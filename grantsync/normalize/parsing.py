from __future__ import annotations

import math
import re
from datetime import UTC, datetime, timedelta
from typing import Any

import pandas as pd

OPEN_ENDED_DAYS = 365

_CURRENCY_PATTERN = re.compile(r"[$,]")
_RANGE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*[-–—]\s*(\d+(?:\.\d+)?)")
_NUMBER_PATTERN = re.compile(r"(\d+(?:\.\d+)?)")
_US_DATE_PATTERN = re.compile(r"^\s*(\d{1,2})/(\d{1,2})/(\d{4})\s*$")


def parse_funding_range(value: Any) -> tuple[float, float]:
    """Parse "$10,000 - $50,000" style text into a clamped (min, max) pair."""

    if value is None:
        return 0.0, 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        amount = coerce_amount(value)
        return amount, amount

    cleaned = _CURRENCY_PATTERN.sub("", str(value)).strip()
    if not cleaned:
        return 0.0, 0.0

    range_match = _RANGE_PATTERN.search(cleaned)
    if range_match:
        return clamp_funding_range(float(range_match.group(1)), float(range_match.group(2)))

    single_match = _NUMBER_PATTERN.search(cleaned)
    if single_match:
        amount = float(single_match.group(1))
        return amount, amount

    return 0.0, 0.0


def coerce_amount(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        amount = float(value)
    else:
        cleaned = _CURRENCY_PATTERN.sub("", str(value)).strip()
        try:
            amount = float(cleaned)
        except ValueError:
            match = _NUMBER_PATTERN.search(cleaned)
            amount = float(match.group(1)) if match else 0.0
    if not math.isfinite(amount) or amount < 0:
        return 0.0
    return amount


def clamp_funding_range(amount_min: float, amount_max: float) -> tuple[float, float]:
    resolved_min = max(0.0, amount_min)
    resolved_max = max(resolved_min, amount_max)
    return resolved_min, resolved_max


def parse_date(value: Any) -> datetime | None:
    """Parse provider dates into aware UTC datetimes; ``None`` when unparsable."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)

    text = str(value).strip()
    if not text:
        return None

    us_match = _US_DATE_PATTERN.match(text)
    if us_match:
        month, day, year = (int(part) for part in us_match.groups())
        try:
            return datetime(year, month, day, tzinfo=UTC)
        except ValueError:
            return None

    try:
        parsed = pd.to_datetime(text, utc=True, errors="coerce")
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed is None or pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def default_deadline(now: datetime | None = None, *, days: int = OPEN_ENDED_DAYS) -> datetime:
    reference = now or datetime.now(tz=UTC)
    return reference + timedelta(days=days)


def resolve_deadline(
    value: Any,
    *,
    now: datetime | None = None,
    open_ended_days: int = OPEN_ENDED_DAYS,
) -> tuple[datetime, bool]:
    """Return ``(deadline, open_ended)``; missing or bad dates become open-ended."""

    parsed = parse_date(value)
    if parsed is None:
        return default_deadline(now, days=open_ended_days), True
    return parsed, False


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = " ".join(str(value).split())
    return text or None


def string_or_none(value: Any) -> str | None:
    if value is None:
        return None
    as_str = str(value).strip()
    return as_str or None
