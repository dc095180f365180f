"""
Shared utility functions.
"""

import logging
from typing import Any
import uuid as uuid_mod
from datetime import datetime, timezone
from fastapi import HTTPException

logger = logging.getLogger(__name__)


def parse_uuid(value: str, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a 400 HTTPException on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    try:
        return uuid_mod.UUID(value)
    except (ValueError, AttributeError):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid UUID for '{field_name}': {value!r}",
        )


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def safe_float(val: Any, default: float = 0.0) -> float:
    """Platform APIs return numbers as strings, ints, floats or not at all."""
    try:
        return float(val) if val is not None and val != "" else default
    except (ValueError, TypeError):
        return default


def safe_int(val: Any, default: int = 0) -> int:
    try:
        return int(float(val)) if val is not None and val != "" else default
    except (ValueError, TypeError):
        return default


def ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    """Divide, returning 0 for an empty denominator."""
    if not denominator:
        return 0.0
    return round(numerator / denominator * scale, 6)
