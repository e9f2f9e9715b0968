"""
InstantConf — Primitives

Shared base model, clock and hex helpers used by every component.
"""

from instantconf.primitives.common import (
    ZERO_HASH,
    ICBaseModel,
    is_placeholder_hash,
    new_id,
    normalize_hash,
    parse_quantity,
    utc_now,
)

__all__ = [
    "ZERO_HASH",
    "ICBaseModel",
    "is_placeholder_hash",
    "new_id",
    "normalize_hash",
    "parse_quantity",
    "utc_now",
]
