"""
InstantConf — Common Primitives

Shared base model, clock, identifiers and the hex conventions of the
JSON-RPC wire format (0x-prefixed quantities and 32-byte hashes).
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel
from ulid import ULID

# The reserved all-zero block hash: preconfirmed, not yet part of a canonical block.
ZERO_HASH = "0x" + "00" * 32

_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def normalize_hash(value: Any) -> str:
    """
    Lower-case a 32-byte hex hash and validate its shape.

    Accepts str, bytes or anything exposing ``.hex()`` (HexBytes).
    Raises ValueError on anything that is not a 32-byte value.
    """
    if isinstance(value, (bytes, bytearray)):
        text = "0x" + bytes(value).hex()
    elif isinstance(value, str):
        text = value
    elif hasattr(value, "hex"):
        text = value.hex()
    else:
        raise ValueError(f"not a hash: {value!r}")
    text = text.strip().lower()
    if not text.startswith("0x"):
        text = "0x" + text
    if not _HASH_RE.match(text):
        raise ValueError(f"not a 32-byte hash: {value!r}")
    return text


def is_placeholder_hash(value: str | None) -> bool:
    if not value:
        return False
    try:
        return normalize_hash(value) == ZERO_HASH
    except ValueError:
        return False


def parse_quantity(value: Any) -> int | None:
    """Decode a JSON-RPC quantity ("0x1a", 26, None) into an int."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            return int(text, 16) if len(text) > 2 else 0
        return int(text)
    raise ValueError(f"not a quantity: {value!r}")


class ICBaseModel(BaseModel):
    """Base model for all InstantConf data types."""

    model_config = {"populate_by_name": True, "from_attributes": True}
