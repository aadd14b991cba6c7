"""Core primitives for the PARCELFI stack.

This module provides the foundational utilities used throughout the stack:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- YAML/JSON loading with consistent encoding
- Money quantization and UTC timestamp helpers

Design principles:
- Pure functions where possible
- No global mutable state
- Amounts travel as Decimal, never float
"""

from __future__ import annotations

import hashlib
import json
import pathlib
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Union

import yaml

# Package root, computed once at module load
PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent
SCHEMAS_DIR = PACKAGE_ROOT / "schemas"

CENT = Decimal("0.01")


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def jsonable(obj: Any) -> Any:
    """Convert Decimals and datetimes to strings, recursively.

    Monetary values are carried as decimal strings on the wire so that
    canonical bytes never depend on float formatting.
    """
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return to_iso8601(obj)
    if isinstance(obj, dict):
        return {str(k): jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [jsonable(v) for v in obj]
    return obj


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints for amounts)

    This ensures byte-for-byte reproducibility for signatures and digests.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, list):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        jsonable(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def to_decimal(value: Union[str, int, Decimal]) -> Decimal:
    """Parse an amount into a Decimal, rejecting floats and garbage."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"amount must be a decimal string or int, got {value!r}")
    try:
        dec = Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"amount is not a valid decimal number: {value!r}")
    if not dec.is_finite():
        raise ValueError(f"amount must be finite, got {value!r}")
    return dec


def quantize_money(amount: Decimal) -> Decimal:
    """Round an amount half-up to cents."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


# Timestamp utilities
def utc_now() -> datetime:
    """Return the current aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso8601(dt: datetime) -> str:
    """Format an aware datetime as ISO8601 with millisecond precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso8601() -> str:
    """Return current UTC time in ISO8601 format."""
    return to_iso8601(utc_now())


def parse_iso8601(timestamp: str) -> Optional[datetime]:
    """Parse ISO8601 timestamp string."""
    try:
        # Handle Z suffix
        s = timestamp.replace("Z", "+00:00")
        dt = datetime.fromisoformat(s)
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
