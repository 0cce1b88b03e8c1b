"""
Utility functions for Polymarket Scoring.

This module provides helper functions shared by the scoring engines:
- Wallet address validation and checksum normalization
- Numeric helpers (clamping, mean, standard deviation, coefficient of variation)
- Timestamp parsing and JSON serialization of result records
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional, Union

import numpy as np
from web3 import Web3

logger = logging.getLogger(__name__)


class InvalidAddressError(ValueError):
    """Raised when a wallet address fails validation on a write path."""

    def __init__(self, address: Any):
        self.address = address
        super().__init__(f"Invalid wallet address: {address}")


# ============================================================================
# Addresses
# ============================================================================

def is_valid_wallet_address(address: Any) -> bool:
    """
    Validate an Ethereum/Polygon wallet address.

    Accepts lower-case, upper-case and correctly checksummed mixed-case
    addresses. Mixed-case addresses with a wrong checksum are rejected.

    Args:
        address: Address to validate.

    Returns:
        True if valid.
    """
    if not address or not isinstance(address, str):
        return False
    if not Web3.is_address(address):
        return False
    body = address[2:] if address[:2].lower() == "0x" else address
    if body != body.lower() and body != body.upper():
        return Web3.is_checksum_address(address)
    return True


def checksum_address(address: Any) -> str:
    """
    Convert an address to its EIP-55 checksum form.

    Args:
        address: Address to convert.

    Returns:
        Checksummed address.

    Raises:
        InvalidAddressError: If the address is not valid.
    """
    if not is_valid_wallet_address(address):
        raise InvalidAddressError(address)
    return Web3.to_checksum_address(address)


def normalize_address(address: str) -> str:
    """Lower-case an address for case-insensitive comparisons."""
    return (address or "").strip().lower()


# ============================================================================
# Numbers
# ============================================================================

def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    """Clamp a value into [low, high]."""
    return max(low, min(high, value))


def mean(values: Iterable[float]) -> float:
    """Arithmetic mean, 0.0 for an empty sequence."""
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return 0.0
    return float(arr.mean())


def std_dev(values: Iterable[float]) -> float:
    """Population standard deviation, 0.0 for an empty sequence."""
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return 0.0
    return float(arr.std())


def coefficient_of_variation(values: Iterable[float]) -> Optional[float]:
    """
    Coefficient of variation (std / mean).

    Returns:
        The CoV, or None when the sequence is empty or its mean is zero.
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return None
    avg = float(arr.mean())
    if avg == 0:
        return None
    return float(arr.std()) / avg


def median(values: Iterable[float]) -> float:
    """Median, 0.0 for an empty sequence."""
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return 0.0
    return float(np.median(arr))


# ============================================================================
# Time and serialization
# ============================================================================

def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(
    value: Union[str, int, float, datetime, None],
    default: Optional[datetime] = None
) -> Optional[datetime]:
    """
    Parse various timestamp formats to a naive UTC datetime.

    Handles:
    - datetime objects (aware values are converted to UTC)
    - ISO format strings
    - Unix timestamps (seconds or milliseconds)

    Args:
        value: Timestamp value to parse.
        default: Default value if parsing fails.

    Returns:
        Parsed datetime or default.
    """
    if value is None:
        return default

    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str):
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        else:
            ts = float(value)
            if ts > 1e12:  # Milliseconds
                ts = ts / 1000
            parsed = datetime.fromtimestamp(ts, tz=timezone.utc)
    except (ValueError, TypeError, OSError):
        return default

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def json_dumps_safe(obj: Any, **kwargs) -> str:
    """
    Safely serialize an object to JSON.

    Handles Decimal, datetime, Enum, and result records with to_dict().

    Args:
        obj: Object to serialize.

    Returns:
        JSON string.
    """
    def default_serializer(o):
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        if hasattr(o, "to_dict"):
            return o.to_dict()
        if isinstance(o, np.generic):
            return o.item()
        raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")

    return json.dumps(obj, default=default_serializer, **kwargs)
