"""Address normalization helpers."""

from __future__ import annotations

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup."""
    return str(value or "").strip().lower()


def is_zero_address(value: str | None) -> bool:
    key = normalize_address(value)
    return not key or key == ZERO_ADDRESS
