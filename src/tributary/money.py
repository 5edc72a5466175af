"""Token amount conversions between integer base units and display amounts."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR


USDC_DECIMALS = 6


def _scale(decimals: int) -> Decimal:
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    return Decimal(10) ** decimals


def to_base_units(value: Decimal | float | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a display amount to base units, rounding down so nothing is overcharged."""
    dec = Decimal(str(value))
    if dec < 0:
        raise ValueError(f"Amount must be >= 0, got {value}")
    return int((dec * _scale(decimals)).to_integral_value(rounding=ROUND_FLOOR))


def from_base_units(value: int, decimals: int = USDC_DECIMALS) -> Decimal:
    return (Decimal(value) / _scale(decimals)).quantize(Decimal(1).scaleb(-decimals))


def format_amount(value: int, currency: str = "USDC", decimals: int = USDC_DECIMALS) -> str:
    """e.g. 100 -> '0.0001 USDC (100 base units)'"""
    display = format(from_base_units(value, decimals).normalize(), "f")
    return f"{display} {currency} ({value} base units)"
