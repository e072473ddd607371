from __future__ import annotations

from decimal import Decimal, InvalidOperation

from .project_constants import HBAR_DECIMALS, WIN_RATE_PER_PERCENT


def to_display_amount(raw_amount: int, decimals: int) -> Decimal:
    return Decimal(int(raw_amount)).scaleb(-int(decimals)).normalize()


def format_amount(raw_amount: int, decimals: int, symbol: str) -> str:
    amount = to_display_amount(raw_amount, decimals)
    return f"{amount:f} {symbol}"


def format_hbar(tinybars: int) -> str:
    return f"{to_display_amount(tinybars, HBAR_DECIMALS):f} ℏ"


def parse_amount(text: str, decimals: int) -> int:
    """Human amount ("1.5") -> base units. Rejects precision the token cannot hold."""
    try:
        value = Decimal(text.strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {text!r}")
    raw = value.scaleb(int(decimals))
    if raw != raw.to_integral_value() or raw < 0:
        raise ValueError(f"Amount {text} does not fit {decimals} decimals")
    return int(raw)


def win_rate_percent(raw: int) -> Decimal:
    return Decimal(int(raw)) / Decimal(WIN_RATE_PER_PERCENT)


def format_win_rate(raw: int) -> str:
    return f"{win_rate_percent(raw):.4f}%"
