"""Token amount codec. Raw integer units to and from decimal strings, no floats."""
from __future__ import annotations

import re

_DECIMAL_RE = re.compile(r"^(-)?(\d*)(?:\.(\d*))?$")

# Below 10^-4 of a unit a balance is rendered with at least this many digits.
SMALL_AMOUNT_DIGITS = 12


def _check_decimals(decimals: int) -> None:
    if not 0 <= decimals <= 255:
        raise ValueError(f"decimals out of range [0, 255]: {decimals}")


def to_raw(value: str, decimals: int) -> int:
    """Parse a human decimal string into raw integer units.

    Examples:
        to_raw("0.6", 6) → 600000
        to_raw("12", 0) → 12
    """
    _check_decimals(decimals)
    text = value.strip().replace("_", "")
    match = _DECIMAL_RE.match(text)
    if not match or (not match.group(2) and not match.group(3)):
        raise ValueError(f"Not a decimal amount: {value!r}")

    sign, whole, frac = match.group(1), match.group(2) or "0", match.group(3) or ""
    frac = frac.rstrip("0")
    if len(frac) > decimals:
        raise ValueError(
            f"{value!r} has more than {decimals} fractional digits"
        )

    raw = int(whole) * 10**decimals + int(frac.ljust(decimals, "0") or "0")
    return -raw if sign else raw


def to_decimal_string(raw: int, decimals: int) -> str:
    """Render raw units exactly, trimming trailing fractional zeros.

    Examples:
        to_decimal_string(600000, 6) → "0.6"
        to_decimal_string(0, 18) → "0"
    """
    _check_decimals(decimals)
    sign = "-" if raw < 0 else ""
    whole, frac = divmod(abs(raw), 10**decimals)
    if decimals == 0 or frac == 0:
        return f"{sign}{whole}"
    frac_text = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_text}"


def format_balance(raw: int, decimals: int) -> str:
    """Display form of a balance.

    Non-zero magnitudes below 10^-4 of a unit keep at least twelve fractional
    digits, and always every significant digit, so they never collapse to "0".
    """
    _check_decimals(decimals)
    magnitude = abs(raw)
    if magnitude == 0 or magnitude * 10_000 >= 10**decimals:
        return to_decimal_string(raw, decimals)

    sign = "-" if raw < 0 else ""
    frac = str(magnitude).rjust(decimals, "0").rstrip("0")
    return f"{sign}0.{frac.ljust(SMALL_AMOUNT_DIGITS, '0')}"


def format_amount(raw: int, decimals: int, symbol: str = "") -> str:
    text = format_balance(raw, decimals)
    return f"{text} {symbol}" if symbol else text


def mul_div_floor(a: int, b: int, c: int) -> int:
    """floor(a * b / c) in exact integer math; 0 when c is 0."""
    if c == 0:
        return 0
    return (a * b) // c


def ratio_bps(numerator: int, denominator: int) -> int:
    """numerator / denominator in basis points, floored."""
    return mul_div_floor(numerator, 10_000, denominator)


def format_percent_bps(bps: int) -> str:
    """Render basis points as a percentage with two decimals: 1234 → "12.34"."""
    sign = "-" if bps < 0 else ""
    whole, frac = divmod(abs(bps), 100)
    return f"{sign}{whole}.{frac:02d}"


def normalise(raw: int, decimals: int, target_decimals: int = 18) -> int:
    """Rescale raw units to ``target_decimals`` (floor when shrinking)."""
    if decimals == target_decimals:
        return raw
    if decimals < target_decimals:
        return raw * 10 ** (target_decimals - decimals)
    return raw // 10 ** (decimals - target_decimals)
