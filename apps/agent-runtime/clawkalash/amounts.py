"""Lossless conversion between human-decimal and base-unit token amounts.

No binary floating point is used anywhere in this module: every conversion is
digit-string arithmetic so amounts survive exactly.
"""

from __future__ import annotations

import re

from .errors import InvalidAmountError, PrecisionError

_UINT_RE = re.compile(r"[0-9]+")
_DECIMAL_RE = re.compile(r"([0-9]*)\.([0-9]*)")


def _check_decimals(decimals: int) -> None:
    if not isinstance(decimals, int) or decimals < 0 or decimals > 255:
        raise InvalidAmountError("Token decimals must be 0..255.", details={"decimals": decimals})


def _strip_leading_zeros(digits: str) -> str:
    return digits.lstrip("0") or "0"


def _human_to_base_units(raw: str, decimals: int) -> str:
    match = _DECIMAL_RE.fullmatch(raw)
    if not match or not (match.group(1) or match.group(2)):
        raise InvalidAmountError(f"Invalid amount format '{raw}'.", details={"amount": raw})
    int_part, frac_part = match.group(1), match.group(2)
    if len(frac_part) > decimals:
        raise PrecisionError(
            f"Amount \"{raw}\" has more decimal places ({len(frac_part)}) than token supports ({decimals})",
            "Round the amount to the token's precision explicitly.",
            {"amount": raw, "decimals": decimals},
        )
    return _strip_leading_zeros(int_part + frac_part.ljust(decimals, "0"))


def parse_amount(raw: str, decimals: int) -> str:
    """Parse a human-readable or base-unit amount string into base units.

    - With a ``.`` the value is human-readable ("0.1" ETH).
    - A pure integer below ``10 ** (decimals // 2)`` is also treated as
      human-readable ("100" USDC); anything at or above it is taken to already
      be in base units. This guess is ambiguous near the threshold.
    - Anything else is rejected.
    """
    _check_decimals(decimals)
    trimmed = str(raw).strip()
    if "." in trimmed:
        return _human_to_base_units(trimmed, decimals)
    if not _UINT_RE.fullmatch(trimmed):
        raise InvalidAmountError(f"Invalid amount format '{raw}'.", "Use a number like 100 or 0.25.", {"amount": raw})

    threshold = 10 ** (decimals // 2)
    if int(trimmed) < threshold:
        # Empty fractional part, so a zero-decimal token cannot trip the precision check.
        return _human_to_base_units(trimmed + ".", decimals)
    return _strip_leading_zeros(trimmed)


def format_units(amount_base_units: int | str, decimals: int) -> str:
    amount = int(amount_base_units)
    if decimals <= 0:
        return str(amount)
    if amount == 0:
        return "0"
    sign = "-" if amount < 0 else ""
    s = str(abs(amount))
    if len(s) <= decimals:
        s = s.rjust(decimals + 1, "0")
    whole = s[:-decimals]
    frac = s[-decimals:].rstrip("0")
    if not frac:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{frac}"
