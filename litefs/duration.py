"""Parsing and formatting of duration strings such as ``1h30m`` or ``250ms``."""

from __future__ import annotations

import re
from fractions import Fraction

__all__ = ["parse_duration", "format_duration"]

_NANOSECOND = 1
_MICROSECOND = 1_000 * _NANOSECOND
_MILLISECOND = 1_000 * _MICROSECOND
_SECOND = 1_000 * _MILLISECOND
_MINUTE = 60 * _SECOND
_HOUR = 60 * _MINUTE

_UNITS = {
    "ns": _NANOSECOND,
    "us": _MICROSECOND,
    "\u00b5s": _MICROSECOND,  # micro sign
    "\u03bcs": _MICROSECOND,  # Greek small letter mu
    "ms": _MILLISECOND,
    "s": _SECOND,
    "m": _MINUTE,
    "h": _HOUR,
}

_MAX_NANOSECONDS = 2**63 - 1

_COMPONENT = re.compile(r"(\d*)(?:\.(\d*))?([^\d.]*)")


def parse_duration(text: str) -> float:
    """Parse a duration string and return its length in seconds.

    A duration is an optionally signed sequence of decimal numbers, each with
    an optional fraction and a unit suffix: ``ns``, ``us`` (or ``µs``), ``ms``,
    ``s``, ``m`` or ``h``. The bare string ``0`` is also accepted.
    """
    if not isinstance(text, str):
        raise TypeError(f"duration must be a string, not {type(text).__name__}")

    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]

    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f'invalid duration "{text}"')

    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        whole, fraction, unit = match.groups()
        if not whole and not fraction:
            raise ValueError(f'invalid duration "{text}"')
        if not unit:
            raise ValueError(f'missing unit in duration "{text}"')
        if unit not in _UNITS:
            raise ValueError(f'unknown unit "{unit}" in duration "{text}"')

        value = Fraction(int(whole or "0"))
        if fraction:
            value += Fraction(int(fraction), 10 ** len(fraction))
        total += value * _UNITS[unit]
        pos = match.end()

    nanoseconds = int(total)
    limit = _MAX_NANOSECONDS + 1 if negative else _MAX_NANOSECONDS
    if nanoseconds > limit:
        raise ValueError(f'invalid duration "{text}"')
    if negative:
        nanoseconds = -nanoseconds
    return nanoseconds / _SECOND


def _with_fraction(value: int, unit: int) -> str:
    whole, remainder = divmod(value, unit)
    if not remainder:
        return str(whole)
    width = len(str(unit)) - 1
    digits = str(remainder).rjust(width, "0").rstrip("0")
    return f"{whole}.{digits}"


def format_duration(seconds: float) -> str:
    """Format a number of seconds in the canonical form, e.g. ``1m30s``."""
    nanoseconds = round(seconds * _SECOND)
    if nanoseconds == 0:
        return "0s"

    sign = "-" if nanoseconds < 0 else ""
    value = abs(nanoseconds)

    if value < _SECOND:
        if value < _MICROSECOND:
            return f"{sign}{value}ns"
        if value < _MILLISECOND:
            return f"{sign}{_with_fraction(value, _MICROSECOND)}\u00b5s"
        return f"{sign}{_with_fraction(value, _MILLISECOND)}ms"

    hours, rest = divmod(value, _HOUR)
    minutes, rest = divmod(rest, _MINUTE)
    secs = f"{_with_fraction(rest, _SECOND)}s"
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}"
    if minutes:
        return f"{sign}{minutes}m{secs}"
    return f"{sign}{secs}"