"""
Fixed-point helpers for cl-treasury-ops

Ratios and fee rates are integer parts-per-million. Every place that turns
a quotient into a stored or compared number goes through these helpers so
rounding is identical everywhere.
"""

import math
from typing import Any

PPM = 1_000_000


def ratio_ppm(part: int, whole: int) -> int:
    """floor(part * 1e6 / whole); 0 for an empty or missing denominator."""
    if not whole or whole <= 0:
        return 0
    return (int(part) * PPM) // int(whole)


def apply_ppm(amount: int, ppm: int) -> int:
    """floor(amount * ppm / 1e6)."""
    return (int(amount) * int(ppm)) // PPM


def round_half_up(value: float, places: int = 0) -> float:
    """
    Round half toward +infinity at the given number of decimal places.

    Python's round() is banker's rounding; displayed ratios use the
    floor(x + 0.5) convention instead, so halves always round up.
    """
    factor = 10 ** places
    rounded = math.floor(value * factor + 0.5) / factor
    return int(rounded) if places == 0 else rounded


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def msat_to_sat(msat: int) -> int:
    return int(msat) // 1000


def parse_msat(msat_val: Any) -> int:
    """
    Safely convert msat values to integers.
    Handles '1000msat' strings, raw integers, Millisatoshi objects, and plain numeric strings.
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, bool):
        return 0
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        try:
            return int(clean_val)
        except ValueError:
            return 0
    return 0
