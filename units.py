"""
Unit registry, numeric parser and display formatting.

Every quantity a user types goes through here first:
- `parse_number` understands plain floats, scientific notation and lab
  shorthand ("25k", "2.5 million", "3x10^5").
- `to_base` scales a non-negative quantity into the table's base unit
  (L for volume, g for mass, M for molarity, ...).
- `parse_concentration` tags a value with its concentration kind.
"""

from __future__ import annotations

import math
import re
from typing import Mapping, Union

from concentration import Concentration, ConcentrationKind
from errors import ParseError

Number = Union[str, int, float]

# ------------------------------------------------------------
# Conversion tables (unit -> factor into base unit)
# ------------------------------------------------------------

VOLUME_TO_BASE: Mapping[str, float] = {"L": 1, "mL": 1e-3, "µL": 1e-6, "nL": 1e-9}
MASS_TO_BASE: Mapping[str, float] = {"g": 1, "mg": 1e-3, "µg": 1e-6, "ng": 1e-9}
MOLAR_TO_BASE: Mapping[str, float] = {"M": 1, "mM": 1e-3, "µM": 1e-6, "nM": 1e-9}
ACTIVITY_TO_BASE: Mapping[str, float] = {"IU/mL": 1, "kIU/mL": 1000}
MASS_PER_VOLUME_TO_BASE: Mapping[str, float] = {
    "g/L": 1,
    "mg/mL": 1,
    "µg/mL": 1e-3,
    "ng/mL": 1e-6,
    "ng/µL": 1e-3,
    "µg/µL": 1,
}
RATIO_UNIT = "X"

# volumes the planner works in
VOLUME_TO_UL: Mapping[str, float] = {"L": 1e6, "mL": 1e3, "µL": 1, "nL": 1e-3}

_CONCENTRATION_TABLES = (
    (ConcentrationKind.MOLAR, MOLAR_TO_BASE),
    (ConcentrationKind.MASS_PER_VOLUME, MASS_PER_VOLUME_TO_BASE),
    (ConcentrationKind.ACTIVITY, ACTIVITY_TO_BASE),
)


def normalize_unit(unit: str) -> str:
    """Map 'uL', 'ug/mL', Greek mu etc. onto the micro-sign spellings."""
    u = str(unit).strip().replace("μ", "µ")
    return re.sub(r"u(?=[LMg])", "µ", u)


# ------------------------------------------------------------
# Parsing
# ------------------------------------------------------------

def parse_number(raw: Number) -> float:
    """
    Parse a user-entered number.

    >>> parse_number("25k")
    25000.0
    >>> parse_number("2.5 million")
    2500000.0
    >>> parse_number("3x10^5")
    300000.0
    """
    text = str(raw).strip().lower()
    text = re.sub(r"\s*million", "e6", text, count=1)
    text = re.sub(r"k$", "e3", text, count=1)
    text = re.sub(r"x10\^", "e", text, count=1)

    try:
        value = float(text)
    except ValueError:
        value = math.nan

    if not math.isfinite(value):
        raise ParseError(
            f'Invalid number input: "{raw}". Please use standard or scientific '
            "notation (e.g., 1000, 1e3, 25k, or 2.5 million)."
        )
    return value


def to_base(raw: Number, unit: str, table: Mapping[str, float], kind: str) -> float:
    """Parse `raw` and scale it by `table[unit]`; physical quantities are never negative."""
    value = parse_number(raw)
    if value < 0:
        raise ParseError(f"Invalid {kind} input. Must be a non-negative number.")

    factor = table.get(normalize_unit(unit))
    if factor is None:
        raise ParseError(f"Unsupported {kind} unit: {unit}")
    return value * factor


def to_microliters(raw: Number, unit: str = "µL") -> float:
    return to_base(raw, unit, VOLUME_TO_UL, "volume")


def parse_concentration(raw: Number, unit: str) -> Concentration:
    value = parse_number(raw)
    u = normalize_unit(unit)

    if u == RATIO_UNIT:
        if value <= 0:
            raise ParseError("X-factor must be a positive number.")
        return Concentration(ConcentrationKind.RATIO, value)

    for kind, table in _CONCENTRATION_TABLES:
        if u in table:
            return Concentration(kind, value * table[u])

    raise ParseError(f"Unsupported concentration unit: {unit}")


def parse_molecular_weight(raw: Number) -> float:
    try:
        mw = parse_number(raw)
    except ParseError:
        mw = 0.0
    if mw <= 0:
        raise ParseError("Molecular Weight (MW) must be a positive number.")
    return mw


# ------------------------------------------------------------
# Display formatting
# ------------------------------------------------------------

def _trim(text: str) -> str:
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_number(num: float) -> str:
    """Readable number with k / M suffixes, 3 sig. figs below 1."""
    if num == 0:
        return "0"
    a = abs(num)
    if a >= 1e6:
        return f"{num / 1e6:.2f}M"
    if a >= 1e3:
        text = f"{num / 1e3:.1f}"
        if text.endswith(".0"):
            text = text[:-2]
        return text + "k"
    if a >= 1:
        return _trim(f"{num:,.2f}")
    return f"{num:.3g}"


def format_dose_number(num: float) -> str:
    """Like format_number but without k/M suffixes (used for µL volumes)."""
    if num == 0:
        return "0"
    if abs(num) < 1e-3:
        return f"{num:.3g}"
    return _trim(f"{num:,.4f}")


def format_concentration(conc_mg_per_ml: float) -> str:
    """Pick mg/mL, µg/mL or ng/mL so the number stays readable."""
    if conc_mg_per_ml == 0:
        return "0 mg/mL"
    ng_per_ml = conc_mg_per_ml * 1e6
    if ng_per_ml >= 1e6:
        return format_number(conc_mg_per_ml) + " mg/mL"
    if ng_per_ml >= 1000:
        return format_number(conc_mg_per_ml * 1000) + " µg/mL"
    return format_number(ng_per_ml) + " ng/mL"
