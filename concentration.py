"""
Concentration value type and molar <-> mass/volume conversion.

Base units per kind:
- molar            M (mol/L)
- mass/vol         g/L (== mg/mL)
- activity         IU/mL
- ratio ("X")      fold, dimensionless
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import PlanningError


class ConcentrationKind(str, Enum):
    MOLAR = "molar"
    MASS_PER_VOLUME = "mass/vol"
    ACTIVITY = "activity"
    RATIO = "X"


BASE_UNITS = {
    ConcentrationKind.MOLAR: "M",
    ConcentrationKind.MASS_PER_VOLUME: "g/L",
    ConcentrationKind.ACTIVITY: "IU/mL",
    ConcentrationKind.RATIO: "X",
}


@dataclass(frozen=True)
class Concentration:
    kind: ConcentrationKind
    value: float

    @property
    def base_unit(self) -> str:
        return BASE_UNITS[self.kind]

    def describe(self, decimals: int = 6) -> str:
        return f"{self.value:.{decimals}f} {self.base_unit}"

    def scaled(self, factor: float) -> "Concentration":
        """Same kind, value divided by a dilution factor."""
        return Concentration(self.kind, self.value / factor)


def convert(
    conc: Concentration,
    target_kind: ConcentrationKind,
    mw: Optional[float] = None,
) -> Concentration:
    """
    Re-express `conc` as `target_kind`.

    mass/vol -> molar divides by MW (g/mol); molar -> mass/vol multiplies.
    Any other pair of different kinds cannot be converted.
    """
    if conc.kind == target_kind:
        return conc
    if mw is None or mw <= 0:
        raise PlanningError(
            "Molecular weight is required to convert between mass/vol and molar."
        )
    if conc.kind == ConcentrationKind.MASS_PER_VOLUME and target_kind == ConcentrationKind.MOLAR:
        return Concentration(ConcentrationKind.MOLAR, conc.value / mw)
    if conc.kind == ConcentrationKind.MOLAR and target_kind == ConcentrationKind.MASS_PER_VOLUME:
        return Concentration(ConcentrationKind.MASS_PER_VOLUME, conc.value * mw)
    raise PlanningError(
        f"Unsupported conversion: {conc.kind.value} -> {target_kind.value}."
    )


def conversion_note(
    from_kind: ConcentrationKind,
    to_kind: ConcentrationKind,
    mw: Optional[float],
) -> str:
    """One-line explanation of a molar <-> mass/vol conversion ('' if none)."""
    if from_kind == to_kind:
        return ""
    if not mw:
        return "Note: converting between mass/volume and molar units requires Molecular Weight."
    if from_kind == ConcentrationKind.MASS_PER_VOLUME:
        return f"M = (g/L) / MW; MW = {mw:g} g/mol used."
    return f"g/L = M × MW; MW = {mw:g} g/mol used."
