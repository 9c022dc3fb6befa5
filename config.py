"""
Planner settings, lab presets and logging setup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from errors import DomainError, ParseError
from units import parse_number

DEFAULT_PREFERRED_FACTORS: Tuple[float, ...] = (10, 5, 4, 3, 2)


@dataclass(frozen=True)
class PlannerConfig:
    """
    overage_percent : extra volume added to every step (10 -> +10 %).
    min_pipette_ul / max_pipette_ul : accurate pipetting range in µL.
    preferred_factors : factors tried, in order, when staging a large dilution.
    """

    overage_percent: float = 0.0
    min_pipette_ul: float = 2.0
    max_pipette_ul: float = 1000.0
    preferred_factors: Tuple[float, ...] = field(default=DEFAULT_PREFERRED_FACTORS)

    @property
    def overage_multiplier(self) -> float:
        return 1.0 + self.overage_percent / 100.0

    def validate(self) -> "PlannerConfig":
        if self.min_pipette_ul <= 0:
            raise DomainError("Min. pipetting volume must be > 0.")
        if self.max_pipette_ul < self.min_pipette_ul:
            raise DomainError("Max. pipetting volume must be >= min. pipetting volume.")
        if self.overage_percent < 0:
            raise DomainError("Overage must be >= 0 %.")
        if any(f <= 1 for f in self.preferred_factors):
            raise DomainError("Preferred dilution factors must all be > 1.")
        return self

    @classmethod
    def from_inputs(
        cls,
        overage_percent: Any = "",
        min_pipette_ul: Any = "",
        max_pipette_ul: Any = "",
        preferred_factors: Union[str, Sequence[Any], None] = "",
    ) -> "PlannerConfig":
        """
        Build a config from raw form fields.

        Blank, zero or unreadable fields fall back to the defaults, so an
        untouched form always yields a usable config.
        """
        factors = _factor_list(preferred_factors)
        return cls(
            overage_percent=_number_or(overage_percent, 0.0),
            min_pipette_ul=_number_or(min_pipette_ul, 2.0),
            max_pipette_ul=_number_or(max_pipette_ul, 1000.0),
            preferred_factors=factors or DEFAULT_PREFERRED_FACTORS,
        )


def _number_or(raw: Any, default: float) -> float:
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = parse_number(raw)
    except ParseError:
        return default
    return value or default


def _factor_list(raw: Union[str, Sequence[Any], None]) -> Tuple[float, ...]:
    if raw is None:
        return ()
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    factors = []
    for item in items:
        value = _number_or(item, 0.0)
        if value:
            factors.append(value)
    return tuple(factors)


# ------------------------------------------------------------
# Lab presets
# ------------------------------------------------------------

@dataclass(frozen=True)
class LabPreset:
    well_volume_ul: float
    planner: PlannerConfig


LAB_PRESETS: Dict[str, LabPreset] = {
    "Custom": LabPreset(1000.0, PlannerConfig()),
    "Cell culture (300 µL wells)": LabPreset(
        300.0, PlannerConfig(overage_percent=10.0, min_pipette_ul=2.0, max_pipette_ul=200.0)
    ),
    "Chemistry (1000 µL)": LabPreset(1000.0, PlannerConfig(min_pipette_ul=10.0)),
    "qPCR / assay (20 µL)": LabPreset(
        20.0, PlannerConfig(overage_percent=10.0, min_pipette_ul=0.5, max_pipette_ul=20.0)
    ),
}


def load_planner_config(
    settings: Optional[Mapping[str, Any]] = None,
    base: Optional[PlannerConfig] = None,
) -> PlannerConfig:
    """
    Overlay a settings mapping (e.g. the `[planner]` table of
    `.streamlit/secrets.toml`) on top of `base`.
    """
    config = base or PlannerConfig()
    if not settings:
        return config

    updates: Dict[str, Any] = {}
    for key in ("overage_percent", "min_pipette_ul", "max_pipette_ul"):
        if key in settings:
            updates[key] = parse_number(settings[key])
    if "preferred_factors" in settings:
        factors = _factor_list(settings["preferred_factors"])
        if factors:
            updates["preferred_factors"] = factors
    return replace(config, **updates).validate()


# ------------------------------------------------------------
# Logging
# ------------------------------------------------------------

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT)
