"""
Serial dilution planner.

Given a source concentration and a target description, produce a
`DilutionPlan`: an ordered tuple of `DilutionStep`s where step n takes its
volume from step n-1 (or from the source for step 1), plus pipetting-range
warnings and a short rationale for the UI.

Modes
-----
single          one C1V1 = C2V2 step, converting kinds via MW if needed
intermediate    explicit intermediate tube, then the final tube
series_list     independent tubes straight from the source; infeasible
                targets are skipped with a note instead of failing the plan
series_factor   cascade of N tubes, each F-fold more dilute than the last
serial_dose     hit a dose (mass in a final volume): direct dilution when the
                stock volume is pipettable, otherwise an iterative search for
                intermediate stocks, capped at MAX_SERIAL_STEPS

Every public entry point returns a DilutionPlan or a Failure.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd

from concentration import Concentration, ConcentrationKind, conversion_note, convert
from config import DEFAULT_PREFERRED_FACTORS, PlannerConfig
from errors import DomainError, ParseError, PlanningError, returns_failure
from units import format_concentration, format_dose_number, parse_concentration

logger = logging.getLogger(__name__)

MAX_SERIAL_STEPS = 10

# round dilution factors win over exact-but-awkward ones (9.8x -> 10x)
SNAP_TO_10_TOLERANCE = 0.5
SNAP_TO_100_TOLERANCE = 5

# diluent below this is reported as zero
ZERO_VOLUME_UL = 1e-9


class PlanMode(str, Enum):
    SINGLE = "single"
    TWO_STAGE = "intermediate"
    SERIES_LIST = "series_list"
    SERIES_FACTOR = "series_factor"
    SERIAL_DOSE = "serial_dose"


# ------------------------------------------------------------
# Plan value types
# ------------------------------------------------------------

@dataclass(frozen=True)
class DilutionStep:
    index: int
    source_label: str
    take_volume_ul: float
    add_volume_ul: float
    result_volume_ul: float
    result_concentration: Concentration
    pipette: str = ""

    @property
    def result_volume_ml(self) -> float:
        return self.result_volume_ul / 1000.0

    @property
    def concentration_label(self) -> str:
        c = self.result_concentration
        if c.kind == ConcentrationKind.MASS_PER_VOLUME:
            return format_concentration(c.value)
        return c.describe()

    @property
    def instruction(self) -> str:
        text = f"Take {format_dose_number(self.take_volume_ul)} µL of {self.source_label}"
        if self.add_volume_ul > 0:
            text += f", add {format_dose_number(self.add_volume_ul)} µL of diluent"
        return text + f" ({format_dose_number(self.result_volume_ul)} µL at {self.concentration_label})."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.index,
            "source": self.source_label,
            "take (µL)": self.take_volume_ul,
            "add (µL)": self.add_volume_ul,
            "result (µL)": self.result_volume_ul,
            "concentration": self.result_concentration.value,
            "unit": self.result_concentration.base_unit,
            "pipette": self.pipette,
        }


@dataclass(frozen=True)
class DilutionPlan:
    mode: PlanMode
    steps: Tuple[DilutionStep, ...]
    rationale: str = ""
    warnings: Tuple[str, ...] = ()
    notes: Tuple[str, ...] = ()
    unit_note: str = ""

    @property
    def final_concentration(self) -> Concentration:
        return self.steps[-1].result_concentration

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([s.to_dict() for s in self.steps])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "rows": [s.to_dict() for s in self.steps],
            "rationale": self.rationale,
            "warnings": list(self.warnings),
            "notes": list(self.notes),
            "unit_note": self.unit_note,
        }


# ------------------------------------------------------------
# Mode parameters
# ------------------------------------------------------------

@dataclass(frozen=True)
class SingleTarget:
    target: Concentration
    final_volume_ul: float


@dataclass(frozen=True)
class TwoStageTarget:
    intermediate: Concentration
    intermediate_volume_ul: float
    final: Concentration
    final_volume_ul: float


@dataclass(frozen=True)
class SeriesListTarget:
    # "0.1, 1, 10" or a sequence of raw values, all in `unit`
    values: Union[str, Sequence[Any]]
    unit: str
    volume_ul: float


@dataclass(frozen=True)
class SeriesFactorTarget:
    factor: float
    steps: int
    volume_ul: float


@dataclass(frozen=True)
class SerialDoseTarget:
    dose_mass_g: float
    final_volume_ul: float
    intermediate_volume_ul: float


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def recommend_pipette(volume_ul: float) -> str:
    if volume_ul < 0.5:
        return "P2 (tip pre-wet, 2–3×)"
    if volume_ul <= 2:
        return "P2"
    if volume_ul <= 10:
        return "P10"
    if volume_ul <= 20:
        return "P20"
    if volume_ul <= 200:
        return "P200"
    if volume_ul <= 1000:
        return "P1000"
    return "serological pipet"


def snap_factor(factor: float) -> float:
    if abs(factor - 10) < SNAP_TO_10_TOLERANCE:
        factor = 10
    if abs(factor - 100) < SNAP_TO_100_TOLERANCE:
        factor = 100
    return factor


def _divides(value: float, factor: float) -> bool:
    q = value / factor
    return q >= 1 - 1e-9 and abs(q - round(q)) < 1e-9 * max(1.0, q)


def pick_factor_path(
    overall_factor: float,
    preferred: Sequence[float] = DEFAULT_PREFERRED_FACTORS,
) -> List[float]:
    """
    Split an overall dilution factor into preferred steps, greedily.

    400 with (10, 5, 4, 3, 2) -> [10, 10, 4]; a remainder that no preferred
    factor divides is kept as a final odd step (7 -> [7]).
    """
    if overall_factor <= 1:
        return []
    remaining = float(overall_factor)
    path: List[float] = []
    for f in preferred:
        while _divides(remaining, f):
            path.append(f)
            remaining /= f
    if abs(remaining - 1) > 1e-9:
        path.append(round(remaining, 4))
    return path


def _make_step(
    index: int,
    source_label: str,
    source: Concentration,
    target: Concentration,
    volume_ul: float,
    config: PlannerConfig,
) -> DilutionStep:
    # C1 V1 = C2 V2, scaled up by the overage
    result_ul = volume_ul * config.overage_multiplier
    take_ul = (target.value * result_ul) / source.value
    add_ul = result_ul - take_ul
    if abs(add_ul) <= ZERO_VOLUME_UL:
        add_ul = 0.0
    return DilutionStep(
        index=index,
        source_label=source_label,
        take_volume_ul=take_ul,
        add_volume_ul=add_ul,
        result_volume_ul=result_ul,
        result_concentration=target,
        pipette=recommend_pipette(take_ul),
    )


def pipetting_warnings(steps: Sequence[DilutionStep], config: PlannerConfig) -> Tuple[str, ...]:
    lo, hi = config.min_pipette_ul, config.max_pipette_ul
    warnings = []
    for step in steps:
        if not lo <= step.take_volume_ul <= hi:
            warnings.append(
                f"Step {step.index}: take {step.take_volume_ul:.2f} µL outside pipetting range "
                f"({lo:g}-{hi:g} µL). Consider adding an intermediate pre-dilution or changing factor."
            )
    return tuple(warnings)


# ------------------------------------------------------------
# Planners, one per mode
# ------------------------------------------------------------

def _plan_single(source, params: SingleTarget, config, mw) -> DilutionPlan:
    target = convert(params.target, source.kind, mw)
    if target.value < 0:
        raise DomainError("Target concentration must be >= 0.")
    if target.value > source.value:
        raise DomainError("Target concentration exceeds source concentration.")
    if not params.final_volume_ul > 0:
        raise DomainError("Final volume must be > 0.")

    step = _make_step(1, "stock", source, target, params.final_volume_ul, config)
    rationale = f"Using C1V1=C2V2 with overage {config.overage_percent:g}% to account for losses."

    if step.take_volume_ul < config.min_pipette_ul and target.value > 0:
        overall = source.value / target.value
        path = pick_factor_path(overall, config.preferred_factors)
        staged = " → ".join(f"{f:g}×" for f in path)
        rationale += (
            f" The {overall:g}× dilution needs less than {config.min_pipette_ul:g} µL of stock;"
            f" consider staging it as {staged}."
        )
        logger.debug("single step below pipetting minimum, suggested path %s", path)

    return DilutionPlan(
        PlanMode.SINGLE,
        (step,),
        rationale=rationale,
        unit_note=conversion_note(params.target.kind, source.kind, mw),
    )


def _plan_two_stage(source, params: TwoStageTarget, config, mw) -> DilutionPlan:
    inter = convert(params.intermediate, source.kind, mw)
    if inter.value > source.value:
        raise DomainError("Intermediate concentration exceeds source.")
    if inter.value <= 0:
        raise DomainError("Intermediate concentration must be > 0.")
    if not params.intermediate_volume_ul > 0:
        raise DomainError("Intermediate volume must be > 0.")

    final = convert(params.final, inter.kind, mw)
    if final.value < 0:
        raise DomainError("Final concentration must be >= 0.")
    if final.value > inter.value:
        raise DomainError("Final concentration exceeds intermediate.")
    if not params.final_volume_ul > 0:
        raise DomainError("Final volume must be > 0.")

    steps = (
        _make_step(1, "stock", source, inter, params.intermediate_volume_ul, config),
        _make_step(2, "intermediate", inter, final, params.final_volume_ul, config),
    )
    return DilutionPlan(
        PlanMode.TWO_STAGE,
        steps,
        rationale="Two-step plan using explicit intermediate concentration.",
        unit_note=conversion_note(params.intermediate.kind, source.kind, mw),
    )


def _plan_series_list(source, params: SeriesListTarget, config, mw) -> DilutionPlan:
    if isinstance(params.values, str):
        raw_values = params.values.split(",")
    else:
        raw_values = list(params.values)
    raw_values = [str(v).strip() for v in raw_values]
    if not any(raw_values):
        raise DomainError("Provide at least one target concentration.")
    if not params.volume_ul > 0:
        raise DomainError("Volume per tube must be > 0.")

    steps: List[DilutionStep] = []
    notes: List[str] = []
    unit_note = ""
    for position, raw in enumerate(raw_values, start=1):
        if not raw:
            continue
        try:
            parsed = parse_concentration(raw, params.unit)
        except ParseError as exc:
            notes.append(f"Target {raw!r} skipped: {exc.message}")
            continue
        if parsed.value <= 0:
            notes.append(f"Target {raw} {params.unit} is not a positive concentration; skipped.")
            continue

        # a missing MW affects every target alike, so it still aborts
        target = convert(parsed, source.kind, mw)
        unit_note = unit_note or conversion_note(parsed.kind, source.kind, mw)
        if target.value > source.value:
            notes.append(f"Target {raw} {params.unit} > source; skipped.")
            continue
        steps.append(_make_step(position, "stock", source, target, params.volume_ul, config))

    if not steps:
        raise PlanningError("No steps generated. " + " ".join(notes))

    logger.debug("series list: %d tubes, %d skipped", len(steps), len(notes))
    return DilutionPlan(
        PlanMode.SERIES_LIST,
        tuple(steps),
        rationale=(
            f"Independent tubes computed by C1V1=C2V2 with {config.overage_percent:g}% overage."
        ),
        notes=tuple(notes),
        unit_note=unit_note,
    )


def _plan_series_factor(source, params: SeriesFactorTarget, config, mw) -> DilutionPlan:
    factor = params.factor
    # half rounds up: 2.5 tubes -> 3
    n_steps = math.floor(params.steps + 0.5)
    if not factor > 1 or n_steps < 1 or not params.volume_ul > 0:
        raise DomainError("Provide factor > 1, steps ≥ 1, volume > 0.")

    steps = []
    previous = source
    for i in range(1, n_steps + 1):
        target = previous.scaled(factor)
        label = "source" if i == 1 else f"tube {i - 1}"
        steps.append(_make_step(i, label, previous, target, params.volume_ul, config))
        previous = target

    return DilutionPlan(
        PlanMode.SERIES_FACTOR,
        tuple(steps),
        rationale=f"Cascaded {factor:g}× serial dilution over {n_steps} steps.",
    )


def _plan_serial_dose(source, params: SerialDoseTarget, config, mw) -> DilutionPlan:
    stock = convert(source, ConcentrationKind.MASS_PER_VOLUME, mw)
    min_ul = config.min_pipette_ul
    inter_ul = params.intermediate_volume_ul
    final_ul = params.final_volume_ul

    if not inter_ul > min_ul:
        raise DomainError("Intermediate Volume must be > Min. Pipetting Volume.")
    if not final_ul > 0:
        raise DomainError("Final volume must be > 0.")
    if not params.dose_mass_g > 0:
        raise DomainError("Dose mass must be > 0.")

    # g/L (== mg/mL) that puts the whole dose into the final volume
    target = Concentration(ConcentrationKind.MASS_PER_VOLUME, params.dose_mass_g / (final_ul * 1e-6))
    if stock.value < target.value:
        raise DomainError(
            "Stock Concentration cannot be less than the required Final Concentration."
        )

    direct_ul = (target.value / stock.value) * final_ul
    if direct_ul >= min_ul:
        logger.debug("direct dilution: %.4g µL from stock", direct_ul)
        return DilutionPlan(
            PlanMode.SERIAL_DOSE,
            (_make_step(1, "stock", stock, target, final_ul, config),),
            rationale="A direct dilution is the most efficient method.",
            unit_note=conversion_note(source.kind, stock.kind, mw),
        )

    # intermediate that delivers the dose when exactly min_ul is taken from it
    needed = (target.value * final_ul) / min_ul
    max_factor = inter_ul / min_ul
    current = stock
    steps: List[DilutionStep] = []

    for index in range(1, MAX_SERIAL_STEPS + 1):
        label = "stock" if index == 1 else f"intermediate #{index - 1}"
        if current.value <= needed:
            steps.append(_make_step(index, label, current, target, final_ul, config))
            logger.debug("serial dose solved in %d steps", index)
            return DilutionPlan(
                PlanMode.SERIAL_DOSE,
                tuple(steps),
                rationale=(
                    "A direct dilution is not practical. "
                    "The following serial dilution is recommended."
                ),
                unit_note=conversion_note(source.kind, stock.kind, mw),
            )

        factor = snap_factor(min(max_factor, math.ceil(current.value / needed)))
        nxt = current.scaled(factor)
        steps.append(_make_step(index, label, current, nxt, inter_ul, config))
        logger.debug("step %d: %gx intermediate -> %.4g g/L", index, factor, nxt.value)
        current = nxt

    raise PlanningError(
        f"Cannot find a practical dilution protocol within {MAX_SERIAL_STEPS} steps. "
        "Your stock may be too concentrated or your constraints too strict."
    )


_PLANNERS = {
    PlanMode.SINGLE: (SingleTarget, _plan_single),
    PlanMode.TWO_STAGE: (TwoStageTarget, _plan_two_stage),
    PlanMode.SERIES_LIST: (SeriesListTarget, _plan_series_list),
    PlanMode.SERIES_FACTOR: (SeriesFactorTarget, _plan_series_factor),
    PlanMode.SERIAL_DOSE: (SerialDoseTarget, _plan_serial_dose),
}


# ------------------------------------------------------------
# Public entry points
# ------------------------------------------------------------

@returns_failure
def plan_serial_dilution(
    source: Concentration,
    mode: Union[PlanMode, str],
    params: Any,
    config: Optional[PlannerConfig] = None,
    mw: Optional[float] = None,
) -> DilutionPlan:
    config = (config or PlannerConfig()).validate()
    try:
        mode = PlanMode(mode)
    except ValueError:
        raise PlanningError(f"Unknown mode: {mode}.") from None

    params_type, planner = _PLANNERS[mode]
    if not isinstance(params, params_type):
        raise PlanningError(f"Mode '{mode.value}' expects {params_type.__name__} parameters.")
    if not source.value > 0:
        raise DomainError("Source concentration must be > 0.")

    plan = planner(source, params, config, mw)
    warnings = pipetting_warnings(plan.steps, config)
    if warnings:
        logger.debug("%d step(s) outside pipetting range", len(warnings))
    return replace(plan, warnings=warnings)


def plan_serial_dose(
    stock: Concentration,
    dose_mass_g: float,
    final_volume_ul: float,
    intermediate_volume_ul: float,
    config: Optional[PlannerConfig] = None,
    mw: Optional[float] = None,
):
    return plan_serial_dilution(
        stock,
        PlanMode.SERIAL_DOSE,
        SerialDoseTarget(dose_mass_g, final_volume_ul, intermediate_volume_ul),
        config=config,
        mw=mw,
    )
