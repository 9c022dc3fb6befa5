"""
Backend calculator functions for the Lab Dilution Toolkit.

Each calculator comes in two flavours:
- `solve_*` takes already-parsed numbers / Concentration objects.
- `calc_*` takes raw field strings + unit strings (what a form or a CSV row
  holds), parses them in a fixed order and then solves.

Both return a dict with results (ready for logging, JSON or a DataFrame) or
a `Failure` describing the first problem found.

Used by:
- app.py (Streamlit front end)
- batch.py (CSV batch calculator, via CALC_REGISTRY)
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from concentration import Concentration, ConcentrationKind
from config import PlannerConfig
from errors import DomainError, ParseError, returns_failure
from serial_planner import (
    PlanMode,
    SeriesFactorTarget,
    SeriesListTarget,
    SingleTarget,
    TwoStageTarget,
    plan_serial_dilution,
    plan_serial_dose,
)
from units import (
    MASS_PER_VOLUME_TO_BASE,
    MASS_TO_BASE,
    MOLAR_TO_BASE,
    VOLUME_TO_BASE,
    format_number,
    parse_concentration,
    parse_molecular_weight,
    parse_number,
    to_base,
    to_microliters,
)

INVALID_RESULT = "Invalid result, check inputs."


def _require(raw: Any, name: str) -> Any:
    if raw is None or str(raw).strip() == "":
        raise ParseError(f"{name} is required.")
    return raw


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else math.inf


def _valid_result(value: float, message: str = INVALID_RESULT) -> float:
    if not math.isfinite(value) or value <= 0:
        raise DomainError(message)
    return value


def _volume_fields(volume_l: float) -> Dict[str, float]:
    return {
        "volume_l": volume_l,
        "volume_ml": volume_l * 1e3,
        "volume_ul": volume_l * 1e6,
    }


# ------------------------------------------------------------
# 1) SIMPLE DILUTION (C1V1 = C2V2)
# ------------------------------------------------------------

def _dilution(stock: Concentration, target: Concentration, final_volume_l: float) -> Dict[str, Any]:
    if stock.kind != target.kind:
        raise DomainError(
            "Stock and final concentration must be of the same type "
            "(e.g., both molar, both mass/vol, or both activity)."
        )
    if target.value < 0:
        raise DomainError("Final concentration cannot be negative.")
    if stock.value < target.value:
        raise DomainError("Stock concentration cannot be less than the final concentration.")
    if stock.value == 0:
        raise DomainError("Stock concentration cannot be zero.")
    if final_volume_l < 0:
        raise DomainError("Final volume must be a non-negative number.")

    take_l = (target.value * final_volume_l) / stock.value
    add_l = final_volume_l - take_l

    return {
        "take_volume_l": take_l,
        "add_volume_l": add_l,
        "take_ml": take_l * 1e3,
        "take_ul": take_l * 1e6,
        "add_ml": add_l * 1e3,
        "add_ul": add_l * 1e6,
        "final_volume_l": final_volume_l,
        "stock": stock.describe(),
        "target": target.describe(),
    }


@returns_failure
def solve_dilution(
    stock: Concentration,
    target: Concentration,
    final_volume_l: float,
) -> Dict[str, Any]:
    """
    Single dilution using C1 * V1 = C2 * V2.

    Parameters
    ----------
    stock : Concentration
        C1. Must be the same kind as `target`.
    target : Concentration
        C2.
    final_volume_l : float
        V2 in litres.

    Returns
    -------
    dict with take_volume_l / add_volume_l plus mL and µL renderings
    """
    return _dilution(stock, target, final_volume_l)


@returns_failure
def calc_dilution(
    stock_val: Any,
    stock_unit: str,
    final_val: Any,
    final_unit: str,
    volume_val: Any,
    volume_unit: str = "mL",
) -> Dict[str, Any]:
    stock = parse_concentration(stock_val, stock_unit)
    target = parse_concentration(final_val, final_unit)
    volume_l = to_base(volume_val, volume_unit, VOLUME_TO_BASE, "volume")
    return _dilution(stock, target, volume_l)


# ------------------------------------------------------------
# 2) MOLARITY TRIANGLE (mass = molarity * volume * MW)
# ------------------------------------------------------------

MOLARITY_SOLVE_FOR = ("mass", "volume", "molarity")


def _molarity(
    solve_for: str,
    mw: float,
    mass: Callable[[], float],
    volume: Callable[[], float],
    molarity: Callable[[], float],
) -> Dict[str, Any]:
    # inputs are thunks so only the two needed ones get validated, in order
    if solve_for == "mass":
        vol_l, molarity_m = volume(), molarity()
        mass_g = molarity_m * vol_l * mw
        return {"solve_for": solve_for, "mass_g": mass_g, "mass_mg": mass_g * 1e3}
    if solve_for == "volume":
        mass_g, molarity_m = mass(), molarity()
        vol_l = _valid_result(_ratio(mass_g, molarity_m * mw))
        return {"solve_for": solve_for, **_volume_fields(vol_l)}
    if solve_for == "molarity":
        mass_g, vol_l = mass(), volume()
        molarity_m = _valid_result(_ratio(mass_g, vol_l * mw))
        return {"solve_for": solve_for, "molarity_m": molarity_m, "molarity_mm": molarity_m * 1e3}
    raise DomainError(f"Unknown solve-for variable: {solve_for}. Use one of {MOLARITY_SOLVE_FOR}.")


def _given(value: Optional[float], name: str) -> Callable[[], float]:
    def get() -> float:
        if value is None:
            raise ParseError(f"{name} is required.")
        if value < 0:
            raise ParseError(f"Invalid {name} input. Must be a non-negative number.")
        return value

    return get


@returns_failure
def solve_molarity(
    solve_for: str,
    mw: float,
    mass_g: Optional[float] = None,
    volume_l: Optional[float] = None,
    molarity_m: Optional[float] = None,
) -> Dict[str, Any]:
    """Solve mass (g), volume (L) or molarity (M) given the other two and MW."""
    if mw is None or mw <= 0:
        raise ParseError("Molecular Weight (MW) must be a positive number.")
    return _molarity(
        solve_for,
        mw,
        _given(mass_g, "mass"),
        _given(volume_l, "volume"),
        _given(molarity_m, "molarity"),
    )


@returns_failure
def calc_molarity(
    solve_for: str,
    mw: Any,
    mass_val: Any = None,
    mass_unit: str = "mg",
    volume_val: Any = None,
    volume_unit: str = "mL",
    molarity_val: Any = None,
    molarity_unit: str = "mM",
) -> Dict[str, Any]:
    mw_value = parse_molecular_weight(mw)
    return _molarity(
        solve_for,
        mw_value,
        lambda: to_base(_require(mass_val, "mass"), mass_unit, MASS_TO_BASE, "mass"),
        lambda: to_base(_require(volume_val, "volume"), volume_unit, VOLUME_TO_BASE, "volume"),
        lambda: to_base(_require(molarity_val, "molarity"), molarity_unit, MOLAR_TO_BASE, "molarity"),
    )


# ------------------------------------------------------------
# 3) RECONSTITUTION (how much solvent for a vial of powder)
# ------------------------------------------------------------

def _reconstitution(mass_g: float, conc: Concentration, mw: Callable[[], float]) -> Dict[str, Any]:
    if conc.kind == ConcentrationKind.RATIO:
        raise DomainError("Reconstitution needs a molar, mass/volume or activity concentration.")

    if conc.kind == ConcentrationKind.MOLAR:
        moles = mass_g / mw()
        vol_l = _ratio(moles, conc.value)
    else:
        # mass/vol or activity
        vol_l = _ratio(mass_g, conc.value)

    _valid_result(vol_l, "Calculation resulted in an invalid volume. Please check inputs.")
    return _volume_fields(vol_l)


def _mw_for_molar(raw: Any) -> Callable[[], float]:
    def get() -> float:
        try:
            return parse_molecular_weight(_require(raw, "MW"))
        except ParseError:
            raise ParseError("Molecular Weight (MW) is required for molar calculations.") from None

    return get


@returns_failure
def solve_reconstitution(
    mass_g: float,
    conc: Concentration,
    mw: Optional[float] = None,
) -> Dict[str, Any]:
    if mass_g < 0:
        raise ParseError("Invalid mass input. Must be a non-negative number.")
    return _reconstitution(mass_g, conc, _mw_for_molar(mw))


@returns_failure
def calc_reconstitution(
    mass_val: Any,
    mass_unit: str,
    conc_val: Any,
    conc_unit: str,
    mw: Any = None,
) -> Dict[str, Any]:
    mass_g = to_base(mass_val, mass_unit, MASS_TO_BASE, "mass")
    conc = parse_concentration(conc_val, conc_unit)
    return _reconstitution(mass_g, conc, _mw_for_molar(mw))


# ------------------------------------------------------------
# 4) MASS / VOLUME / CONCENTRATION TRIANGLE (mass = conc * volume)
# ------------------------------------------------------------

MVC_SOLVE_FOR = ("mass", "volume", "concentration")


def _mass_volume_concentration(
    solve_for: str,
    mass: Callable[[], float],
    volume: Callable[[], float],
    conc: Callable[[], float],
) -> Dict[str, Any]:
    if solve_for == "mass":
        vol_l, conc_g_l = volume(), conc()
        mass_g = conc_g_l * vol_l
        return {"solve_for": solve_for, "mass_g": mass_g, "mass_mg": mass_g * 1e3}
    if solve_for == "volume":
        mass_g, conc_g_l = mass(), conc()
        vol_l = _valid_result(_ratio(mass_g, conc_g_l))
        return {"solve_for": solve_for, **_volume_fields(vol_l)}
    if solve_for == "concentration":
        mass_g, vol_l = mass(), volume()
        conc_g_l = _valid_result(_ratio(mass_g, vol_l))
        # g/L and mg/mL are the same number
        return {"solve_for": solve_for, "g_per_l": conc_g_l, "mg_per_ml": conc_g_l}
    raise DomainError(f"Unknown solve-for variable: {solve_for}. Use one of {MVC_SOLVE_FOR}.")


@returns_failure
def solve_mass_volume_concentration(
    solve_for: str,
    mass_g: Optional[float] = None,
    volume_l: Optional[float] = None,
    concentration_g_per_l: Optional[float] = None,
) -> Dict[str, Any]:
    return _mass_volume_concentration(
        solve_for,
        _given(mass_g, "mass"),
        _given(volume_l, "volume"),
        _given(concentration_g_per_l, "concentration"),
    )


@returns_failure
def calc_mass_volume_concentration(
    solve_for: str,
    mass_val: Any = None,
    mass_unit: str = "mg",
    volume_val: Any = None,
    volume_unit: str = "mL",
    conc_val: Any = None,
    conc_unit: str = "mg/mL",
) -> Dict[str, Any]:
    return _mass_volume_concentration(
        solve_for,
        lambda: to_base(_require(mass_val, "mass"), mass_unit, MASS_TO_BASE, "mass"),
        lambda: to_base(_require(volume_val, "volume"), volume_unit, VOLUME_TO_BASE, "volume"),
        lambda: to_base(
            _require(conc_val, "concentration"), conc_unit, MASS_PER_VOLUME_TO_BASE, "concentration"
        ),
    )


# ------------------------------------------------------------
# 5) CELL SEEDING (cells/mL, no unit layer)
# ------------------------------------------------------------

@returns_failure
def calc_cell_seeding(
    stock_cells_per_ml: Any,
    final_cells_per_ml: Any,
    final_volume_ml: Any,
) -> Dict[str, Any]:
    """
    Dilute a counted cell suspension: C1V1 = C2V2 in cells/mL and mL.
    Accepts "1.2 million", "250k", "3x10^5", ...
    """
    stock = parse_number(stock_cells_per_ml)
    final = parse_number(final_cells_per_ml)
    volume = parse_number(final_volume_ml)

    if stock <= 0 or final < 0 or volume <= 0:
        raise DomainError("Concentrations and volumes must be positive numbers.")
    if stock < final:
        raise DomainError("Stock concentration cannot be less than final concentration.")

    stock_ml = (final * volume) / stock
    media_ml = volume - stock_ml

    return {
        "stock_volume_ml": stock_ml,
        "stock_volume_ul": stock_ml * 1e3,
        "media_volume_ml": media_ml,
        "final_volume_ml": volume,
        "total_cells": final * volume,
    }


# ------------------------------------------------------------
# 6) PLATE SEEDING (master mix with 10 % well overhead)
# ------------------------------------------------------------

PLATE_PRESETS: Dict[str, Dict[str, float]] = {
    "6-well": {"surface_area_cm2": 9.6, "media_vol_ml": 2},
    "12-well": {"surface_area_cm2": 3.8, "media_vol_ml": 1},
    "24-well": {"surface_area_cm2": 1.9, "media_vol_ml": 0.5},
    "48-well": {"surface_area_cm2": 0.95, "media_vol_ml": 0.25},
    "96-well": {"surface_area_cm2": 0.32, "media_vol_ml": 0.1},
    "384-well": {"surface_area_cm2": 0.08, "media_vol_ml": 0.025},
}
CUSTOM_PLATE = "custom"
WELL_OVERHEAD = 1.1


def _positive(raw: Any, message: str) -> float:
    try:
        value = parse_number(raw)
    except ParseError:
        raise ParseError(message) from None
    if value <= 0:
        raise DomainError(message)
    return value


@returns_failure
def calc_plate_seeding(
    plate_type: str,
    wells: Any,
    seeding_density_per_cm2: Any,
    stock_cells_per_ml: Any,
    custom_surface_area_cm2: Any = None,
    custom_media_volume_ul: Any = None,
) -> Dict[str, Any]:
    """
    Seed `wells` wells at a density in cells/cm² from a counted stock.

    The master mix is made for ceil(wells * 1.1) wells to cover pipetting
    loss; the stock/media split comes from C1V1 = C2V2.
    """
    n_wells = _positive(wells, "Please enter a valid number of wells.")
    density = _positive(seeding_density_per_cm2, "Please enter a valid seeding density.")
    stock = _positive(stock_cells_per_ml, "Please enter a valid stock concentration.")

    if plate_type == CUSTOM_PLATE:
        area = _positive(custom_surface_area_cm2, "Please enter a valid custom surface area.")
        media_per_well_ml = _positive(custom_media_volume_ul, "Please enter a valid custom media volume.") / 1000.0
    elif plate_type in PLATE_PRESETS:
        area = PLATE_PRESETS[plate_type]["surface_area_cm2"]
        media_per_well_ml = PLATE_PRESETS[plate_type]["media_vol_ml"]
    else:
        raise DomainError(f"Unknown plate type: {plate_type}")

    # round first: 60 * 1.1 is 66.00000000000001 in floating point
    wells_with_overhead = math.ceil(round(n_wells * WELL_OVERHEAD, 9))

    total_cells = density * area * n_wells
    final_cells_per_ml = total_cells / (media_per_well_ml * n_wells)

    if stock < final_cells_per_ml:
        raise DomainError(
            f"Stock concentration ({format_number(stock)} cells/mL) is too low for the desired "
            f"final concentration ({format_number(final_cells_per_ml)} cells/mL)."
        )

    mix_total_ml = media_per_well_ml * wells_with_overhead
    stock_ml = (final_cells_per_ml * mix_total_ml) / stock
    media_ml = mix_total_ml - stock_ml

    return {
        "plate_type": plate_type,
        "wells": n_wells,
        "overhead_wells": wells_with_overhead - n_wells,
        "total_cells": total_cells,
        "final_cells_per_ml": final_cells_per_ml,
        "master_mix_ml": mix_total_ml,
        "stock_volume_ml": stock_ml,
        "stock_volume_ul": stock_ml * 1e3,
        "media_volume_ml": media_ml,
        "per_well_ul": media_per_well_ml * 1e3,
    }


# ------------------------------------------------------------
# 7) SERIAL DILUTION PLANS FROM RAW FIELDS
# ------------------------------------------------------------

def _optional_mw(raw: Any) -> Optional[float]:
    if raw is None or str(raw).strip() == "":
        return None
    return parse_number(raw)


@returns_failure
def calc_serial_dilution(
    mode: str,
    source_val: Any,
    source_unit: str,
    *,
    target_val: Any = None,
    target_unit: Optional[str] = None,
    final_volume: Any = None,
    intermediate_val: Any = None,
    intermediate_unit: Optional[str] = None,
    intermediate_volume: Any = None,
    values: Any = None,
    unit: Optional[str] = None,
    volume: Any = None,
    factor: Any = None,
    steps: Any = None,
    volume_unit: str = "mL",
    mw: Any = None,
    config: Optional[PlannerConfig] = None,
):
    """
    Parse the serial-dilution form and hand it to the planner.

    Fields per mode:
      single         target_val, target_unit, final_volume
      intermediate   intermediate_val, intermediate_unit, intermediate_volume,
                     target_val, target_unit, final_volume
      series_list    values ("0.1, 1, 10"), unit, volume
      series_factor  factor, steps, volume
    Volumes are in `volume_unit`.
    """
    source = parse_concentration(source_val, source_unit)
    mw_value = _optional_mw(mw)

    def vol(raw: Any, name: str) -> float:
        return to_microliters(_require(raw, name), volume_unit)

    def conc(raw: Any, unit_: Optional[str], name: str) -> Concentration:
        return parse_concentration(_require(raw, name), _require(unit_, f"{name} unit"))

    if mode == PlanMode.SINGLE.value:
        params = SingleTarget(conc(target_val, target_unit, "target"), vol(final_volume, "final volume"))
    elif mode == PlanMode.TWO_STAGE.value:
        params = TwoStageTarget(
            conc(intermediate_val, intermediate_unit, "intermediate"),
            vol(intermediate_volume, "intermediate volume"),
            conc(target_val, target_unit, "target"),
            vol(final_volume, "final volume"),
        )
    elif mode == PlanMode.SERIES_LIST.value:
        params = SeriesListTarget(
            _require(values, "target list"),
            _require(unit, "target unit"),
            vol(volume, "volume per tube"),
        )
    elif mode == PlanMode.SERIES_FACTOR.value:
        params = SeriesFactorTarget(
            parse_number(_require(factor, "factor")),
            parse_number(_require(steps, "steps")),
            vol(volume, "volume per tube"),
        )
    else:
        raise DomainError(f"Unknown mode: {mode}.")

    return plan_serial_dilution(source, mode, params, config=config, mw=mw_value)


@returns_failure
def calc_serial_dose(
    stock_val: Any,
    stock_unit: str,
    mass_val: Any,
    mass_unit: str,
    volume_val: Any,
    volume_unit: str,
    min_pipette_ul: Any,
    intermediate_volume_ul: Any,
    config: Optional[PlannerConfig] = None,
):
    """
    How to put exactly `mass` of drug into `volume`, pipetting no less than
    `min_pipette_ul`; intermediate stocks are made up to `intermediate_volume_ul`.
    """
    try:
        stock = parse_concentration(stock_val, stock_unit)
    except ParseError:
        stock = None
    if stock is None or stock.kind != ConcentrationKind.MASS_PER_VOLUME or stock.value <= 0:
        raise ParseError("Invalid Stock Concentration.")

    dose_g = to_base(mass_val, mass_unit, MASS_TO_BASE, "mass")
    final_ul = to_microliters(volume_val, volume_unit)

    try:
        min_ul = parse_number(min_pipette_ul)
    except ParseError:
        min_ul = 0.0
    if min_ul <= 0:
        raise ParseError("Min. Pipetting Volume must be > 0.")

    try:
        inter_ul = parse_number(intermediate_volume_ul)
    except ParseError:
        inter_ul = 0.0
    if inter_ul <= min_ul:
        raise ParseError("Intermediate Volume must be > Min. Pipetting Volume.")

    base = config or PlannerConfig()
    config = replace(base, min_pipette_ul=min_ul, max_pipette_ul=max(base.max_pipette_ul, min_ul))
    return plan_serial_dose(stock, dose_g, final_ul, inter_ul, config=config)


# ------------------------------------------------------------
# Registry
# ------------------------------------------------------------

CALC_REGISTRY: Dict[str, Callable[..., Any]] = {
    "dilution": calc_dilution,
    "molarity": calc_molarity,
    "reconstitution": calc_reconstitution,
    "mass_volume_concentration": calc_mass_volume_concentration,
    "cell_seeding": calc_cell_seeding,
    "plate_seeding": calc_plate_seeding,
    "serial_dilution": calc_serial_dilution,
    "serial_dose": calc_serial_dose,
}
