"""
Batch calculator (CSV in, CSV out).

Each row names a calculator in the `mode` column (a CALC_REGISTRY key) and
gives its keyword arguments in the other columns. Blank cells are left out,
so one CSV can mix calculators:

    mode,stock_val,stock_unit,final_val,final_unit,volume_val,volume_unit,solve_for,mw,mass_val,mass_unit,molarity_val,molarity_unit
    dilution,10,mM,10,µM,300,µL,,,,,,
    molarity,,,,,10,mL,mass,284.44,,,10,mM

A bad row gets an `error` cell; it never stops the other rows.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Union

import pandas as pd

from calculators import CALC_REGISTRY
from errors import Failure
from serial_planner import DilutionPlan

logger = logging.getLogger(__name__)


def _row_kwargs(row: pd.Series) -> Dict[str, Any]:
    return {k: v for k, v in row.items() if k != "mode" and not pd.isna(v)}


def flatten_result(result: Any) -> Dict[str, Any]:
    """One flat dict per calculation, whatever the calculator returned."""
    if isinstance(result, Failure):
        return {"error": result.message, "error_kind": result.kind.value}
    if isinstance(result, DilutionPlan):
        last = result.steps[-1]
        return {
            "n_steps": len(result.steps),
            "final_concentration": last.concentration_label,
            "protocol": " | ".join(s.instruction for s in result.steps),
            "warnings": "; ".join(result.warnings),
            "notes": "; ".join(result.notes),
        }
    return dict(result)


def run_batch(
    frame: pd.DataFrame,
    registry: Mapping[str, Callable[..., Any]] = CALC_REGISTRY,
) -> pd.DataFrame:
    if "mode" not in frame.columns:
        raise ValueError("Batch CSV needs a 'mode' column.")

    out_rows = []
    n_errors = 0
    for _, row in frame.iterrows():
        mode = row["mode"]
        fn = registry.get(mode)
        if fn is None:
            out = {"error": f"Unsupported mode: {mode}"}
        else:
            try:
                out = flatten_result(fn(**_row_kwargs(row)))
            except TypeError as e:
                out = {"error": f"Wrong columns for {mode}: {e}"}
        n_errors += "error" in out
        out_rows.append({**row.to_dict(), **out})

    logger.info("batch: %d rows, %d with errors", len(out_rows), n_errors)
    return pd.DataFrame(out_rows)


def read_batch_csv(source: Union[str, Any]) -> pd.DataFrame:
    # keep cells as text so "25k" or "3x10^5" reach the parser untouched
    return pd.read_csv(source, dtype=str, skipinitialspace=True)


def run_batch_csv(source: Union[str, Any]) -> pd.DataFrame:
    return run_batch(read_batch_csv(source))


def results_to_csv(frame: pd.DataFrame) -> bytes:
    return frame.to_csv(index=False).encode("utf-8")
