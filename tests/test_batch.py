"""
Tests for batch.py: CSV rows dispatched through CALC_REGISTRY.
"""

import io

import pandas as pd
import pytest

from batch import flatten_result, read_batch_csv, results_to_csv, run_batch, run_batch_csv
from calculators import calc_serial_dilution
from errors import ErrorKind, Failure

CSV = """mode,stock_val,stock_unit,final_val,final_unit,volume_val,volume_unit,stock_cells_per_ml,final_cells_per_ml,final_volume_ml
dilution,10,mM,10,µM,300,µL,,,
cell_seeding,,,,,,,1.2 million,250k,10
dilution,1,µM,10,µM,1,mL,,,
titration,,,,,,,,,
dilution,10,mM,10,µM,,,,,
"""


@pytest.fixture
def results():
    return run_batch_csv(io.StringIO(CSV))


class TestRunBatch:
    def test_one_output_row_per_input_row(self, results):
        assert len(results) == 5
        assert list(results["mode"]) == ["dilution", "cell_seeding", "dilution", "titration", "dilution"]

    def test_good_rows(self, results):
        assert results.loc[0, "take_ul"] == pytest.approx(0.3)
        assert results.loc[1, "total_cells"] == pytest.approx(2.5e6)
        assert pd.isna(results.loc[0, "error"])

    def test_domain_failure_row(self, results):
        assert results.loc[2, "error"] == "Stock concentration cannot be less than the final concentration."
        assert results.loc[2, "error_kind"] == ErrorKind.DOMAIN.value

    def test_unknown_mode_row(self, results):
        assert results.loc[3, "error"] == "Unsupported mode: titration"

    def test_missing_columns_row(self, results):
        assert results.loc[4, "error"].startswith("Wrong columns for dilution")

    def test_shorthand_survives_csv(self):
        frame = read_batch_csv(io.StringIO(CSV))
        assert frame.loc[1, "stock_cells_per_ml"] == "1.2 million"

    def test_requires_mode_column(self):
        with pytest.raises(ValueError, match="mode"):
            run_batch(pd.DataFrame({"stock_val": ["1"]}))

    def test_results_to_csv(self, results):
        data = results_to_csv(results)
        assert isinstance(data, bytes)
        assert data.decode("utf-8").startswith("mode,")


class TestFlattenResult:
    def test_failure(self):
        out = flatten_result(Failure(ErrorKind.PARSE, "bad"))
        assert out == {"error": "bad", "error_kind": "parse"}

    def test_plan(self):
        plan = calc_serial_dilution(
            "series_factor", "10", "mM", factor="10", steps="2", volume="1", volume_unit="mL"
        )
        out = flatten_result(plan)
        assert out["n_steps"] == 2
        assert out["protocol"].count("|") == 1
        assert out["warnings"] == ""
