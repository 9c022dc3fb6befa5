"""
Tests for serial_planner.py.

Checked behaviour:
1. Every step satisfies take + add == result volume (overage included)
2. Step n draws from step n-1
3. Pipetting warnings appear iff a take volume is outside the range
4. The serial-dose search stops within MAX_SERIAL_STEPS or fails
"""

import pytest

from concentration import Concentration, ConcentrationKind
from config import PlannerConfig
from errors import ErrorKind, is_failure
from serial_planner import (
    MAX_SERIAL_STEPS,
    DilutionPlan,
    PlanMode,
    SerialDoseTarget,
    SeriesFactorTarget,
    SeriesListTarget,
    SingleTarget,
    TwoStageTarget,
    pick_factor_path,
    plan_serial_dilution,
    plan_serial_dose,
    recommend_pipette,
    snap_factor,
)

MOLAR = ConcentrationKind.MOLAR
MASS = ConcentrationKind.MASS_PER_VOLUME


def molar(value):
    return Concentration(MOLAR, value)


def assert_volumes_balance(plan):
    for step in plan.steps:
        assert step.take_volume_ul + step.add_volume_ul == pytest.approx(step.result_volume_ul)


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    @pytest.mark.parametrize(
        "overall, expected",
        [(400, [10, 10, 4]), (1000, [10, 10, 10]), (6, [3, 2]), (7, [7]), (1, [])],
    )
    def test_pick_factor_path(self, overall, expected):
        assert pick_factor_path(overall) == pytest.approx(expected)

    def test_pick_factor_path_respects_preference(self):
        assert pick_factor_path(100, (5, 2)) == pytest.approx([5, 5, 2, 2])

    @pytest.mark.parametrize(
        "factor, expected",
        [(9.8, 10), (10.4, 10), (97, 100), (104, 100), (7, 7), (10.6, 10.6), (94, 94)],
    )
    def test_snap_factor(self, factor, expected):
        assert snap_factor(factor) == expected

    @pytest.mark.parametrize(
        "volume, pipette",
        [(0.3, "P2 (tip pre-wet, 2–3×)"), (2, "P2"), (8, "P10"), (15, "P20"), (150, "P200"),
         (900, "P1000"), (5000, "serological pipet")],
    )
    def test_recommend_pipette(self, volume, pipette):
        assert recommend_pipette(volume) == pipette


# =============================================================================
# Single / two-stage
# =============================================================================


class TestSingle:
    def test_single_step(self):
        plan = plan_serial_dilution(molar(0.01), "single", SingleTarget(molar(1e-4), 1000))
        assert isinstance(plan, DilutionPlan)
        assert plan.mode == PlanMode.SINGLE
        (step,) = plan.steps
        assert step.take_volume_ul == pytest.approx(10)
        assert step.add_volume_ul == pytest.approx(990)
        assert step.source_label == "stock"
        assert plan.warnings == ()

    def test_overage(self):
        config = PlannerConfig(overage_percent=10)
        plan = plan_serial_dilution(molar(0.01), "single", SingleTarget(molar(1e-4), 1000), config=config)
        step = plan.steps[0]
        assert step.result_volume_ul == pytest.approx(1100)
        assert step.take_volume_ul == pytest.approx(11)
        assert "overage 10%" in plan.rationale

    def test_tiny_take_warns_and_suggests_staging(self):
        plan = plan_serial_dilution(molar(0.01), "single", SingleTarget(molar(1e-5), 1000))
        assert plan.steps[0].take_volume_ul == pytest.approx(1)
        assert len(plan.warnings) == 1
        assert plan.warnings[0].startswith("Step 1: take 1.00 µL outside pipetting range (2-1000 µL).")
        assert "consider staging it as 10× → 10× → 10×" in plan.rationale

    def test_cross_kind_with_mw(self):
        source = Concentration(MASS, 2.8444)  # g/L
        plan = plan_serial_dilution(source, "single", SingleTarget(molar(1e-3), 1000), mw=284.44)
        assert plan.steps[0].take_volume_ul == pytest.approx(100)
        assert plan.final_concentration.kind == MASS
        assert plan.unit_note == "g/L = M × MW; MW = 284.44 g/mol used."

    def test_cross_kind_without_mw(self):
        res = plan_serial_dilution(Concentration(MASS, 1), "single", SingleTarget(molar(1e-3), 1000))
        assert is_failure(res)
        assert res.kind == ErrorKind.PLANNING

    def test_target_above_source(self):
        res = plan_serial_dilution(molar(1e-3), "single", SingleTarget(molar(1e-2), 1000))
        assert res.kind == ErrorKind.DOMAIN
        assert res.message == "Target concentration exceeds source concentration."

    def test_negative_target(self):
        res = plan_serial_dilution(molar(0.01), "single", SingleTarget(molar(-1e-3), 1000))
        assert res.kind == ErrorKind.DOMAIN
        assert res.message == "Target concentration must be >= 0."

    def test_zero_volume(self):
        res = plan_serial_dilution(molar(1e-2), "single", SingleTarget(molar(1e-3), 0))
        assert res.message == "Final volume must be > 0."


class TestTwoStage:
    def test_two_steps_chain(self):
        params = TwoStageTarget(molar(1e-4), 1000, molar(1e-6), 1000)
        plan = plan_serial_dilution(molar(1e-2), "intermediate", params)
        first, second = plan.steps
        assert first.source_label == "stock"
        assert second.source_label == "intermediate"
        assert first.take_volume_ul == pytest.approx(10)
        assert second.take_volume_ul == pytest.approx(10)
        assert_volumes_balance(plan)

    def test_negative_final(self):
        params = TwoStageTarget(molar(1e-3), 1000, molar(-1e-4), 1000)
        res = plan_serial_dilution(molar(1e-2), "intermediate", params)
        assert res.kind == ErrorKind.DOMAIN
        assert res.message == "Final concentration must be >= 0."

    def test_final_above_intermediate(self):
        params = TwoStageTarget(molar(1e-4), 1000, molar(1e-3), 1000)
        res = plan_serial_dilution(molar(1e-2), "intermediate", params)
        assert res.message == "Final concentration exceeds intermediate."

    def test_intermediate_above_source(self):
        params = TwoStageTarget(molar(1e-1), 1000, molar(1e-3), 1000)
        res = plan_serial_dilution(molar(1e-2), "intermediate", params)
        assert res.message == "Intermediate concentration exceeds source."


# =============================================================================
# Series
# =============================================================================


class TestSeriesFactor:
    def test_ten_fold_cascade(self):
        plan = plan_serial_dilution(molar(0.01), "series_factor", SeriesFactorTarget(10, 3, 1000))
        values = [s.result_concentration.value for s in plan.steps]
        assert values == pytest.approx([1e-3, 1e-4, 1e-5])
        assert [s.take_volume_ul for s in plan.steps] == pytest.approx([100, 100, 100])
        assert [s.source_label for s in plan.steps] == ["source", "tube 1", "tube 2"]
        assert_volumes_balance(plan)
        assert plan.warnings == ()

    def test_large_factor_warns_every_step(self):
        plan = plan_serial_dilution(molar(0.01), "series_factor", SeriesFactorTarget(1000, 2, 1000))
        assert len(plan.warnings) == 2

    @pytest.mark.parametrize("steps, n_tubes", [(2.5, 3), (0.5, 1), (2.4, 2)])
    def test_fractional_steps_round_half_up(self, steps, n_tubes):
        plan = plan_serial_dilution(molar(0.01), "series_factor", SeriesFactorTarget(10, steps, 1000))
        assert len(plan.steps) == n_tubes

    @pytest.mark.parametrize("factor, steps, volume", [(1, 3, 1000), (10, 0, 1000), (10, 3, 0)])
    def test_invalid_parameters(self, factor, steps, volume):
        res = plan_serial_dilution(molar(0.01), "series_factor", SeriesFactorTarget(factor, steps, volume))
        assert res.message == "Provide factor > 1, steps ≥ 1, volume > 0."


class TestSeriesList:
    def test_skips_infeasible_targets(self):
        params = SeriesListTarget("0.1, 1, abc, 20000, -1", "µM", 1000)
        plan = plan_serial_dilution(molar(0.01), "series_list", params)
        assert [s.index for s in plan.steps] == [1, 2]
        assert all(s.source_label == "stock" for s in plan.steps)
        assert len(plan.notes) == 3
        assert any("20000 µM > source; skipped." in note for note in plan.notes)

    def test_sequence_input(self):
        params = SeriesListTarget([10, 100], "µM", 500)
        plan = plan_serial_dilution(molar(0.01), "series_list", params)
        assert [s.take_volume_ul for s in plan.steps] == pytest.approx([0.5, 5])
        assert len(plan.warnings) == 1

    def test_all_infeasible_is_failure(self):
        res = plan_serial_dilution(molar(0.01), "series_list", SeriesListTarget("20000", "µM", 1000))
        assert res.kind == ErrorKind.PLANNING
        assert res.message.startswith("No steps generated.")

    def test_empty_list(self):
        res = plan_serial_dilution(molar(0.01), "series_list", SeriesListTarget(" , ", "µM", 1000))
        assert res.message == "Provide at least one target concentration."


# =============================================================================
# Serial dose
# =============================================================================


class TestSerialDose:
    STOCK = Concentration(MASS, 10.0)  # 10 mg/mL

    def test_direct_when_pipettable(self):
        plan = plan_serial_dose(self.STOCK, 1e-4, 1000, 1000)  # 100 µg into 1 mL
        assert len(plan.steps) == 1
        assert plan.steps[0].take_volume_ul == pytest.approx(10)

    def test_iterative_search(self):
        plan = plan_serial_dose(self.STOCK, 50e-9, 200, 1000)
        assert 2 <= len(plan.steps) <= MAX_SERIAL_STEPS
        assert plan.final_concentration.value == pytest.approx(2.5e-4)
        assert plan.steps[-1].result_volume_ul == pytest.approx(200)
        assert all(s.take_volume_ul >= 2 * (1 - 1e-9) for s in plan.steps)
        for prev, nxt in zip(plan.steps, plan.steps[1:]):
            assert nxt.result_concentration.value < prev.result_concentration.value

    def test_gives_up_after_max_steps(self):
        # 3 µL tubes with a 2 µL minimum allow only 1.5x per step
        res = plan_serial_dose(self.STOCK, 1e-9, 200, 3)
        assert res.kind == ErrorKind.PLANNING
        assert "within 10 steps" in res.message

    def test_intermediate_must_exceed_minimum(self):
        res = plan_serial_dose(self.STOCK, 1e-9, 200, 2)
        assert res.message == "Intermediate Volume must be > Min. Pipetting Volume."

    def test_zero_dose(self):
        res = plan_serial_dose(self.STOCK, 0, 200, 1000)
        assert res.message == "Dose mass must be > 0."

    def test_molar_stock_needs_mw(self):
        res = plan_serial_dose(molar(0.01), 1e-6, 200, 1000)
        assert res.kind == ErrorKind.PLANNING
        plan = plan_serial_dose(molar(0.01), 1e-6, 200, 1000, mw=100)
        assert isinstance(plan, DilutionPlan)


# =============================================================================
# Dispatcher / output
# =============================================================================


class TestDispatch:
    def test_unknown_mode(self):
        res = plan_serial_dilution(molar(0.01), "zigzag", SingleTarget(molar(1e-3), 1000))
        assert res.kind == ErrorKind.PLANNING

    def test_wrong_params_type(self):
        res = plan_serial_dilution(molar(0.01), "single", SeriesFactorTarget(10, 3, 1000))
        assert res.kind == ErrorKind.PLANNING

    def test_zero_source(self):
        res = plan_serial_dilution(molar(0), "series_factor", SeriesFactorTarget(10, 3, 1000))
        assert res.message == "Source concentration must be > 0."

    def test_invalid_config(self):
        res = plan_serial_dilution(
            molar(0.01), "single", SingleTarget(molar(1e-3), 1000), config=PlannerConfig(min_pipette_ul=0)
        )
        assert res.kind == ErrorKind.DOMAIN

    def test_frame_and_dict(self):
        plan = plan_serial_dilution(molar(0.01), PlanMode.SERIES_FACTOR, SeriesFactorTarget(10, 2, 1000))
        frame = plan.to_frame()
        assert list(frame.columns) == [
            "step", "source", "take (µL)", "add (µL)", "result (µL)", "concentration", "unit", "pipette",
        ]
        assert len(frame) == 2
        data = plan.to_dict()
        assert data["mode"] == "series_factor"
        assert len(data["rows"]) == 2

    def test_serial_dose_mode_through_dispatcher(self):
        plan = plan_serial_dilution(
            Concentration(MASS, 10.0), "serial_dose", SerialDoseTarget(1e-4, 1000, 1000)
        )
        assert plan.mode == PlanMode.SERIAL_DOSE
