"""
Smoke test for the Streamlit front end.
"""

from pathlib import Path

import pytest
from streamlit.testing.v1 import AppTest

APP = str(Path(__file__).resolve().parents[1] / "app.py")

MODES = [
    "Dilution (C1V1 = C2V2)",
    "Molarity (mass / volume / molarity)",
    "Reconstitution",
    "Mass / volume / concentration",
    "Cell seeding",
    "Plate seeding",
    "Serial dose (direct vs serial)",
    "Serial dilution planner",
    "Batch calculator (CSV)",
]


def test_app_renders_default_mode():
    at = AppTest.from_file(APP, default_timeout=30).run()
    assert not at.exception
    assert len(at.error) == 0


def test_bad_planner_secrets_fall_back_to_preset():
    at = AppTest.from_file(APP, default_timeout=30)
    at.secrets["planner"] = {"min_pipette_ul": 0}
    at.run()
    assert not at.exception
    assert any("Ignoring [planner] settings" in w.value for w in at.warning)
    assert at.sidebar.text_input[1].value == "2"


@pytest.mark.parametrize("mode", MODES)
def test_every_mode_renders_with_defaults(mode):
    at = AppTest.from_file(APP, default_timeout=30).run()
    at.selectbox(key="mode").set_value(mode).run()
    assert not at.exception
    assert len(at.error) == 0
