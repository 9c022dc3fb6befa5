import streamlit as st
import pandas as pd
from streamlit.errors import StreamlitAPIException

from batch import read_batch_csv, results_to_csv, run_batch
from calculators import (
    PLATE_PRESETS,
    CUSTOM_PLATE,
    calc_cell_seeding,
    calc_dilution,
    calc_mass_volume_concentration,
    calc_molarity,
    calc_plate_seeding,
    calc_reconstitution,
    calc_serial_dilution,
    calc_serial_dose,
)
from config import LAB_PRESETS, PlannerConfig, configure_logging, load_planner_config
from errors import CalculationError, is_failure
from units import (
    ACTIVITY_TO_BASE,
    MASS_PER_VOLUME_TO_BASE,
    MASS_TO_BASE,
    MOLAR_TO_BASE,
    RATIO_UNIT,
    VOLUME_TO_BASE,
    format_dose_number,
    format_number,
)

configure_logging()

CONC_UNITS = list(MOLAR_TO_BASE) + list(MASS_PER_VOLUME_TO_BASE) + list(ACTIVITY_TO_BASE) + [RATIO_UNIT]
VOLUME_UNITS = list(VOLUME_TO_BASE)
MASS_UNITS = list(MASS_TO_BASE)

# ------------------------------------------------------------
# PAGE
# ------------------------------------------------------------
st.set_page_config(page_title="Lab Dilution Toolkit", page_icon="🧪", layout="wide")

st.title("🧪 Lab Dilution Toolkit")
st.write("Dilutions, molarity, reconstitution, cell & plate seeding and serial dilution plans.")
st.caption("Numbers accept lab shorthand: 25k, 2.5 million, 3x10^5, 1e-3.")


def planner_settings() -> dict:
    """`[planner]` table from .streamlit/secrets.toml, if there is one."""
    try:
        return dict(st.secrets.get("planner", {}))
    except (FileNotFoundError, StreamlitAPIException):
        return {}


def show_failure(result) -> bool:
    if is_failure(result):
        st.error(result.message)
        return True
    return False


def show_plan(plan, file_name: str):
    for w in plan.warnings:
        st.warning(w)
    st.write(plan.rationale)

    df = plan.to_frame()
    st.dataframe(df)
    for i, step in enumerate(plan.steps, start=1):
        st.markdown(f"{i}. {step.instruction} _Pipette: {step.pipette}_")

    for note in plan.notes:
        st.info(note)
    if plan.unit_note:
        st.caption(plan.unit_note)

    st.download_button("⬇ Download CSV", data=results_to_csv(df), file_name=f"{file_name}.csv")


# ------------------------------------------------------------
# SIDEBAR: presets / pipetting range
# ------------------------------------------------------------
preset_name = st.sidebar.selectbox("Lab preset", list(LAB_PRESETS))
preset = LAB_PRESETS[preset_name]
try:
    base_config = load_planner_config(planner_settings(), base=preset.planner)
except CalculationError as e:
    st.sidebar.warning(f"Ignoring [planner] settings: {e.message}")
    base_config = preset.planner

st.sidebar.header("Planner settings")
overage = st.sidebar.text_input("Overage (%)", value=f"{base_config.overage_percent:g}")
min_ul = st.sidebar.text_input("Min. pipetting volume (µL)", value=f"{base_config.min_pipette_ul:g}")
max_ul = st.sidebar.text_input("Max. pipetting volume (µL)", value=f"{base_config.max_pipette_ul:g}")
factors = st.sidebar.text_input(
    "Preferred dilution factors",
    value=",".join(f"{f:g}" for f in base_config.preferred_factors),
    help="Used when a large dilution has to be staged.",
)
planner_config = PlannerConfig.from_inputs(overage, min_ul, max_ul, factors)

# ------------------------------------------------------------
# MAIN MODE SELECTOR
# ------------------------------------------------------------
mode = st.selectbox(
    "Select calculator mode:",
    [
        "Dilution (C1V1 = C2V2)",
        "Molarity (mass / volume / molarity)",
        "Reconstitution",
        "Mass / volume / concentration",
        "Cell seeding",
        "Plate seeding",
        "Serial dose (direct vs serial)",
        "Serial dilution planner",
        "Batch calculator (CSV)",
    ],
    key="mode",
)

# ======================================================================
# 1) DILUTION
# ======================================================================
if mode == "Dilution (C1V1 = C2V2)":
    st.subheader("Dilution")

    col1, col2, col3 = st.columns(3)
    with col1:
        stock_val = st.text_input("Stock concentration", value="10")
        stock_unit = st.selectbox("Stock unit", CONC_UNITS, index=CONC_UNITS.index("mM"))
    with col2:
        final_val = st.text_input("Final concentration", value="10")
        final_unit = st.selectbox("Final unit", CONC_UNITS, index=CONC_UNITS.index("µM"))
    with col3:
        vol_val = st.text_input("Final volume", value=f"{preset.well_volume_ul:g}")
        vol_unit = st.selectbox("Volume unit", VOLUME_UNITS, index=VOLUME_UNITS.index("µL"))

    res = calc_dilution(stock_val, stock_unit, final_val, final_unit, vol_val, vol_unit)
    if not show_failure(res):
        st.markdown("### Result")
        st.write(f"- Take **{format_number(res['take_ml'])} mL** (or {format_number(res['take_ul'])} µL) of stock")
        st.write(f"- Add **{format_number(res['add_ml'])} mL** (or {format_number(res['add_ul'])} µL) of diluent")

# ======================================================================
# 2) MOLARITY
# ======================================================================
elif mode == "Molarity (mass / volume / molarity)":
    st.subheader("Molarity: mass = molarity × volume × MW")

    solve_for = st.radio("Solve for", ["mass", "volume", "molarity"], horizontal=True)
    mw = st.text_input("Molecular weight (g/mol)", value="284.44")

    col1, col2, col3 = st.columns(3)
    with col1:
        mass_val = st.text_input("Mass", value="5", disabled=solve_for == "mass")
        mass_unit = st.selectbox("Mass unit", MASS_UNITS, index=MASS_UNITS.index("mg"))
    with col2:
        volume_val = st.text_input("Volume", value="10", disabled=solve_for == "volume")
        volume_unit = st.selectbox("Volume unit", VOLUME_UNITS, index=VOLUME_UNITS.index("mL"))
    with col3:
        molarity_val = st.text_input("Molarity", value="10", disabled=solve_for == "molarity")
        molarity_unit = st.selectbox("Molarity unit", list(MOLAR_TO_BASE), index=1)

    res = calc_molarity(
        solve_for, mw, mass_val, mass_unit, volume_val, volume_unit, molarity_val, molarity_unit
    )
    if not show_failure(res):
        if solve_for == "mass":
            st.success(f"Required mass: **{format_number(res['mass_mg'])} mg** (or {format_number(res['mass_g'])} g)")
        elif solve_for == "volume":
            st.success(f"Required volume: **{format_number(res['volume_ml'])} mL** (or {format_number(res['volume_ul'])} µL)")
        else:
            st.success(f"Resulting molarity: **{format_number(res['molarity_mm'])} mM** (or {format_number(res['molarity_m'])} M)")

# ======================================================================
# 3) RECONSTITUTION
# ======================================================================
elif mode == "Reconstitution":
    st.subheader("Reconstitute a vial")

    col1, col2 = st.columns(2)
    with col1:
        mass_val = st.text_input("Mass in vial", value="1")
        mass_unit = st.selectbox("Mass unit", MASS_UNITS, index=MASS_UNITS.index("mg"))
    with col2:
        conc_val = st.text_input("Desired concentration", value="1")
        conc_unit = st.selectbox("Concentration unit", CONC_UNITS, index=CONC_UNITS.index("mg/mL"))
    mw = st.text_input("Molecular weight (g/mol, molar units only)", value="")

    res = calc_reconstitution(mass_val, mass_unit, conc_val, conc_unit, mw)
    if not show_failure(res):
        st.success(
            f"Add **{format_number(res['volume_ml'])} mL** of solvent "
            f"(or {format_number(res['volume_ul'])} µL or {format_number(res['volume_l'])} L)."
        )

# ======================================================================
# 4) MASS / VOLUME / CONCENTRATION
# ======================================================================
elif mode == "Mass / volume / concentration":
    st.subheader("mass = concentration × volume")

    solve_for = st.radio("Solve for", ["mass", "volume", "concentration"], horizontal=True)
    col1, col2, col3 = st.columns(3)
    with col1:
        mass_val = st.text_input("Mass", value="10", disabled=solve_for == "mass")
        mass_unit = st.selectbox("Mass unit", MASS_UNITS, index=MASS_UNITS.index("mg"))
    with col2:
        volume_val = st.text_input("Volume", value="5", disabled=solve_for == "volume")
        volume_unit = st.selectbox("Volume unit", VOLUME_UNITS, index=VOLUME_UNITS.index("mL"))
    with col3:
        conc_val = st.text_input("Concentration", value="2", disabled=solve_for == "concentration")
        conc_unit = st.selectbox("Concentration unit", list(MASS_PER_VOLUME_TO_BASE), index=1)

    res = calc_mass_volume_concentration(
        solve_for, mass_val, mass_unit, volume_val, volume_unit, conc_val, conc_unit
    )
    if not show_failure(res):
        if solve_for == "mass":
            st.success(f"Mass: **{format_number(res['mass_mg'])} mg** (or {format_number(res['mass_g'])} g)")
        elif solve_for == "volume":
            st.success(f"Volume: **{format_number(res['volume_ml'])} mL** (or {format_number(res['volume_ul'])} µL)")
        else:
            st.success(f"Concentration: **{format_number(res['g_per_l'])} g/L** (or {format_number(res['mg_per_ml'])} mg/mL)")

# ======================================================================
# 5) CELL SEEDING
# ======================================================================
elif mode == "Cell seeding":
    st.subheader("Cell seeding (C1V1 = C2V2 in cells/mL)")

    stock = st.text_input("Stock (cells/mL)", value="1.2 million")
    final = st.text_input("Final (cells/mL)", value="250k")
    volume = st.text_input("Final volume (mL)", value="10")

    res = calc_cell_seeding(stock, final, volume)
    if not show_failure(res):
        st.write(f"- Take **{format_number(res['stock_volume_ml'])} mL** (or {format_number(res['stock_volume_ul'])} µL) of cell stock")
        st.write(f"- Add **{format_number(res['media_volume_ml'])} mL** of fresh media")
        st.caption(f"This yields {format_number(res['total_cells'])} cells total.")

# ======================================================================
# 6) PLATE SEEDING
# ======================================================================
elif mode == "Plate seeding":
    st.subheader("Plate seeding (master mix, +10 % wells)")

    plate_type = st.selectbox("Plate", list(PLATE_PRESETS) + [CUSTOM_PLATE], index=4)
    col1, col2, col3 = st.columns(3)
    with col1:
        wells = st.text_input("Wells to seed", value="60")
    with col2:
        density = st.text_input("Seeding density (cells/cm²)", value="30k")
    with col3:
        stock = st.text_input("Stock (cells/mL)", value="1 million")

    area, media_ul = None, None
    if plate_type == CUSTOM_PLATE:
        area = st.text_input("Surface area per well (cm²)", value="0.32")
        media_ul = st.text_input("Media per well (µL)", value="100")

    res = calc_plate_seeding(plate_type, wells, density, stock, area, media_ul)
    if not show_failure(res):
        st.markdown("#### Step 1: Prepare master mix")
        st.caption(f"Includes a 10% overhead for {res['overhead_wells']} extra well(s).")
        st.write(f"- Take **{format_number(res['stock_volume_ul'])} µL** (or {format_number(res['stock_volume_ml'])} mL) of cell stock")
        st.write(f"- Add **{format_number(res['media_volume_ml'])} mL** of fresh media")
        st.write(f"- Total **{format_number(res['master_mix_ml'])} mL** of cell suspension")
        st.markdown("#### Step 2: Plate the cells")
        st.write(f"- Add **{format_number(res['per_well_ul'])} µL** to each of the **{format_number(res['wells'])}** wells")
        st.caption(
            f"Total cells required: {format_number(res['total_cells'])} · "
            f"final concentration: {format_number(res['final_cells_per_ml'])} cells/mL"
        )

# ======================================================================
# 7) SERIAL DOSE
# ======================================================================
elif mode == "Serial dose (direct vs serial)":
    st.subheader("Dose a drug mass into a final volume")

    col1, col2, col3 = st.columns(3)
    with col1:
        stock_val = st.text_input("Stock concentration", value="10")
        stock_unit = st.selectbox("Stock unit", list(MASS_PER_VOLUME_TO_BASE), index=1)
    with col2:
        mass_val = st.text_input("Dose mass", value="50")
        mass_unit = st.selectbox("Mass unit", MASS_UNITS, index=MASS_UNITS.index("ng"))
    with col3:
        vol_val = st.text_input("Final volume", value="200")
        vol_unit = st.selectbox("Volume unit", ["µL", "mL"])

    col4, col5 = st.columns(2)
    with col4:
        min_pip = st.text_input("Min. pipetting volume for this dose (µL)", value=f"{planner_config.min_pipette_ul:g}")
    with col5:
        inter_vol = st.text_input("Intermediate tube volume (µL)", value="1000")

    res = calc_serial_dose(
        stock_val, stock_unit, mass_val, mass_unit, vol_val, vol_unit, min_pip, inter_vol,
        config=planner_config,
    )
    if not show_failure(res):
        show_plan(res, "serial_dose")

# ======================================================================
# 8) SERIAL DILUTION PLANNER
# ======================================================================
elif mode == "Serial dilution planner":
    st.subheader("Serial dilution planner")

    plan_modes = {
        "Single target": "single",
        "Intermediate + final": "intermediate",
        "List of targets": "series_list",
        "Fixed factor series": "series_factor",
    }
    plan_mode = plan_modes[st.radio("Plan", list(plan_modes), horizontal=True)]

    col1, col2, col3 = st.columns(3)
    with col1:
        source_val = st.text_input("Source concentration", value="10")
    with col2:
        source_unit = st.selectbox("Source unit", CONC_UNITS, index=CONC_UNITS.index("mM"))
    with col3:
        mw = st.text_input("MW (g/mol, for mass ↔ molar)", value="")
    volume_unit = st.selectbox("Volume unit", ["mL", "µL"])

    fields = {}
    if plan_mode in ("single", "intermediate"):
        if plan_mode == "intermediate":
            c1, c2, c3 = st.columns(3)
            fields["intermediate_val"] = c1.text_input("Intermediate concentration", value="100")
            fields["intermediate_unit"] = c2.selectbox("Intermediate unit", CONC_UNITS, index=CONC_UNITS.index("µM"))
            fields["intermediate_volume"] = c3.text_input("Intermediate volume", value="1")
        c1, c2, c3 = st.columns(3)
        fields["target_val"] = c1.text_input("Target concentration", value="1")
        fields["target_unit"] = c2.selectbox("Target unit", CONC_UNITS, index=CONC_UNITS.index("µM"))
        fields["final_volume"] = c3.text_input("Final volume", value="1")
    elif plan_mode == "series_list":
        c1, c2, c3 = st.columns(3)
        fields["values"] = c1.text_input("Targets (comma separated)", value="0.01, 0.1, 1, 10")
        fields["unit"] = c2.selectbox("Target unit", CONC_UNITS, index=CONC_UNITS.index("µM"))
        fields["volume"] = c3.text_input("Volume per tube", value="1")
    else:
        c1, c2, c3 = st.columns(3)
        fields["factor"] = c1.text_input("Dilution factor", value="10")
        fields["steps"] = c2.text_input("Number of tubes", value="5")
        fields["volume"] = c3.text_input("Volume per tube", value="1")

    res = calc_serial_dilution(
        plan_mode, source_val, source_unit, volume_unit=volume_unit, mw=mw,
        config=planner_config, **fields,
    )
    if not show_failure(res):
        show_plan(res, f"serial_{plan_mode}")

# ======================================================================
# 9) BATCH
# ======================================================================
elif mode == "Batch calculator (CSV)":
    st.subheader("Batch calculator (CSV)")
    st.code(
        """mode,stock_val,stock_unit,final_val,final_unit,volume_val,volume_unit
dilution,10,mM,10,µM,300,µL

mode,stock_cells_per_ml,final_cells_per_ml,final_volume_ml
cell_seeding,1.2 million,250k,10
""",
        language="csv",
    )

    up = st.file_uploader("Upload CSV", type=["csv"], key="batch_csv")
    if up is not None:
        df_in = read_batch_csv(up)
        try:
            df_out = run_batch(df_in)
        except ValueError as e:
            st.error(str(e))
            df_out = pd.DataFrame()
        if not df_out.empty:
            st.dataframe(df_out)
            st.download_button(
                "⬇ Download results",
                results_to_csv(df_out),
                "batch_results.csv",
                "text/csv",
            )

st.markdown("---")
st.caption(
    f"Pipetting range {format_dose_number(planner_config.min_pipette_ul)}–"
    f"{format_dose_number(planner_config.max_pipette_ul)} µL · overage {planner_config.overage_percent:g}%"
)
