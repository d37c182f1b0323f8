"""
This module replicates the discretionary-accrual regressions of Fang, Huang
and Karpoff (2016), "Short Selling and Earnings Management: A Controlled
Experiment", Journal of Finance 71(3).

The paper uses the SEC's Regulation SHO pilot program, which lifted short-sale
price tests for a random third of the Russell 3000 from May 2005 to August
2007, as a natural experiment. Pilot firms should manage earnings less while
the pilot is in force.

Outputs (in OUTPUT_DIR):
 - table_fhk_year_fe.(tex|txt):       8 accrual measures, year fixed effects
 - table_fhk_firm_year_fe.(tex|txt):  8 accrual measures, firm and year fixed effects
 - table_fhk_descriptives.tex:        pre-period means, pilot vs. control firms
 - fhk_by_year_coefficients.png:      pilot x year coefficients
"""
import logging
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from statsmodels.stats.weightstats import ttest_ind

from settings import config
from utils import _read_cached_data, _save_figure, _write_cache_data
from pull_compustat import (
    merge_company_sic,
    pull_Compustat,
    pull_Compustat_company,
    pull_CRSP_Comp_link_table,
)
from pull_ff_industries import explode_sic_ranges, pull_ff_industries
from pull_sho import load_sho_pilot, load_sho_roster
from transform_sho import attach_pilot_to_roster, resolve_pilot_flags
from transform_compustat import (
    CONTROL_VARS,
    add_ff_industry,
    calc_accrual_inputs,
    calc_controls,
    dedupe_firm_years,
    exclude_industries,
    fill_controls,
)
from calc_accruals import calc_discretionary_accruals
from calc_perf_match import calc_match_roa, calc_perf_matched_accruals
from regressions import (
    DURING_YEARS,
    FE_CONFIGS,
    PM_DA_COLS,
    add_sho_indicators,
    build_regression_panel,
    fit_by_year_models,
    fit_panel_models,
    winsorize_by_year,
)

# ==============================================================================================
# GLOBAL CONFIGURATION
# ==============================================================================================

DATA_DIR = Path(config("DATA_DIR"))
OUTPUT_DIR = Path(config("OUTPUT_DIR"))
PANEL_FILE = "fhk_panel.parquet"

logger = logging.getLogger(__name__)

DV_LABELS = {
    "da_jones_pm": "Jones",
    "da_jones_int_pm": "Jones (int.)",
    "da_mjones_pm": "Mod. Jones",
    "da_mjones_int_pm": "Mod. Jones (int.)",
    "da_mjones_bm_pm": "Mod. Jones + B/M",
    "da_mjones_bm_int_pm": "Mod. Jones + B/M (int.)",
    "da_mjones_mb_pm": "Mod. Jones + M/B",
    "da_mjones_mb_int_pm": "Mod. Jones + M/B (int.)",
}

VAR_LABELS = {
    "pilot": "PILOT",
    "pilot_during": "PILOT x DURING",
    "pilot_post": "PILOT x POST",
    "size": "Size",
    "mtob": "Market-to-book",
    "leverage": "Leverage",
    "roa": "ROA",
}

FE_TITLES = {
    "year_fe": "Year fixed effects; standard errors clustered by firm and year",
    "firm_year_fe": "Firm and year fixed effects; standard errors clustered by firm",
}


# ==============================================================================================
# Sample construction
# ==============================================================================================

def build_fhk_panel(
    comp: pd.DataFrame,
    company: pd.DataFrame,
    ff: pd.DataFrame,
    pilot_raw: pd.DataFrame,
    roster: pd.DataFrame,
    industry_filter: str = "both",
) -> pd.DataFrame:
    """
    From the raw inputs to the winsorized regression panel, one row per
    (gvkey, fyear) of the pilot-flagged roster.
    """
    comp = dedupe_firm_years(merge_company_sic(comp, company))

    controls = fill_controls(calc_controls(exclude_industries(comp, mode=industry_filter)))

    accrual_inputs = add_ff_industry(calc_accrual_inputs(comp), explode_sic_ranges(ff))
    accruals = calc_discretionary_accruals(accrual_inputs)
    pm_accruals = calc_perf_matched_accruals(accruals, calc_match_roa(comp))

    treated = attach_pilot_to_roster(roster, resolve_pilot_flags(pilot_raw))

    panel = build_regression_panel(treated, controls, pm_accruals)
    panel = winsorize_by_year(panel, CONTROL_VARS + PM_DA_COLS)
    return add_sho_indicators(panel)


# ==============================================================================================
# Tables
# ==============================================================================================

def _stars(pvalue: float) -> str:
    if pvalue < 0.01:
        return "***"
    if pvalue < 0.05:
        return "**"
    if pvalue < 0.10:
        return "*"
    return ""


def build_regression_table(
    results: Dict[Tuple[str, str], object],
    fe_config: str,
    dvs: Sequence[str] = PM_DA_COLS,
    variables: Sequence[str] = tuple(VAR_LABELS),
) -> pd.DataFrame:
    """
    Coefficients with stars over standard errors in parentheses, one column
    per dependent variable, then N and within R-squared.
    """
    columns = {}
    for dv in dvs:
        res = results[(dv, fe_config)]
        cells = {}
        for var in variables:
            if var not in res.params.index:
                cells[(VAR_LABELS.get(var, var), "coef")] = ""
                cells[(VAR_LABELS.get(var, var), "se")] = ""
                continue
            cells[(VAR_LABELS.get(var, var), "coef")] = (
                f"{res.params[var]:.4f}{_stars(res.pvalues[var])}"
            )
            cells[(VAR_LABELS.get(var, var), "se")] = f"({res.std_errors[var]:.4f})"
        cells[("N", "")] = f"{int(res.nobs):,}"
        cells[("Within R2", "")] = f"{res.rsquared_within:.3f}"
        columns[DV_LABELS.get(dv, dv)] = pd.Series(cells)

    table = pd.DataFrame(columns)
    table.index = [label if stat != "se" else "" for label, stat in table.index]
    return table


def build_descriptive_table(
    panel: pd.DataFrame,
    variables: Sequence[str] = tuple(CONTROL_VARS) + tuple(PM_DA_COLS),
) -> pd.DataFrame:
    """
    Means of pilot and control firm-years before the pilot started, the
    difference and its Welch t-statistic.
    """
    pre = panel[panel["fyear"] < DURING_YEARS[0]]
    is_pilot = pre["pilot"].astype(bool)
    rows = []
    for var in variables:
        x_pilot = pre.loc[is_pilot, var].dropna()
        x_control = pre.loc[~is_pilot, var].dropna()
        if len(x_pilot) > 1 and len(x_control) > 1:
            tstat, _, _ = ttest_ind(x_pilot, x_control, usevar="unequal")
        else:
            tstat = np.nan
        rows.append({
            "Variable": VAR_LABELS.get(var, DV_LABELS.get(var, var)),
            "Pilot": x_pilot.mean(),
            "Control": x_control.mean(),
            "Difference": x_pilot.mean() - x_control.mean(),
            "t-stat": tstat,
            "N pilot": len(x_pilot),
            "N control": len(x_control),
        })
    return pd.DataFrame(rows).set_index("Variable")


# ==============================================================================================
# Figure
# ==============================================================================================

def plot_by_year_coefficients(coefs: pd.DataFrame, ncols: int = 4) -> plt.Figure:
    """
    One panel per accrual measure: pilot x year coefficient with its 95%
    confidence band, the pilot years shaded.
    """
    dvs = list(dict.fromkeys(coefs["dv"]))
    nrows = max(1, int(np.ceil(len(dvs) / ncols)))
    fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 3 * nrows), sharex=True, squeeze=False)

    for ax, dv in zip(axes.flat, dvs):
        df = coefs[coefs["dv"] == dv].sort_values("fyear")
        ax.axvspan(DURING_YEARS[0] - 0.5, DURING_YEARS[1] + 0.5, color="grey", alpha=0.15)
        ax.axhline(0, color="black", linewidth=0.8)
        ax.fill_between(df["fyear"], df["ci_lower"], df["ci_upper"], alpha=0.25)
        ax.plot(df["fyear"], df["coef"], marker="o")
        ax.set_title(DV_LABELS.get(dv, dv), fontsize=10)
    for ax in list(axes.flat)[len(dvs):]:
        ax.set_visible(False)

    fig.supxlabel("Fiscal year")
    fig.supylabel("PILOT x year coefficient")
    fig.tight_layout()
    return fig


# ==============================================================================================
# Writing outputs
# ==============================================================================================

def _write_table(table: pd.DataFrame, stem: str, caption: str, output_dir: Path) -> List[Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    tex_path = output_dir / f"{stem}.tex"
    txt_path = output_dir / f"{stem}.txt"
    tex_path.write_text(table.to_latex(caption=caption, float_format="%.4f"))
    txt_path.write_text(caption + "\n\n" + table.to_string() + "\n")
    logger.info(f"Wrote {tex_path}")
    return [tex_path, txt_path]


def write_outputs(panel: pd.DataFrame, output_dir: Path = OUTPUT_DIR) -> List[Path]:
    """Fit every model on the panel and write the tables and the figure."""
    output_dir = Path(output_dir)
    results = fit_panel_models(panel)
    written = []
    for fe_config, stem in zip(FE_CONFIGS, ["table_fhk_year_fe", "table_fhk_firm_year_fe"]):
        table = build_regression_table(results, fe_config)
        written += _write_table(table, stem, FE_TITLES[fe_config], output_dir)

    desc = build_descriptive_table(panel)
    written += _write_table(desc, "table_fhk_descriptives", "Pre-pilot means", output_dir)

    coefs = fit_by_year_models(panel)
    fig = plot_by_year_coefficients(coefs)
    written.append(_save_figure(fig, "fhk_by_year_coefficients", output_dir=output_dir))
    plt.close(fig)
    return written


def build_panel_from_cache(industry_filter: str = "both", data_dir: Path = DATA_DIR) -> pd.DataFrame:
    """Pull (or load cached) inputs, build the panel and cache it to data_dir."""
    comp = pull_Compustat(file_name="Compustat_funda.parquet")
    company = pull_Compustat_company(file_name="Compustat_company.parquet")
    ccm = pull_CRSP_Comp_link_table(file_name="CRSP_Comp_Link_Table.parquet")
    ff = pull_ff_industries()
    pilot_raw = load_sho_pilot(ccm=ccm)
    roster = load_sho_roster()

    panel = build_fhk_panel(comp, company, ff, pilot_raw, roster, industry_filter=industry_filter)
    _write_cache_data(panel, Path(data_dir) / PANEL_FILE)
    return panel


def load_panel(data_dir: Path = DATA_DIR) -> pd.DataFrame:
    fp = Path(data_dir) / PANEL_FILE
    if fp.exists():
        logger.info(f"Loading cached panel from {fp}")
        return _read_cached_data(fp)
    return build_panel_from_cache(data_dir=data_dir)


def run_all(industry_filter: str = "both") -> pd.DataFrame:
    """Rebuild the panel from the (cached) inputs and write every output."""
    panel = build_panel_from_cache(industry_filter=industry_filter)
    write_outputs(panel)
    return panel


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    write_outputs(load_panel())
