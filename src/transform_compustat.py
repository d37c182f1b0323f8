"""
Transformations for Compustat Data
===================================

This module turns the annual Compustat pull into the firm-year variables of
the Reg SHO analysis.

Functions:
----------
- dedupe_firm_years(comp):
    Keeps one record per (gvkey, fyear), the one with the latest datadate.

- add_lags(comp, cols):
    Adds the prior-year value of each column and a flag telling whether the
    prior record really is fiscal year t-1.

- exclude_industries(comp, mode="both"):
    Drops financial (SIC 6000-6999) and utility (SIC 4900-4999) firm-years.

- calc_controls(comp) / fill_controls(controls):
    Size, market-to-book, leverage (in percent) and ROA, filled forward
    within firm and then with fiscal-year means.

- calc_accrual_inputs(comp) / add_ff_industry(df, sic_map):
    The lagged-asset-scaled variables of the Jones-type accrual models, and
    the Fama-French industry of each firm-year.

Usage:
------
The functions expect the output of pull_compustat.pull_Compustat, merged with
the company header SIC by pull_compustat.merge_company_sic.
"""
import logging
from typing import List

import numpy as np
import pandas as pd

from utils import safe_divide

logger = logging.getLogger(__name__)

FINANCIAL_SIC = (6000, 6999)
UTILITY_SIC = (4900, 4999)

CONTROL_VARS = ["size", "mtob", "leverage", "roa"]


def dedupe_firm_years(comp: pd.DataFrame) -> pd.DataFrame:
    """
    A firm that changes its fiscal year-end can report two records with the
    same fyear. Keep the one with the latest datadate.
    """
    comp = comp.sort_values(["gvkey", "fyear", "datadate"])
    comp = comp.drop_duplicates(subset=["gvkey", "fyear"], keep="last")
    return comp.reset_index(drop=True)


def add_market_cap(comp: pd.DataFrame) -> pd.DataFrame:
    """Market value of equity, csho * prcc_f; missing unless strictly positive."""
    mkt_cap = comp["csho"] * comp["prcc_f"]
    comp["mkt_cap"] = mkt_cap.where(mkt_cap > 0)
    return comp


def add_lags(comp: pd.DataFrame, cols: List[str]) -> pd.DataFrame:
    """
    Add `lag_<col>` for each column, taken from the firm's immediately
    preceding record, and `lag_ok`, True only when that record is fiscal
    year t-1. Lagged values from a gap year are set to missing.
    """
    comp = comp.sort_values(["gvkey", "fyear"]).copy()
    grp = comp.groupby("gvkey")
    lag_fyear = grp["fyear"].shift(1)
    comp["lag_ok"] = (comp["fyear"] - lag_fyear) == 1
    for col in cols:
        comp[f"lag_{col}"] = grp[col].shift(1).where(comp["lag_ok"])
    return comp


def exclude_industries(comp: pd.DataFrame, mode: str = "both", sic_col: str = "sic") -> pd.DataFrame:
    """
    Remove financial and utility firm-years.

    mode="both" drops a firm-year whose SIC falls in either range.
    mode="legacy_or" keeps a firm-year when it is outside the financial range
    OR outside the utility range; no SIC lies in both, so nothing is dropped.
    It is there to reproduce results built with that predicate.
    """
    sic = comp[sic_col]
    in_fin = sic.between(*FINANCIAL_SIC)
    in_util = sic.between(*UTILITY_SIC)
    if mode == "both":
        keep = ~in_fin & ~in_util
    elif mode == "legacy_or":
        keep = ~in_fin | ~in_util
    else:
        raise ValueError(f"Unknown industry exclusion mode: {mode}")
    logger.info(f"[industry filter, {mode}] dropping {int((~keep).sum()):,} of {len(comp):,} firm-years")
    return comp.loc[keep].reset_index(drop=True)


def calc_controls(comp: pd.DataFrame) -> pd.DataFrame:
    """
    Control variables from the prior fiscal year's balance sheet:
        size     = log(mkt_cap_{t-1})
        mtob     = mkt_cap_{t-1} / ceq_{t-1}
        leverage = 100 * debt_{t-1} / (debt_{t-1} + ceq_{t-1}), debt = dltt + dlc
        roa      = ib_t / at_{t-1}
    Rows whose prior record is not fiscal year t-1 get missing values.
    """
    comp = add_market_cap(comp.copy())
    comp["debt"] = comp[["dltt", "dlc"]].sum(axis=1, min_count=1)
    comp = add_lags(comp, ["mkt_cap", "ceq", "debt", "at"])

    comp["size"] = np.log(comp["lag_mkt_cap"])
    comp["mtob"] = safe_divide(comp["lag_mkt_cap"], comp["lag_ceq"])
    comp["leverage"] = 100 * safe_divide(comp["lag_debt"], comp["lag_debt"] + comp["lag_ceq"])
    comp["roa"] = safe_divide(comp["ib"], comp["lag_at"])

    return comp[["gvkey", "fyear"] + CONTROL_VARS].reset_index(drop=True)


def fill_controls(controls: pd.DataFrame, cols: List[str] = CONTROL_VARS) -> pd.DataFrame:
    """
    Fill missing controls in two passes:
      1. carry the firm's most recent earlier value forward (never backward);
      2. use the fiscal-year mean of the values after step 1.
    A value stays missing only if its whole fiscal year is missing.
    """
    df = controls.sort_values(["gvkey", "fyear"]).copy()
    df[cols] = df.groupby("gvkey")[cols].ffill()
    year_means = df.groupby("fyear")[cols].transform("mean")
    df[cols] = df[cols].fillna(year_means)
    return df.reset_index(drop=True)


def calc_accrual_inputs(comp: pd.DataFrame) -> pd.DataFrame:
    """
    Variables of the accrual models, all scaled by lagged total assets:
        acc_at        = (ib - oancf) / at_{t-1}
        one_at        = 1 / at_{t-1}
        d_sale_at     = (sale - sale_{t-1}) / at_{t-1}
        d_sale_rec_at = (sale - sale_{t-1} - (rect - rect_{t-1})) / at_{t-1}
        ppe_at        = ppegt / at_{t-1}
    plus the valuation ratios bm = ceq / mkt_cap and mb = mkt_cap / ceq.

    Only firm-years with a fiscal-year t-1 record and at_{t-1} > 0 are kept.
    """
    comp = add_market_cap(comp.copy())
    comp = add_lags(comp, ["at", "sale", "rect"])
    comp = comp[comp["lag_ok"] & (comp["lag_at"] > 0)].copy()

    d_sale = comp["sale"] - comp["lag_sale"]
    d_rec = comp["rect"] - comp["lag_rect"]
    comp["acc_at"] = (comp["ib"] - comp["oancf"]) / comp["lag_at"]
    comp["one_at"] = 1 / comp["lag_at"]
    comp["d_sale_at"] = d_sale / comp["lag_at"]
    comp["d_sale_rec_at"] = (d_sale - d_rec) / comp["lag_at"]
    comp["ppe_at"] = comp["ppegt"] / comp["lag_at"]
    comp["bm"] = safe_divide(comp["ceq"], comp["mkt_cap"])
    comp["mb"] = safe_divide(comp["mkt_cap"], comp["ceq"])

    cols = ["gvkey", "fyear", "sic", "acc_at", "one_at", "d_sale_at",
            "d_sale_rec_at", "ppe_at", "bm", "mb"]
    return comp[cols].reset_index(drop=True)


def add_ff_industry(df: pd.DataFrame, sic_map: pd.DataFrame) -> pd.DataFrame:
    """
    Attach the Fama-French industry (ff_ind) through the exploded SIC map.
    Firm-years with no SIC, or a SIC outside every industry, are dropped.
    """
    df = df.dropna(subset=["sic"]).copy()
    df["sic"] = df["sic"].astype("int64")
    out = df.merge(sic_map[["sic", "ff_ind"]], on="sic", how="inner")
    logger.info(f"[ff industries] {len(out):,} of {len(df):,} firm-years classified")
    return out
