"""
Performance-matched discretionary accruals (Kothari, Leone and Wasley 2005).

Each firm-year is matched to the firm in the same Fama-French industry and
fiscal year whose prior-year ROA is closest. Its accruals are then measured
relative to that peer: da_<spec>_pm = da_<spec> - da_<spec>(peer).

Matching rules:
  - a firm is never its own peer;
  - the peer minimises |roa - roa_peer| within the (ff_ind, fyear) cohort;
  - ties go to the lowest peer gvkey, so the match does not depend on row order;
  - a firm can be the peer of any number of targets.
"""
import logging
from typing import List, Sequence

import pandas as pd
import polars as pl

from calc_accruals import DA_COLS
from utils import safe_divide

logger = logging.getLogger(__name__)


def calc_match_roa(comp: pd.DataFrame) -> pd.DataFrame:
    """
    ROA used for matching, ib / at (missing when at <= 0), re-keyed to the
    following fiscal year. The row for fyear t therefore carries ROA of t-1.
    """
    roa = comp[["gvkey", "fyear"]].copy()
    roa["roa_match"] = safe_divide(comp["ib"], comp["at"].where(comp["at"] > 0))
    roa["fyear"] = roa["fyear"] + 1
    return roa.dropna(subset=["roa_match"]).drop_duplicates(subset=["gvkey", "fyear"])


def match_peers(accruals: pd.DataFrame, roa: pd.DataFrame) -> pd.DataFrame:
    """
    Closest-ROA peer of every firm-year in `accruals`.

    Returns
    -------
    pd.DataFrame
        gvkey, fyear, ff_ind, gvkey_peer, roa_dist. Firm-years without ROA, or
        alone in their cohort, have no row.
    """
    if accruals.empty or roa.empty:
        logger.info("[perf match] nothing to match")
        return pd.DataFrame({
            "gvkey": pd.Series(dtype=object),
            "fyear": pd.Series(dtype="int64"),
            "ff_ind": pd.Series(dtype="int64"),
            "gvkey_peer": pd.Series(dtype=object),
            "roa_dist": pd.Series(dtype="float64"),
        })
    base = (
        pl.from_pandas(accruals[["gvkey", "fyear", "ff_ind"]].astype({"gvkey": str}))
        .join(
            pl.from_pandas(roa[["gvkey", "fyear", "roa_match"]].astype({"gvkey": str})),
            on=["gvkey", "fyear"],
            how="inner",
        )
    )
    peers = base.select(
        pl.col("gvkey").alias("gvkey_peer"),
        pl.col("fyear"),
        pl.col("ff_ind"),
        pl.col("roa_match").alias("roa_match_peer"),
    )

    matches = (
        base.lazy()
        .join(peers.lazy(), on=["ff_ind", "fyear"], how="inner")
        .filter(pl.col("gvkey") != pl.col("gvkey_peer"))
        .with_columns(
            (pl.col("roa_match") - pl.col("roa_match_peer")).abs().alias("roa_dist")
        )
        .sort(["gvkey", "fyear", "roa_dist", "gvkey_peer"])
        .group_by(["gvkey", "fyear"], maintain_order=True)
        .first()
        .select(["gvkey", "fyear", "ff_ind", "gvkey_peer", "roa_dist"])
        .collect()
    )
    logger.info(f"[perf match] {matches.height:,} of {accruals.shape[0]:,} firm-years matched")
    return matches.to_pandas()


def calc_perf_matched_accruals(
    accruals: pd.DataFrame,
    roa: pd.DataFrame,
    da_cols: Sequence[str] = DA_COLS,
) -> pd.DataFrame:
    """
    Subtract the matched peer's accruals, specification by specification.

    Returns
    -------
    pd.DataFrame
        gvkey, fyear, ff_ind, gvkey_peer and `<da_col>_pm` for each da_col.
        Only matched firm-years are returned.
    """
    da_cols = list(da_cols)
    matches = match_peers(accruals, roa)

    own = accruals[["gvkey", "fyear"] + da_cols].astype({"gvkey": str})
    peer = own.rename(columns={"gvkey": "gvkey_peer", **{c: f"{c}_peer" for c in da_cols}})

    out = matches.merge(own, on=["gvkey", "fyear"], how="left")
    out = out.merge(peer, on=["gvkey_peer", "fyear"], how="left")
    pm_cols: List[str] = []
    for col in da_cols:
        out[f"{col}_pm"] = out[col] - out[f"{col}_peer"]
        pm_cols.append(f"{col}_pm")
    return out[["gvkey", "fyear", "ff_ind", "gvkey_peer"] + pm_cols]
