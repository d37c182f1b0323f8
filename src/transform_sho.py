"""
Resolve the Reg SHO pilot flag of each firm and attach it to the roster.

The raw pilot list can hold several rows per firm, and a few firms appear
both as pilot and as non-pilot stocks (typically firms with more than one
share class). Those firms are dropped rather than guessed at.
"""
import logging

import pandas as pd

from utils import normalize_gvkey

logger = logging.getLogger(__name__)

FIRST_ROSTER_FYEAR = 2000


def resolve_pilot_flags(pilot_raw: pd.DataFrame) -> pd.DataFrame:
    """
    One pilot flag per firm.

    Firms with a single distinct `pilot` value keep it; firms with two are
    excluded.

    Returns
    -------
    pd.DataFrame
        Columns gvkey (6-character string) and pilot (bool), unique on gvkey.
    """
    pilot_raw = pilot_raw.assign(gvkey=normalize_gvkey(pilot_raw["gvkey"]))
    n_values = pilot_raw.groupby("gvkey")["pilot"].nunique()
    single = n_values[n_values == 1].index
    n_conflicting = int((n_values > 1).sum())
    if n_conflicting:
        logger.info(f"[pilot] dropping {n_conflicting:,} firms with conflicting pilot flags")

    flags = pilot_raw.merge(pd.DataFrame({"gvkey": single}), on="gvkey", how="inner")
    flags["pilot"] = flags["pilot"].astype(bool)
    flags = flags[["gvkey", "pilot"]].drop_duplicates().reset_index(drop=True)
    return flags


def attach_pilot_to_roster(
    roster: pd.DataFrame,
    flags: pd.DataFrame,
    first_fyear: int = FIRST_ROSTER_FYEAR,
) -> pd.DataFrame:
    """
    Restrict the roster to fyear >= first_fyear and attach the resolved pilot
    flag. Roster firms without a flag (including the conflicting ones) drop out.
    """
    roster = roster.loc[roster["fyear"] >= first_fyear, ["gvkey", "fyear"]]
    roster = roster.assign(gvkey=normalize_gvkey(roster["gvkey"])).drop_duplicates()
    treated = roster.merge(flags, on="gvkey", how="inner")
    logger.info(
        f"[pilot] {len(treated):,} firm-years | "
        f"{treated.loc[treated['pilot'], 'gvkey'].nunique():,} pilot firms | "
        f"{treated.loc[~treated['pilot'], 'gvkey'].nunique():,} control firms"
    )
    return treated.sort_values(["gvkey", "fyear"]).reset_index(drop=True)
