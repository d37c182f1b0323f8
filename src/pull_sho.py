"""
Load the two hand-collected Stata extracts behind the Reg SHO experiment.

 - sho_pilot.dta: the SEC's Regulation SHO pilot list, one or more rows per
   firm with a 0/1 `pilot` flag. Keyed by gvkey, or by permno when it was
   built from CRSP (mapped to gvkey through the link table).
 - sho_r3000.dta: the Russell 3000 roster the pilot stocks were drawn from,
   one row per (gvkey, fyear).

Both files live in MANUAL_DATA_DIR since they cannot be pulled from WRDS.
"""
import logging
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from settings import config
from pull_compustat import map_permno_to_gvkey
from utils import normalize_gvkey

MANUAL_DATA_DIR = Path(config("MANUAL_DATA_DIR"))
SHO_PILOT_FILE = config("SHO_PILOT_FILE")
SHO_ROSTER_FILE = config("SHO_ROSTER_FILE")

logger = logging.getLogger(__name__)


def _read_stata(path: Path) -> pd.DataFrame:
    df = pd.read_stata(path, convert_categoricals=False)
    df.columns = [c.lower() for c in df.columns]
    return df


def _require_columns(df: pd.DataFrame, cols, name: str) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{name} is missing required columns: {missing}")


def load_sho_pilot(
    path: Union[str, Path] = MANUAL_DATA_DIR / SHO_PILOT_FILE,
    ccm: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Read the pilot list as raw (gvkey, pilot) rows. Duplicated and even
    conflicting rows are kept; transform_sho resolves them.
    """
    df = _read_stata(Path(path))
    if "gvkey" not in df.columns and "permno" in df.columns:
        if ccm is None:
            raise ValueError("Pilot list is keyed by permno; a link table (ccm) is required.")
        df["permno"] = pd.to_numeric(df["permno"], errors="coerce")
        df = map_permno_to_gvkey(df, ccm)
    _require_columns(df, ["gvkey", "pilot"], "Pilot list")

    df["gvkey"] = normalize_gvkey(df["gvkey"])
    df["pilot"] = pd.to_numeric(df["pilot"], errors="coerce")
    df = df.dropna(subset=["gvkey", "pilot"])
    df["pilot"] = df["pilot"].astype(bool)
    logger.info(f"[sho_pilot] {len(df):,} rows | {df['gvkey'].nunique():,} firms")
    return df[["gvkey", "pilot"]].reset_index(drop=True)


def load_sho_roster(path: Union[str, Path] = MANUAL_DATA_DIR / SHO_ROSTER_FILE) -> pd.DataFrame:
    """Read the firm-year roster as distinct (gvkey, fyear) rows."""
    df = _read_stata(Path(path))
    _require_columns(df, ["gvkey", "fyear"], "Roster")

    df["gvkey"] = normalize_gvkey(df["gvkey"])
    df["fyear"] = pd.to_numeric(df["fyear"], errors="coerce")
    df = df.dropna(subset=["gvkey", "fyear"])
    df["fyear"] = df["fyear"].astype("int64")
    df = df[["gvkey", "fyear"]].drop_duplicates().reset_index(drop=True)
    logger.info(f"[sho_r3000] {len(df):,} firm-years | {df['gvkey'].nunique():,} firms")
    return df
