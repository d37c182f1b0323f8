"""
Pull the Fama-French 48 industry definitions from Ken French's data library.

The file is a zipped fixed-width text file. Each industry starts with a header
line holding the industry number, a short name and a long name, followed by
one line per SIC-code range:

     1 Agric  Agriculture
              0100-0199 Agricultural production - crops
              0200-0299 Agricultural production - livestock

The parsed table has one row per SIC range; `explode_sic_ranges` turns it
into one row per four-digit SIC code for joining onto Compustat.

https://mba.tuck.dartmouth.edu/pages/faculty/ken.french/Data_Library/det_48_ind_port.html
"""
import io
import logging
import zipfile
from pathlib import Path
from typing import Union

import pandas as pd
import requests

from settings import config
from utils import _read_cached_data, _resolve_cache, _save_cache_data

RAW_DATA_DIR = Path(config("RAW_DATA_DIR"))
FF_INDUSTRY_URL = config("FF_INDUSTRY_URL")

logger = logging.getLogger(__name__)

FF_COLSPECS = [(0, 3), (3, 10), (10, None)]
SIC_RANGE_PATTERN = r"^(?P<sic_min>\d{4})-(?P<sic_max>\d{4})\s*(?P<sic_desc>.*)$"


def parse_ff_industries(fwf) -> pd.DataFrame:
    """
    Parse the fixed-width industry definition file (path or file-like).

    Returns
    -------
    pd.DataFrame
        Columns ff_ind, ff_ind_short_desc, ff_ind_desc, sic_min, sic_max, sic_desc.
    """
    raw = pd.read_fwf(
        fwf,
        colspecs=FF_COLSPECS,
        header=None,
        names=["ff_ind", "ff_ind_short_desc", "sic_range"],
        dtype=str,
        encoding="latin-1",
    )
    raw = raw.dropna(how="all")

    is_header = raw["ff_ind"].notna()
    raw["ff_ind_desc"] = raw["sic_range"].where(is_header)
    raw[["ff_ind", "ff_ind_short_desc", "ff_ind_desc"]] = (
        raw[["ff_ind", "ff_ind_short_desc", "ff_ind_desc"]].ffill()
    )

    ranges = raw.loc[~is_header].copy()
    parts = ranges["sic_range"].str.strip().str.extract(SIC_RANGE_PATTERN)
    ranges = pd.concat([ranges.drop(columns=["sic_range"]), parts], axis=1)
    ranges = ranges.dropna(subset=["sic_min", "sic_max"])

    ranges["ff_ind"] = ranges["ff_ind"].astype("int64")
    ranges["sic_min"] = ranges["sic_min"].astype("int64")
    ranges["sic_max"] = ranges["sic_max"].astype("int64")
    ranges["sic_desc"] = ranges["sic_desc"].fillna("").str.strip()

    return ranges[
        ["ff_ind", "ff_ind_short_desc", "ff_ind_desc", "sic_min", "sic_max", "sic_desc"]
    ].reset_index(drop=True)


def pull_ff_industries(
    url: str = FF_INDUSTRY_URL,
    data_dir: Union[None, Path] = RAW_DATA_DIR,
    file_name: str = "ff_industries_48.parquet",
    timeout: int = 60,
) -> pd.DataFrame:
    """
    Download and parse the zipped industry definitions, with caching.
    HTTP errors are raised, there is no retry.
    """
    cache_paths, cached_fp = _resolve_cache("ff_industries", {}, data_dir, file_name)
    if cached_fp:
        logger.info(f"Loading cached data from {cached_fp}")
        return _read_cached_data(cached_fp)

    logger.info(f"Downloading industry definitions from {url}")
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()

    with zipfile.ZipFile(io.BytesIO(response.content)) as z:
        member = z.namelist()[0]  # Assume only one file in the zip
        with z.open(member) as f:
            ff = parse_ff_industries(f)

    cache_path = _save_cache_data(ff, data_dir, cache_paths, file_name)
    logger.info(f"Saved data to {cache_path}")
    return ff


def explode_sic_ranges(ff: pd.DataFrame) -> pd.DataFrame:
    """
    One row per SIC code: (sic, ff_ind, ff_ind_short_desc). A code listed in
    more than one range keeps the first industry that claims it.
    """
    sic_map = ff[["ff_ind", "ff_ind_short_desc", "sic_min", "sic_max"]].copy()
    sic_map["sic"] = [
        list(range(lo, hi + 1)) for lo, hi in zip(sic_map["sic_min"], sic_map["sic_max"])
    ]
    sic_map = sic_map.explode("sic")
    sic_map["sic"] = sic_map["sic"].astype("int64")
    sic_map = sic_map.drop_duplicates(subset=["sic"], keep="first")
    return sic_map[["sic", "ff_ind", "ff_ind_short_desc"]].reset_index(drop=True)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    ff = pull_ff_industries()
    print(explode_sic_ranges(ff).groupby("ff_ind").size())
