"""
Shared helpers: the file cache behind every pull, figure saving, and the
identifier and ratio helpers used across the transformations.

Cache layout
------------
A pull is cached under RAW_DATA_DIR either by an explicit file name or by a
name derived from the pull's filters, e.g.

    pull_Compustat(first_fyear=1999, last_fyear=2012)
        -> RAW_DATA_DIR / "comp_funda__1999_2012.parquet"

Parquet is written by default; csv and single-member zip files are read too.
"""
import datetime
import logging
import re
import zipfile
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple, Union

import matplotlib.pyplot as plt
import pandas as pd

from settings import config

RAW_DATA_DIR = Path(config("RAW_DATA_DIR"))
OUTPUT_DIR = Path(config("OUTPUT_DIR"))

CACHE_FILE_TYPES = ["parquet", "csv", "zip"]

logger = logging.getLogger(__name__)


# =============================================================================
# Figures
# =============================================================================

def _save_figure(
        fig: plt.Figure,
        plot_name_prefix: str,
        output_dir: Union[str, Path] = OUTPUT_DIR,
        dpi: int = 300,
) -> Path:
    """Save fig as <output_dir>/<plot_name_prefix>.png and return the path."""
    plot_path = Path(output_dir) / f"{plot_name_prefix}.png"
    plot_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(plot_path, dpi=dpi, bbox_inches="tight")
    logger.info(f"Plot saved to {plot_path}")
    return plot_path


# =============================================================================
# Cache names
# =============================================================================

def _flatten_dict_to_str(d: Mapping[str, Any]) -> str:
    """
    {'fyear': {'gte': 1999, 'lte': 2012}, 'gvkey': ('001004',)}
    -> "fyear.gte=1999,fyear.lte=2012,gvkey=('001004',)"
    """
    items = []
    for key, value in d.items():
        if isinstance(value, dict):
            items += [f"{key}.{op}={v}" for op, v in value.items()]
        else:
            items.append(f"{key}={value}")
    return ",".join(items)


def _cache_filename(
    code: str,
    filters_str: str,
    raw_data_dir: Union[None, Path] = RAW_DATA_DIR,
    file_ext_list: List[str] = CACHE_FILE_TYPES,
) -> List[Path]:
    """
    Candidate cache paths of a pull, one per extension. Only the filter values
    go into the name. A pull without a fiscal-year window gets today's date
    appended, so an unbounded table is fetched again the next day.
    """
    if "fyear" not in filters_str:
        filters_str += "_" + datetime.datetime.today().strftime("%Y%m%d")

    values = re.sub(r"[^,]*=", "", filters_str)
    values = re.sub(r"[-'\s()]", "", values).replace("/", "_").replace(",", "_").strip("_")
    stem = re.sub(r"[./]", "_", code)
    if values:
        stem = f"{stem}__{values}"

    base = Path.cwd() if raw_data_dir is None else Path(raw_data_dir)
    return [base / f"{stem}.{ext}" for ext in file_ext_list]


def _file_cached(filepaths: List[Path]) -> Optional[Path]:
    """First existing path, or None."""
    return next((Path(fp) for fp in filepaths if Path(fp).exists()), None)


def _has_cache_suffix(file_name: str) -> bool:
    return Path(file_name).suffix.lstrip(".") in CACHE_FILE_TYPES


def _resolve_cache(
        code: str,
        filters: Mapping[str, Any],
        data_dir: Union[str, Path],
        file_name: str = None,
) -> Tuple[Optional[List[Path]], Optional[Path]]:
    """
    (candidate paths, existing cache file or None) of a pull.

    With file_name, the cache is that file (any extension if file_name has
    none); otherwise the name is derived from code and filters.
    """
    if file_name is None:
        cache_paths = _cache_filename(code, _flatten_dict_to_str(filters), data_dir)
    elif _has_cache_suffix(file_name):
        return None, _file_cached([Path(data_dir) / file_name])
    else:
        cache_paths = [Path(data_dir) / f"{file_name}.{ext}" for ext in CACHE_FILE_TYPES]
    return cache_paths, _file_cached(cache_paths)


# =============================================================================
# Cache reading and writing
# =============================================================================

def _read_cached_data(filepath: Path) -> pd.DataFrame:
    """Read a parquet, csv or single-member zip cache file."""
    filepath = Path(filepath)
    fmt = filepath.suffix.lstrip(".")
    if fmt == "parquet":
        return pd.read_parquet(filepath)
    if fmt == "csv":
        return pd.read_csv(filepath)
    if fmt == "zip":
        with zipfile.ZipFile(filepath) as z:
            member = z.namelist()[0]
            with z.open(member) as f:
                return pd.read_parquet(f) if member.endswith(".parquet") else pd.read_csv(f)
    raise ValueError(f"Unsupported file format: {fmt}")


def _write_cache_data(df: pd.DataFrame, filepath: Path) -> None:
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fmt = filepath.suffix.lstrip(".")
    if fmt == "parquet":
        df.to_parquet(filepath, index=False)
    elif fmt == "csv":
        df.to_csv(filepath, index=False)
    else:
        raise ValueError(f"Unsupported file format: {fmt}")
    logger.info(f"Data cached to {filepath}")


def _save_cache_data(
        df: pd.DataFrame,
        data_dir: Union[str, Path],
        cache_paths: Optional[List[Path]],
        file_name: str = None,
        file_type: str = None,
) -> Path:
    """
    Write df to its cache file and return the path.

    An explicit file_name wins over cache_paths. The format comes from
    file_type, then from file_name's extension, then defaults to parquet.
    """
    file_type = file_type or "parquet"
    if file_name is not None and _has_cache_suffix(file_name):
        cache_path = Path(data_dir) / file_name
    elif file_name is not None:
        cache_path = Path(data_dir) / f"{file_name}.{file_type}"
    else:
        cache_path = next(p for p in cache_paths if p.suffix == f".{file_type}")
    _write_cache_data(df, cache_path)
    return cache_path


# =============================================================================
# SQL helpers
# =============================================================================

def _ids_to_tuple(ids: Union[None, str, List[str], tuple]) -> Optional[tuple]:
    if ids is None:
        return None
    return (ids,) if isinstance(ids, str) else tuple(ids)


def _format_tuple_for_sql_list(ids: tuple) -> str:
    """('a', 'b') -> "('a', 'b')", also for a single element."""
    return "(" + ", ".join(f"'{i}'" for i in ids) + ")"


# =============================================================================
# Identifiers and ratios
# =============================================================================

def normalize_gvkey(gvkey: pd.Series) -> pd.Series:
    """
    Compustat gvkeys are six-character strings with leading zeros. Stata
    extracts often store them as numbers (1004.0) or unpadded strings
    ("1004"); both become "001004". Missing values stay missing.
    """
    s = gvkey.astype("string").str.strip()
    s = s.str.replace(r"\.0+$", "", regex=True)
    s = s.replace("", pd.NA)
    return s.str.zfill(6)


def safe_divide(num: pd.Series, den: pd.Series) -> pd.Series:
    """num / den with a zero (or missing) denominator giving NaN, never inf."""
    return num / den.where(den != 0)
