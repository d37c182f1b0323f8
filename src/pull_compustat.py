"""
This module pulls and saves the Compustat data used to build the Reg SHO
pilot panel: annual fundamentals, the company header (for SIC codes) and the
CRSP-Compustat link table. The functions cache to parquet to avoid repeated
downloads, especially during development.

Every pull reads through a `TableSource`. `WRDSSource` talks to the WRDS
PostgreSQL server using the credentials in a `DatabaseConfig`; `FrameSource`
serves in-memory tables and is what the tests use.

For information about Compustat variables, see:
https://wrds-www.wharton.upenn.edu/documents/1583/Compustat_Data_Guide.pdf

For the CRSP-Compustat linking table, see:
https://wrds-www.wharton.upenn.edu/pages/wrds-research/database-linking-matrix/linking-crsp-with-compustat/
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union

import pandas as pd
import wrds

from settings import config
from utils import (
    _format_tuple_for_sql_list,
    _ids_to_tuple,
    _read_cached_data,
    _resolve_cache,
    _save_cache_data,
    normalize_gvkey,
)

# ==============================================================================================
# Global Configuration
# ==============================================================================================

RAW_DATA_DIR = Path(config("RAW_DATA_DIR"))
FIRST_FYEAR = config("FIRST_FYEAR")
LAST_FYEAR = config("LAST_FYEAR")

logger = logging.getLogger(__name__)


# ==============================================================================================
# Table sources
# ==============================================================================================

class Between(NamedTuple):
    """Inclusive range predicate, `lo <= column <= hi`."""
    lo: Any
    hi: Any


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection parameters for the WRDS PostgreSQL server."""
    username: str
    password: str = ""
    hostname: str = "wrds-pgdata.wharton.upenn.edu"
    port: int = 9737
    dbname: str = "wrds"

    @classmethod
    def from_settings(cls) -> "DatabaseConfig":
        return cls(
            username=config("WRDS_USERNAME"),
            password=config("WRDS_PASSWORD"),
            hostname=config("WRDS_HOSTNAME"),
            port=config("WRDS_PORT"),
            dbname=config("WRDS_DBNAME"),
        )

    def connection_kwargs(self) -> Dict[str, Any]:
        kwargs = {
            "wrds_username": self.username,
            "wrds_hostname": self.hostname,
            "wrds_port": self.port,
            "wrds_dbname": self.dbname,
        }
        # An empty password makes wrds fall back to ~/.pgpass
        if self.password:
            kwargs["wrds_password"] = self.password
        return kwargs


class TableSource(ABC):
    """
    Anything that can read a named table given the columns to keep and a
    filter predicate.

    The predicate maps column names to conditions:
      - a scalar means equality,
      - a `Between(lo, hi)` means an inclusive range,
      - a list, tuple or set means membership.
    """

    @abstractmethod
    def read_table(
        self,
        table: str,
        columns: List[str],
        where: Optional[Mapping[str, Any]] = None,
        date_cols: Optional[List[str]] = None,
    ) -> pd.DataFrame:
        ...


def _format_sql_value(value: Any) -> str:
    if isinstance(value, str):
        return f"'{value}'"
    return str(value)


def build_where_clause(where: Optional[Mapping[str, Any]]) -> str:
    """Render a filter predicate as a SQL WHERE clause ("" if empty)."""
    if not where:
        return ""
    conditions = []
    for col, cond in where.items():
        if isinstance(cond, Between):
            conditions.append(
                f"{col} BETWEEN {_format_sql_value(cond.lo)} AND {_format_sql_value(cond.hi)}"
            )
        elif isinstance(cond, (list, tuple, set)):
            conditions.append(f"{col} IN {_format_tuple_for_sql_list(tuple(sorted(cond)))}")
        else:
            conditions.append(f"{col} = {_format_sql_value(cond)}")
    return "WHERE " + " AND ".join(conditions)


class WRDSSource(TableSource):
    """Read tables from WRDS, opening one connection per query."""

    def __init__(self, db_config: DatabaseConfig):
        self.db_config = db_config

    def read_table(self, table, columns, where=None, date_cols=None):
        sql_query = f"""
            SELECT
                {", ".join(columns)}
            FROM
                {table}
            {build_where_clause(where)}
            """
        logger.info(f"Querying {table} on WRDS")
        db = wrds.Connection(**self.db_config.connection_kwargs())
        try:
            df = db.raw_sql(sql_query, date_cols=date_cols)
        finally:
            db.close()
        return df


class FrameSource(TableSource):
    """Serve tables from a dict of DataFrames, applying the same predicates."""

    def __init__(self, tables: Mapping[str, pd.DataFrame]):
        self.tables = dict(tables)

    def read_table(self, table, columns, where=None, date_cols=None):
        if table not in self.tables:
            raise KeyError(f"Table {table} not available in this source.")
        df = self.tables[table]
        mask = pd.Series(True, index=df.index)
        for col, cond in (where or {}).items():
            if isinstance(cond, Between):
                mask &= df[col].between(cond.lo, cond.hi)
            elif isinstance(cond, (list, tuple, set)):
                mask &= df[col].isin(list(cond))
            else:
                mask &= df[col] == cond
        out = df.loc[mask.fillna(False).astype(bool), columns].reset_index(drop=True)
        for col in date_cols or []:
            out[col] = pd.to_datetime(out[col])
        return out


def _default_source(source: Optional[TableSource]) -> TableSource:
    if source is None:
        return WRDSSource(DatabaseConfig.from_settings())
    return source


# ==============================================================================================
# Compustat Data
# ==============================================================================================

description_compustat = {
    "gvkey": "Global Company Key",
    "datadate": "Data Date",
    "fyear": "Fiscal Year",
    "sich": "SIC Code - Historical",
    "at": "Assets - Total",
    "ceq": "Common/Ordinary Equity - Total",
    "csho": "Common Shares Outstanding",
    "prcc_f": "Price Close - Annual - Fiscal",
    "dltt": "Long-Term Debt - Total",
    "dlc": "Debt in Current Liabilities - Total",
    "ib": "Income Before Extraordinary Items",
    "oancf": "Operating Activities - Net Cash Flow",
    "sale": "Sales/Turnover (Net)",
    "rect": "Receivables - Total",
    "ppegt": "Property, Plant and Equipment - Total (Gross)",
}

COMPUSTAT_FILTERS = {
    "indfmt": "INDL",  # industrial reporting format (not financial services format)
    "datafmt": "STD",  # only standardized records
    "popsrc": "D",  # only from domestic sources
    "consol": "C",  # consolidated financial statements
}


def pull_Compustat(
        source: TableSource = None,
        first_fyear: int = FIRST_FYEAR,
        last_fyear: int = LAST_FYEAR,
        gvkey: Union[str, List[str], None] = None,
        data_dir: Union[None, Path] = RAW_DATA_DIR,
        file_name: str = None,
        file_type: str = None,
    ) -> pd.DataFrame:
    """
    Pull annual Compustat fundamentals for fiscal years [first_fyear, last_fyear],
    with caching. See description_compustat for the variables.

    Parameters
    ----------
    source : TableSource, optional
        Where to read comp.funda from. Defaults to WRDS with the credentials in settings.
    first_fyear, last_fyear : int
        Inclusive fiscal-year window.
    gvkey : str or list, optional
        Restrict to these Global Company Keys. If None, all companies are pulled.
    data_dir : Path, optional
        Directory to save the data. The default is RAW_DATA_DIR.
    file_name : str, optional
        File name to save the data. The default is derived from the filters.
    file_type : str, optional
        File type to save the data. The default is "parquet".

    Returns
    -------
    comp : pd.DataFrame
        One row per (gvkey, datadate).
    """
    gvkey_tuple = _ids_to_tuple(gvkey)
    filters = {"fyear": {"gte": first_fyear, "lte": last_fyear}}
    if gvkey_tuple is not None:
        filters["gvkey"] = gvkey_tuple
    cache_paths, cached_fp = _resolve_cache("comp_funda", filters, data_dir, file_name)
    if cached_fp:
        logger.info(f"Loading cached data from {cached_fp}")
        return _read_cached_data(cached_fp)

    where = dict(COMPUSTAT_FILTERS)
    where["fyear"] = Between(first_fyear, last_fyear)
    if gvkey_tuple is not None:
        where["gvkey"] = gvkey_tuple

    comp = _default_source(source).read_table(
        "comp.funda", list(description_compustat), where, date_cols=["datadate"]
    )
    comp["gvkey"] = normalize_gvkey(comp["gvkey"])
    comp["fyear"] = comp["fyear"].astype("int64")

    cache_path = _save_cache_data(comp, data_dir, cache_paths, file_name, file_type)
    logger.info(f"Saved data to {cache_path}")
    return comp


def pull_Compustat_company(
        source: TableSource = None,
        data_dir: Union[None, Path] = RAW_DATA_DIR,
        file_name: str = None,
        file_type: str = None,
    ) -> pd.DataFrame:
    """
    Pull the Compustat company header (gvkey, current SIC code). The header SIC
    fills in firm-years whose historical SIC (sich) is missing.
    """
    cache_paths, cached_fp = _resolve_cache("comp_company", {}, data_dir, file_name)
    if cached_fp:
        logger.info(f"Loading cached data from {cached_fp}")
        return _read_cached_data(cached_fp)

    company = _default_source(source).read_table("comp.company", ["gvkey", "sic"])
    company["gvkey"] = normalize_gvkey(company["gvkey"])
    company["sic"] = pd.to_numeric(company["sic"], errors="coerce")

    cache_path = _save_cache_data(company, data_dir, cache_paths, file_name, file_type)
    logger.info(f"Saved data to {cache_path}")
    return company


def merge_company_sic(comp: pd.DataFrame, company: pd.DataFrame) -> pd.DataFrame:
    """Coalesce the historical SIC code with the company header SIC into 'sic'."""
    comp = comp.merge(company[["gvkey", "sic"]], on="gvkey", how="left")
    comp["sic"] = pd.to_numeric(comp["sich"], errors="coerce").fillna(comp["sic"])
    return comp


description_CRSP_Comp_link = {
    "gvkey": "Global Company Key - A unique identifier for companies in the Compustat database.",
    "lpermno": "Permanent Number - A unique stock identifier assigned by CRSP to each security.",
    "linktype": "Link Type - 'L' types refer to links considered official by CRSP.",
    "linkprim": "Primary Link Indicator - primary identified by Compustat ('P') or assigned by CRSP ('C').",
    "linkdt": "Link Date Start - The starting date for which the link is valid.",
    "linkenddt": "Link Date End - The ending date for which the link is valid; missing if still valid.",
}


def pull_CRSP_Comp_link_table(
    source: TableSource = None,
    data_dir: Union[None, Path] = RAW_DATA_DIR,
    file_name: str = None,
    file_type: str = None,
) -> pd.DataFrame:
    """
    Pull the CRSP-Compustat link table, restricted to primary links of the
    official 'L' types (LC, LU, LS).
    """
    cache_paths, cached_fp = _resolve_cache("crsp_comp_link_table", {}, data_dir, file_name)
    if cached_fp:
        logger.info(f"Loading cached data from {cached_fp}")
        return _read_cached_data(cached_fp)

    where = {
        "linktype": ["LC", "LU", "LS"],
        "linkprim": ["C", "P"],
    }
    ccm = _default_source(source).read_table(
        "crsp.ccmxpf_linktable",
        list(description_CRSP_Comp_link),
        where,
        date_cols=["linkdt", "linkenddt"],
    )
    ccm = ccm.rename(columns={"lpermno": "permno"})
    ccm["gvkey"] = normalize_gvkey(ccm["gvkey"])

    cache_path = _save_cache_data(ccm, data_dir, cache_paths, file_name, file_type)
    logger.info(f"Saved data to {cache_path}")
    return ccm


def map_permno_to_gvkey(df: pd.DataFrame, ccm: pd.DataFrame, date_col: str = None) -> pd.DataFrame:
    """
    Attach gvkey to a permno-keyed frame through the link table. With a
    date_col, only links valid on that date are used; without one, any link
    of the permno is accepted.
    """
    ccm = ccm.copy()
    # if linkenddt is missing then the link is still active
    ccm["linkenddt"] = ccm["linkenddt"].fillna(pd.Timestamp("today").normalize())
    merged = df.merge(ccm[["permno", "gvkey", "linkdt", "linkenddt"]], on="permno", how="inner")
    if date_col is not None:
        merged = merged[
            (merged[date_col] >= merged["linkdt"]) & (merged[date_col] <= merged["linkenddt"])
        ]
    merged = merged.drop(columns=["linkdt", "linkenddt"])
    return merged.drop_duplicates().reset_index(drop=True)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    source = WRDSSource(DatabaseConfig.from_settings())
    comp = pull_Compustat(source=source, file_name="Compustat_funda.parquet")
    company = pull_Compustat_company(source=source, file_name="Compustat_company.parquet")
    ccm = pull_CRSP_Comp_link_table(source=source, file_name="CRSP_Comp_Link_Table.parquet")
