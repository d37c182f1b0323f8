"""
Discretionary accruals from Jones-type models estimated by industry-year.

Estimation runs in two stages:
  1. `enumerate_cohorts` splits the firm-year sample into immutable
     (Fama-French industry, fiscal year) cohorts and drops those with fewer
     than MIN_COHORT_OBS firm-years;
  2. `fit_cohort` fits every accrual specification on one cohort. Cohorts
     share nothing, so they can be fitted in any order.

Each functional form is estimated in two variants:
  (a) no intercept. The model is fitted on the gross sales change, but the
      fitted value is rebuilt with the sales term named in `sales_recon`
      (the receivables-adjusted change for the modified Jones forms), and
      da = acc_at - rebuilt fit. Column `da_<form>`.
  (b) intercept. The `sales_recon` term is used directly as the regressor and
      da is the OLS residual. Column `da_<form>_int`.

The plain `jones` form sits outside that pattern: its `sales_recon` is the
gross change itself, so (a) rebuilds nothing and `da_jones_int` is fitted on
gross sales change rather than on the receivables-adjusted one.

A cohort whose design matrix is rank deficient, or has fewer complete rows
than parameters, gets missing accruals for that specification.
"""
import logging
from dataclasses import dataclass
from itertools import product
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm

logger = logging.getLogger(__name__)

MIN_COHORT_OBS = 10
KEY_COLS = ["gvkey", "fyear", "ff_ind"]


@dataclass(frozen=True)
class AccrualForm:
    name: str
    sales_recon: str
    extra: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AccrualSpec:
    form: AccrualForm
    intercept: bool

    @property
    def column(self) -> str:
        return f"da_{self.form.name}" + ("_int" if self.intercept else "")

    @property
    def fit_regressors(self) -> List[str]:
        sales = self.form.sales_recon if self.intercept else "d_sale_at"
        return ["one_at", sales, "ppe_at", *self.form.extra]

    @property
    def needed(self) -> List[str]:
        return sorted({"acc_at", "one_at", "d_sale_at", self.form.sales_recon,
                       "ppe_at", *self.form.extra})


ACCRUAL_FORMS = [
    AccrualForm("jones", sales_recon="d_sale_at"),
    AccrualForm("mjones", sales_recon="d_sale_rec_at"),
    AccrualForm("mjones_bm", sales_recon="d_sale_rec_at", extra=("bm",)),
    AccrualForm("mjones_mb", sales_recon="d_sale_rec_at", extra=("mb",)),
]

ACCRUAL_SPECS = [AccrualSpec(form, intercept) for form, intercept in product(ACCRUAL_FORMS, [False, True])]

DA_COLS = [spec.column for spec in ACCRUAL_SPECS]


@dataclass(frozen=True, eq=False)
class Cohort:
    """All firm-years of one (ff_ind, fyear) cell. Treat `data` as read-only."""
    ff_ind: int
    fyear: int
    data: pd.DataFrame

    @property
    def n_obs(self) -> int:
        return len(self.data)


def enumerate_cohorts(df: pd.DataFrame, min_obs: int = MIN_COHORT_OBS) -> List[Cohort]:
    """Split the sample into industry-year cohorts of at least min_obs firm-years."""
    cohorts = []
    n_small, n_small_rows = 0, 0
    for (ff_ind, fyear), grp in df.groupby(["ff_ind", "fyear"], sort=True):
        if len(grp) < min_obs:
            n_small += 1
            n_small_rows += len(grp)
            continue
        cohorts.append(Cohort(int(ff_ind), int(fyear), grp.reset_index(drop=True)))
    logger.info(
        f"[cohorts] {len(cohorts):,} industry-years kept | "
        f"{n_small:,} dropped with < {min_obs} obs ({n_small_rows:,} firm-years)"
    )
    return cohorts


def _full_rank(X: pd.DataFrame) -> bool:
    n, k = X.shape
    return n >= k and np.linalg.matrix_rank(X.to_numpy(dtype=float)) == k


def fit_spec(data: pd.DataFrame, spec: AccrualSpec) -> pd.Series:
    """
    Discretionary accruals of one cohort under one specification, aligned on
    data's index. Rows missing any model variable get NaN.
    """
    da = pd.Series(np.nan, index=data.index, name=spec.column)
    complete = data[spec.needed].dropna()

    X = complete[spec.fit_regressors]
    if spec.intercept:
        X = sm.add_constant(X, has_constant="add")
    if not _full_rank(X):
        return da

    y = complete["acc_at"]
    res = sm.OLS(y, X).fit()

    if spec.intercept:
        da.loc[complete.index] = res.resid
    else:
        b = res.params
        fitted = (
            b["one_at"] * complete["one_at"]
            + b["d_sale_at"] * complete[spec.form.sales_recon]
            + b["ppe_at"] * complete["ppe_at"]
        )
        for col in spec.form.extra:
            fitted = fitted + b[col] * complete[col]
        da.loc[complete.index] = y - fitted
    return da


def fit_cohort(cohort: Cohort, specs: Sequence[AccrualSpec] = ACCRUAL_SPECS) -> pd.DataFrame:
    """Fit every specification on one cohort."""
    out = cohort.data[["gvkey", "fyear"]].copy()
    out["ff_ind"] = cohort.ff_ind
    for spec in specs:
        out[spec.column] = fit_spec(cohort.data, spec)
    return out


def calc_discretionary_accruals(
    df: pd.DataFrame,
    min_obs: int = MIN_COHORT_OBS,
    specs: Sequence[AccrualSpec] = ACCRUAL_SPECS,
) -> pd.DataFrame:
    """
    Discretionary accruals of every firm-year in a usable cohort.

    Parameters
    ----------
    df : pd.DataFrame
        Output of transform_compustat.calc_accrual_inputs with ff_ind attached.

    Returns
    -------
    pd.DataFrame
        gvkey, fyear, ff_ind and one column per specification (DA_COLS).
    """
    cohorts = enumerate_cohorts(df, min_obs=min_obs)
    columns = KEY_COLS + [spec.column for spec in specs]
    if not cohorts:
        return pd.DataFrame({
            "gvkey": pd.Series(dtype="string"),
            "fyear": pd.Series(dtype="int64"),
            "ff_ind": pd.Series(dtype="int64"),
            **{spec.column: pd.Series(dtype="float64") for spec in specs},
        })
    da = pd.concat([fit_cohort(c, specs) for c in cohorts], ignore_index=True)
    return da[columns]
