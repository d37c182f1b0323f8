import logging
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from linearmodels.panel import PanelOLS
from scipy import stats

from calc_accruals import DA_COLS
from transform_compustat import CONTROL_VARS

logger = logging.getLogger(__name__)

PM_DA_COLS = [f"{col}_pm" for col in DA_COLS]

DURING_YEARS = (2005, 2007)
POST_YEARS = (2008, 2010)

WINSOR_PCT = 0.01
_FUZZ = 4 * np.finfo(float).eps

FE_CONFIGS = ["year_fe", "firm_year_fe"]


# ================================================================================================
# Panel construction
# ================================================================================================

def build_regression_panel(
    treated: pd.DataFrame,
    controls: pd.DataFrame,
    pm_accruals: pd.DataFrame,
) -> pd.DataFrame:
    """
    Left-join controls and performance-matched accruals onto the pilot-flagged
    roster. Firm-years missing from either table keep nulls. Leverage is
    converted from percent to a fraction.
    """
    panel = treated.merge(controls, on=["gvkey", "fyear"], how="left")
    pm_cols = [c for c in pm_accruals.columns if c.endswith("_pm")]
    panel = panel.merge(pm_accruals[["gvkey", "fyear"] + pm_cols], on=["gvkey", "fyear"], how="left")
    panel["leverage"] = panel["leverage"] / 100
    logger.info(
        f"[panel] {len(panel):,} firm-years | "
        f"{int(panel[pm_cols].notna().any(axis=1).sum()):,} with matched accruals"
    )
    return panel


def winsorize_series(s: pd.Series, pct: float = WINSOR_PCT) -> pd.Series:
    """
    Clamp the k = floor(n * pct) smallest and largest non-missing values to
    the (k+1)-th smallest and largest. The cut-offs are the R type-2 sample
    quantiles whenever n * pct is not an integer; when it is, the inner order
    statistic is used instead of the average, which makes the function
    idempotent. Missing values are left alone.
    """
    vals = np.sort(s.dropna().to_numpy(dtype=float))
    n = len(vals)
    k = int(np.floor(n * pct + _FUZZ))
    if k == 0:
        return s
    return s.clip(lower=vals[k], upper=vals[n - k - 1])


def winsorize_by_year(
    df: pd.DataFrame,
    cols: Sequence[str],
    pct: float = WINSOR_PCT,
    year_col: str = "fyear",
) -> pd.DataFrame:
    """Winsorize each column separately within each fiscal year."""
    df = df.copy()
    for col in cols:
        df[col] = df.groupby(year_col)[col].transform(lambda s: winsorize_series(s, pct))
    return df


def add_sho_indicators(panel: pd.DataFrame) -> pd.DataFrame:
    """
    during = fiscal years 2005-2007 (pilot in force), post = 2008-2010 (after
    the pilot ended), and their interactions with the pilot flag.
    """
    panel = panel.copy()
    panel["pilot"] = panel["pilot"].astype(float)
    panel["during"] = panel["fyear"].between(*DURING_YEARS).astype(float)
    panel["post"] = panel["fyear"].between(*POST_YEARS).astype(float)
    panel["pilot_during"] = panel["pilot"] * panel["during"]
    panel["pilot_post"] = panel["pilot"] * panel["post"]
    return panel


# ================================================================================================
# Regressions
# ================================================================================================

class TwoWayClusteredResults:
    """
    PanelOLS results with a two-way (firm and year) clustered covariance
    made positive semi-definite: the firm + year - intersection estimate is
    eigen-decomposed and its negative eigenvalues set to zero (Cameron,
    Gelbach and Miller 2011). Standard errors, t-stats, p-values and
    confidence intervals are recomputed from the corrected matrix; every
    other attribute comes from the wrapped results.
    """

    def __init__(self, res, name: str = ""):
        self._res = res
        cov = res.cov
        eigval, eigvec = np.linalg.eigh(cov.to_numpy())
        self.n_clipped = int((eigval < 0).sum())
        fixed = (eigvec * np.clip(eigval, 0, None)) @ eigvec.T
        self.cov = pd.DataFrame(fixed, index=cov.index, columns=cov.columns)
        if self.n_clipped:
            logger.warning(
                f"[{name}] two-way clustered covariance not PSD: "
                f"{self.n_clipped} negative eigenvalue(s) set to zero"
            )

    def __getattr__(self, attr):
        return getattr(self._res, attr)

    @property
    def std_errors(self) -> pd.Series:
        se = np.sqrt(np.clip(np.diag(self.cov.to_numpy()), 0, None))
        return pd.Series(se, index=self.cov.index, name="std_error")

    @property
    def tstats(self) -> pd.Series:
        se = self.std_errors
        return (self.params / se.where(se > 0)).rename("tstat")

    @property
    def pvalues(self) -> pd.Series:
        return pd.Series(2 * stats.norm.sf(np.abs(self.tstats)), index=self.params.index, name="pvalue")

    def conf_int(self, level: float = 0.95) -> pd.DataFrame:
        q = stats.norm.ppf(0.5 + level / 2)
        se = self.std_errors
        return pd.DataFrame({"lower": self.params - q * se, "upper": self.params + q * se})


def _fit_panel_ols(
    panel: pd.DataFrame,
    dv: str,
    exog: List[str],
    entity_effects: bool,
    cluster_time: bool,
):
    """
    dv on exog with year fixed effects (and firm fixed effects if asked),
    standard errors clustered by firm (and by year if asked, through
    TwoWayClusteredResults).
    """
    data = panel.dropna(subset=[dv] + exog).astype({"gvkey": str}).set_index(["gvkey", "fyear"])
    x = sm.add_constant(data[exog])
    mod = PanelOLS(
        data[dv], x,
        entity_effects=entity_effects,
        time_effects=True,
        drop_absorbed=True,
        check_rank=False,
    )
    res = mod.fit(cov_type="clustered", cluster_entity=True, cluster_time=cluster_time)
    return TwoWayClusteredResults(res, name=dv) if cluster_time else res


def fit_panel_models(
    panel: pd.DataFrame,
    dvs: Sequence[str] = PM_DA_COLS,
    controls: Sequence[str] = CONTROL_VARS,
) -> Dict[Tuple[str, str], object]:
    """
    Two regressions per dependent variable:
      year_fe:      dv ~ pilot + pilot_during + pilot_post + controls + year FE,
                    clustered by firm and year;
      firm_year_fe: dv ~ pilot_during + pilot_post + controls + firm FE + year FE,
                    clustered by firm.

    Returns
    -------
    dict
        {(dv, "year_fe"): TwoWayClusteredResults, (dv, "firm_year_fe"): PanelEffectsResults, ...}
    """
    controls = list(controls)
    results = {}
    for dv in dvs:
        results[(dv, "year_fe")] = _fit_panel_ols(
            panel, dv, ["pilot", "pilot_during", "pilot_post"] + controls,
            entity_effects=False, cluster_time=True,
        )
        results[(dv, "firm_year_fe")] = _fit_panel_ols(
            panel, dv, ["pilot_during", "pilot_post"] + controls,
            entity_effects=True, cluster_time=False,
        )
        logger.info(
            f"[{dv}] pilot_during = {results[(dv, 'year_fe')].params.get('pilot_during', np.nan):.4f} (year FE), "
            f"{results[(dv, 'firm_year_fe')].params.get('pilot_during', np.nan):.4f} (firm + year FE)"
        )
    return results


def fit_by_year_models(
    panel: pd.DataFrame,
    dvs: Sequence[str] = PM_DA_COLS,
    controls: Sequence[str] = CONTROL_VARS,
) -> pd.DataFrame:
    """
    Pilot-minus-control difference in each fiscal year:
        dv ~ sum_y pilot x 1{fyear = y} + controls + year FE,
    clustered by firm. Each pilot x year dummy is non-zero in a single year,
    so a year cluster carries no information about it.

    Returns
    -------
    pd.DataFrame
        One row per (dv, fyear): coef, se, ci_lower, ci_upper.
    """
    panel = panel.copy()
    years = sorted(panel["fyear"].unique())
    year_cols = []
    for year in years:
        col = f"pilot_y{year}"
        panel[col] = panel["pilot"].astype(float) * (panel["fyear"] == year)
        year_cols.append(col)

    rows = []
    for dv in dvs:
        res = _fit_panel_ols(panel, dv, year_cols + list(controls),
                             entity_effects=False, cluster_time=False)
        ci = res.conf_int()
        for year, col in zip(years, year_cols):
            if col not in res.params.index:
                continue
            rows.append({
                "dv": dv,
                "fyear": int(year),
                "coef": res.params[col],
                "se": res.std_errors[col],
                "ci_lower": ci.loc[col, "lower"],
                "ci_upper": ci.loc[col, "upper"],
            })
    return pd.DataFrame(rows, columns=["dv", "fyear", "coef", "se", "ci_lower", "ci_upper"])
