import numpy as np
import pandas as pd
import pytest

from regressions import (
    PM_DA_COLS,
    TwoWayClusteredResults,
    add_sho_indicators,
    build_regression_panel,
    fit_by_year_models,
    fit_panel_models,
    winsorize_by_year,
    winsorize_series,
)
from transform_compustat import CONTROL_VARS


# ================================================================================================
# Winsorizing
# ================================================================================================

def test_one_to_hundred_clamps_to_two_and_ninety_nine():
    s = pd.Series(np.arange(1, 101, dtype=float))
    out = winsorize_series(s, 0.01)
    assert out.min() == 2
    assert out.max() == 99
    assert (out.iloc[1:99] == s.iloc[1:99]).all()


def test_winsorizing_is_idempotent():
    s = pd.Series(np.random.default_rng(0).standard_t(2, size=537))
    once = winsorize_series(s, 0.01)
    twice = winsorize_series(once, 0.01)
    pd.testing.assert_series_equal(once, twice)


@pytest.mark.parametrize("n", [100, 250, 999])
def test_no_value_outside_type2_percentiles(n):
    s = pd.Series(np.random.default_rng(n).lognormal(size=n))
    p1, p99 = np.quantile(s, [0.01, 0.99], method="averaged_inverted_cdf")
    out = winsorize_series(s, 0.01)

    assert out.min() >= p1
    assert out.max() <= p99
    inside = (s > p1) & (s < p99)
    assert (out[inside] == s[inside]).all()


def test_small_groups_and_missing_values_are_left_alone():
    s = pd.Series([5.0, np.nan, -100.0, 100.0])
    pd.testing.assert_series_equal(winsorize_series(s, 0.01), s)


def test_winsorizing_is_per_year():
    df = pd.DataFrame({
        "fyear": [2004] * 101 + [2005] * 100,
        "x": np.r_[np.arange(1, 101), np.nan, np.arange(1001, 1101)].astype(float),
    })
    out = winsorize_by_year(df, ["x"])

    assert out.loc[out["fyear"] == 2004, "x"].max() == 99
    assert out.loc[out["fyear"] == 2005, "x"].min() == 1002
    assert out.loc[out["fyear"] == 2005, "x"].max() == 1099
    assert np.isnan(out.loc[100, "x"])


# ================================================================================================
# Panel and indicators
# ================================================================================================

def test_indicators():
    panel = pd.DataFrame({
        "fyear": [2004, 2005, 2007, 2008, 2010, 2011],
        "pilot": [True, True, False, True, True, True],
    })
    out = add_sho_indicators(panel)

    assert out["during"].tolist() == [0, 1, 1, 0, 0, 0]
    assert out["post"].tolist() == [0, 0, 0, 1, 1, 0]
    assert out["pilot_during"].tolist() == [0, 1, 0, 0, 0, 0]
    assert out["pilot_post"].tolist() == [0, 0, 0, 1, 1, 0]


def test_panel_left_joins_keep_unmatched_rows():
    treated = pd.DataFrame({"gvkey": ["A", "A", "B"], "fyear": [2004, 2005, 2004], "pilot": [True, True, False]})
    controls = pd.DataFrame({
        "gvkey": ["A"], "fyear": [2004], "size": [1.0], "mtob": [2.0], "leverage": [40.0], "roa": [0.1],
    })
    pm = pd.DataFrame({"gvkey": ["B"], "fyear": [2004], "gvkey_peer": ["C"], "da_jones_pm": [0.3]})

    panel = build_regression_panel(treated, controls, pm)

    assert len(panel) == 3
    assert panel.loc[0, "leverage"] == pytest.approx(0.4)
    assert panel["da_jones_pm"].isna().sum() == 2
    assert "gvkey_peer" not in panel.columns


# ================================================================================================
# Regressions
# ================================================================================================

@pytest.fixture(scope="module")
def synthetic_panel():
    rng = np.random.default_rng(42)
    firms = [f"{i:06d}" for i in range(80)]
    years = list(range(2001, 2011))
    panel = pd.DataFrame(
        [(g, y) for g in firms for y in years], columns=["gvkey", "fyear"]
    )
    panel["pilot"] = panel["gvkey"].map({g: i % 3 == 0 for i, g in enumerate(firms)})
    for col in CONTROL_VARS:
        panel[col] = rng.normal(size=len(panel))
    panel = add_sho_indicators(panel)

    firm_effect = panel["gvkey"].map({g: rng.normal(0, 0.05) for g in firms})
    for col in PM_DA_COLS:
        panel[col] = (
            firm_effect - 0.05 * panel["pilot_during"] + 0.01 * panel["size"]
            + rng.normal(0, 0.01, len(panel))
        )
    # missing outcomes drop out of the fit
    panel.loc[::37, PM_DA_COLS[0]] = np.nan
    return panel


def test_sixteen_models(synthetic_panel):
    results = fit_panel_models(synthetic_panel)

    assert len(results) == 16
    assert {fe for _, fe in results} == {"year_fe", "firm_year_fe"}
    for (dv, fe), res in results.items():
        assert "pilot_during" in res.params.index
        assert ("pilot" in res.params.index) == (fe == "year_fe")

    res = results[(PM_DA_COLS[1], "firm_year_fe")]
    assert res.params["pilot_during"] == pytest.approx(-0.05, abs=0.01)
    assert results[(PM_DA_COLS[0], "year_fe")].nobs < results[(PM_DA_COLS[1], "year_fe")].nobs


def test_by_year_coefficients(synthetic_panel):
    coefs = fit_by_year_models(synthetic_panel, dvs=PM_DA_COLS[:2])

    assert list(coefs.columns) == ["dv", "fyear", "coef", "se", "ci_lower", "ci_upper"]
    assert set(coefs["dv"]) == set(PM_DA_COLS[:2])
    assert (coefs["ci_lower"] <= coefs["coef"]).all()
    assert (coefs["coef"] <= coefs["ci_upper"]).all()
    assert coefs["se"].notna().all()
    assert (coefs["se"] > 0).all()


def test_year_fe_standard_errors_are_finite(synthetic_panel):
    results = fit_panel_models(synthetic_panel, dvs=PM_DA_COLS[:2])

    for (dv, fe), res in results.items():
        se = res.std_errors
        assert se.notna().all(), (dv, fe)
        assert (se >= 0).all(), (dv, fe)
        assert res.pvalues[["pilot_during", "pilot_post"]].between(0, 1).all()
        ci = res.conf_int()
        assert (ci["lower"] <= res.params).all() and (res.params <= ci["upper"]).all()


def test_two_way_covariance_is_positive_semidefinite(synthetic_panel):
    res = fit_panel_models(synthetic_panel, dvs=PM_DA_COLS[:1])[(PM_DA_COLS[0], "year_fe")]

    assert isinstance(res, TwoWayClusteredResults)
    assert np.linalg.eigvalsh(res.cov.to_numpy()).min() >= -1e-12
    pd.testing.assert_index_equal(res.cov.index, res.params.index)
