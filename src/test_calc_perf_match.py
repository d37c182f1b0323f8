import numpy as np
import pandas as pd
import pytest

from calc_accruals import DA_COLS, calc_discretionary_accruals
from calc_perf_match import calc_match_roa, calc_perf_matched_accruals, match_peers


def _accruals(gvkeys, da, ff_ind=1, fyear=2005):
    return pd.DataFrame({
        "gvkey": gvkeys,
        "fyear": fyear,
        "ff_ind": ff_ind,
        "da_jones": da,
    })


def _roa(gvkeys, roa, fyear=2005):
    return pd.DataFrame({"gvkey": gvkeys, "fyear": fyear, "roa_match": roa})


def test_match_roa_is_shifted_to_next_year():
    comp = pd.DataFrame({
        "gvkey": ["000001", "000001", "000002"],
        "fyear": [2004, 2005, 2004],
        "ib": [10.0, 20.0, 5.0],
        "at": [100.0, 0.0, 50.0],
    })
    roa = calc_match_roa(comp)

    assert roa[["gvkey", "fyear"]].values.tolist() == [["000001", 2005], ["000002", 2005]]
    assert roa["roa_match"].tolist() == pytest.approx([0.1, 0.1])


def test_two_identical_firms_match_each_other():
    accruals = _accruals(["A", "B"], [0.3, 0.1])
    roa = _roa(["A", "B"], [0.05, 0.05])

    pm = calc_perf_matched_accruals(accruals, roa, da_cols=["da_jones"]).set_index("gvkey")

    assert pm.loc["A", "gvkey_peer"] == "B"
    assert pm.loc["B", "gvkey_peer"] == "A"
    assert pm.loc["A", "da_jones_pm"] == pytest.approx(0.2)
    assert pm.loc["B", "da_jones_pm"] == pytest.approx(-0.2)


def test_nearest_roa_wins_and_never_self():
    accruals = _accruals(["A", "B", "C", "D"], [0.0] * 4)
    roa = _roa(["A", "B", "C", "D"], [0.10, 0.12, 0.30, 0.31])

    matches = match_peers(accruals, roa).set_index("gvkey")

    assert (matches.index != matches["gvkey_peer"]).all()
    assert matches.loc["A", "gvkey_peer"] == "B"
    assert matches.loc["C", "gvkey_peer"] == "D"
    assert matches.loc["A", "roa_dist"] == pytest.approx(0.02)


def test_ties_go_to_lowest_gvkey():
    accruals = _accruals(["M", "Z", "B"], [0.0] * 3)
    roa = _roa(["M", "Z", "B"], [0.5, 0.75, 0.25])

    matches = match_peers(accruals, roa).set_index("gvkey")
    assert matches.loc["M", "gvkey_peer"] == "B"

    shuffled = match_peers(accruals.iloc[::-1], roa.iloc[::-1]).set_index("gvkey")
    assert shuffled.loc["M", "gvkey_peer"] == "B"


def test_a_peer_can_serve_several_firms():
    accruals = _accruals(["A", "B", "C"], [0.0] * 3)
    roa = _roa(["A", "B", "C"], [0.10, 0.11, 0.12])

    matches = match_peers(accruals, roa).set_index("gvkey")
    assert matches.loc["A", "gvkey_peer"] == "B"
    assert matches.loc["C", "gvkey_peer"] == "B"


def test_matching_stays_inside_industry_year():
    accruals = pd.concat([
        _accruals(["A", "B"], [0.0, 0.0], ff_ind=1),
        _accruals(["C"], [0.0], ff_ind=2),
        _accruals(["D"], [0.0], ff_ind=1, fyear=2006),
    ], ignore_index=True)
    roa = pd.concat([
        _roa(["A", "B", "C"], [0.1, 0.5, 0.1]),
        _roa(["D"], [0.1], fyear=2006),
    ], ignore_index=True)

    matches = match_peers(accruals, roa).set_index("gvkey")
    assert matches.loc["A", "gvkey_peer"] == "B"
    # C and D are alone in their cohorts
    assert "C" not in matches.index and "D" not in matches.index


def test_peer_missing_accrual_propagates_nan():
    accruals = _accruals(["A", "B"], [0.3, np.nan])
    roa = _roa(["A", "B"], [0.05, 0.06])

    pm = calc_perf_matched_accruals(accruals, roa, da_cols=["da_jones"]).set_index("gvkey")
    assert np.isnan(pm.loc["A", "da_jones_pm"])


def test_no_estimated_cohort_gives_empty_result():
    cohort = pd.DataFrame({
        "gvkey": ["001004", "001010"],
        "fyear": [2005, 2005],
        "ff_ind": [1, 1],
        "acc_at": [0.01, -0.02],
        "one_at": [0.002, 0.004],
        "d_sale_at": [0.1, 0.05],
        "d_sale_rec_at": [0.08, 0.04],
        "ppe_at": [0.4, 0.5],
        "bm": [0.7, 1.1],
        "mb": [1 / 0.7, 1 / 1.1],
    })
    roa = _roa(["001004", "001010"], [0.05, 0.06])

    pm = calc_perf_matched_accruals(calc_discretionary_accruals(cohort), roa)

    assert pm.empty
    assert list(pm.columns) == ["gvkey", "fyear", "ff_ind", "gvkey_peer"] + [f"{c}_pm" for c in DA_COLS]


def test_empty_roa_gives_no_matches():
    matches = match_peers(_accruals(["A", "B"], [0.1, 0.2]), _roa([], []))
    assert matches.empty
    assert list(matches.columns) == ["gvkey", "fyear", "ff_ind", "gvkey_peer", "roa_dist"]
