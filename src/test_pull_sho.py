import pandas as pd
import pytest

from pull_sho import load_sho_pilot, load_sho_roster


def test_pilot_list_keyed_by_gvkey(tmp_path):
    path = tmp_path / "sho_pilot.dta"
    pd.DataFrame({"GVKEY": [1004.0, 1004.0, 1010.0], "PILOT": [1, 1, 0]}).to_stata(path, write_index=False)

    pilot = load_sho_pilot(path)

    assert list(pilot.columns) == ["gvkey", "pilot"]
    assert pilot["gvkey"].tolist() == ["001004", "001004", "001010"]
    assert pilot["pilot"].tolist() == [True, True, False]


def test_pilot_list_keyed_by_permno_needs_link_table(tmp_path):
    path = tmp_path / "sho_pilot.dta"
    pd.DataFrame({"permno": [54594, 10000], "pilot": [1, 0]}).to_stata(path, write_index=False)
    ccm = pd.DataFrame({
        "gvkey": ["001004", "001010"],
        "permno": [54594, 10000],
        "linkdt": pd.to_datetime(["1972-01-01", "1986-01-01"]),
        "linkenddt": pd.to_datetime([None, None]),
    })

    with pytest.raises(ValueError):
        load_sho_pilot(path)

    pilot = load_sho_pilot(path, ccm=ccm)
    assert pilot.set_index("gvkey")["pilot"].to_dict() == {"001004": True, "001010": False}


def test_roster_is_distinct_firm_years(tmp_path):
    path = tmp_path / "sho_r3000.dta"
    pd.DataFrame({
        "gvkey": ["1004", "1004", "1010"],
        "fyear": [2004.0, 2004.0, 2005.0],
    }).to_stata(path, write_index=False)

    roster = load_sho_roster(path)

    assert roster[["gvkey", "fyear"]].values.tolist() == [["001004", 2004], ["001010", 2005]]
    assert roster["fyear"].dtype == "int64"


def test_missing_columns_raise(tmp_path):
    path = tmp_path / "sho_r3000.dta"
    pd.DataFrame({"gvkey": ["1004"]}).to_stata(path, write_index=False)
    with pytest.raises(ValueError, match="fyear"):
        load_sho_roster(path)
