import pandas as pd

from transform_sho import attach_pilot_to_roster, resolve_pilot_flags


def test_conflicting_firms_are_dropped():
    pilot_raw = pd.DataFrame({
        "gvkey": ["001004", "001004", "001010", "001010", "001013"],
        "pilot": [True, True, True, False, False],
    })
    flags = resolve_pilot_flags(pilot_raw)

    assert sorted(flags["gvkey"]) == ["001004", "001013"]
    assert flags["gvkey"].is_unique
    assert flags.set_index("gvkey").loc["001004", "pilot"]
    assert not flags.set_index("gvkey").loc["001013", "pilot"]


def test_unpadded_keys_are_resolved_together():
    pilot_raw = pd.DataFrame({"gvkey": ["1004", "001004", 1010.0], "pilot": [1, 0, 1]})
    flags = resolve_pilot_flags(pilot_raw)

    assert list(flags["gvkey"]) == ["001010"]
    assert flags["pilot"].dtype == bool


def test_roster_is_restricted_and_labelled():
    roster = pd.DataFrame({
        "gvkey": ["001004"] * 3 + ["001010"] * 2 + ["009999"],
        "fyear": [1999, 2000, 2001, 2004, 2004, 2005],
    })
    flags = pd.DataFrame({"gvkey": ["001004", "001010"], "pilot": [True, False]})
    treated = attach_pilot_to_roster(roster, flags)

    assert treated["fyear"].min() >= 2000
    assert not treated.duplicated(["gvkey", "fyear"]).any()
    # firms without a resolved flag drop out
    assert "009999" not in set(treated["gvkey"])
    assert list(treated.columns) == ["gvkey", "fyear", "pilot"]
    assert len(treated) == 3
