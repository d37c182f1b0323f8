import datetime
import zipfile

import numpy as np
import pandas as pd
import pytest

from utils import (
    _cache_filename,
    _flatten_dict_to_str,
    _read_cached_data,
    _resolve_cache,
    _save_cache_data,
    normalize_gvkey,
    safe_divide,
)


def test_cache_filename_from_filters(tmp_path):
    filters = {"fyear": {"gte": 1999, "lte": 2012}}
    paths = _cache_filename("comp.funda", _flatten_dict_to_str(filters), tmp_path)

    assert [p.suffix for p in paths] == [".parquet", ".csv", ".zip"]
    assert paths[0] == tmp_path / "comp_funda__1999_2012.parquet"


def test_unbounded_pull_is_stamped_with_today(tmp_path):
    paths = _cache_filename("comp_company", "", tmp_path)
    today = datetime.datetime.today().strftime("%Y%m%d")
    assert paths[0].name.startswith("comp_company_")
    assert paths[0].name.endswith(f"{today}.parquet")


def test_save_then_resolve(tmp_path):
    df = pd.DataFrame({"gvkey": ["001004"], "x": [1.5]})
    cache_paths, cached = _resolve_cache("comp_funda", {"fyear": {"gte": 2000}}, tmp_path)
    assert cached is None

    path = _save_cache_data(df, tmp_path, cache_paths)
    _, cached = _resolve_cache("comp_funda", {"fyear": {"gte": 2000}}, tmp_path)
    assert cached == path
    pd.testing.assert_frame_equal(_read_cached_data(cached), df)


def test_read_zipped_csv(tmp_path):
    path = tmp_path / "data.zip"
    with zipfile.ZipFile(path, "w") as z:
        z.writestr("data.csv", "a,b\n1,2\n")
    assert _read_cached_data(path).to_dict("list") == {"a": [1], "b": [2]}


def test_unsupported_format_raises(tmp_path):
    with pytest.raises(ValueError):
        _read_cached_data(tmp_path / "data.xlsx")


def test_normalize_gvkey():
    out = normalize_gvkey(pd.Series([1004, 1004.0, "1004", " 001004 ", None, ""], dtype=object))
    assert out.iloc[:4].tolist() == ["001004"] * 4
    assert out.iloc[4:].isna().all()


def test_safe_divide():
    out = safe_divide(pd.Series([1.0, 1.0, 1.0]), pd.Series([2.0, 0.0, np.nan]))
    assert out.iloc[0] == 0.5
    assert out.iloc[1:].isna().all()
