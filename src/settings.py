"""Load project configurations from .env files or from the environment.

Provides easy access to paths and credentials used in the project.
Meant to be used as a centralized way to load configuration values.

Example
-------
Run this module to create the data and output directories:

    ipython ./src/settings.py

Any module can then read a value:

    from settings import config
    RAW_DATA_DIR = config("RAW_DATA_DIR")

Values are looked up in this order:
 1. the environment (or a `.env` file at the project root), read through
    `python-decouple`;
 2. the defaults defined below.
"""
import sys
from pathlib import Path

from decouple import config as _config


def if_relative_make_abs(path):
    """If a relative path is given, make it absolute, assuming
    that it is relative to the project root directory (BASE_DIR)
    """
    path = Path(path)
    if path.is_absolute():
        abs_path = path.resolve()
    else:
        abs_path = (d["BASE_DIR"] / path).resolve()
    return abs_path


d = {}

## Absolute path to root directory of the project
d["BASE_DIR"] = Path(__file__).absolute().parent.parent

## Paths
d["DATA_DIR"] = if_relative_make_abs(_config("DATA_DIR", default=Path("_data"), cast=Path))
d["RAW_DATA_DIR"] = if_relative_make_abs(_config("RAW_DATA_DIR", default=d["DATA_DIR"] / "raw", cast=Path))
d["MANUAL_DATA_DIR"] = if_relative_make_abs(_config("MANUAL_DATA_DIR", default=Path("data_manual"), cast=Path))
d["OUTPUT_DIR"] = if_relative_make_abs(_config("OUTPUT_DIR", default=Path("_output"), cast=Path))

## WRDS connection. Credentials stay out of the repository: put them in .env
d["WRDS_USERNAME"] = _config("WRDS_USERNAME", default="")
d["WRDS_PASSWORD"] = _config("WRDS_PASSWORD", default="")
d["WRDS_HOSTNAME"] = _config("WRDS_HOSTNAME", default="wrds-pgdata.wharton.upenn.edu")
d["WRDS_PORT"] = _config("WRDS_PORT", default=9737, cast=int)
d["WRDS_DBNAME"] = _config("WRDS_DBNAME", default="wrds")

## Sample window of the Compustat pull (fiscal years, inclusive)
d["FIRST_FYEAR"] = _config("FIRST_FYEAR", default=1999, cast=int)
d["LAST_FYEAR"] = _config("LAST_FYEAR", default=2012, cast=int)

## Fama-French 48 industry definitions
d["FF_INDUSTRY_URL"] = _config(
    "FF_INDUSTRY_URL",
    default="https://mba.tuck.dartmouth.edu/pages/faculty/ken.french/ftp/Siccodes48.zip",
)

## Stata extracts with the Reg SHO pilot list and the Russell 3000 roster
d["SHO_PILOT_FILE"] = _config("SHO_PILOT_FILE", default="sho_pilot.dta")
d["SHO_ROSTER_FILE"] = _config("SHO_ROSTER_FILE", default="sho_r3000.dta")


def config(
    var_name,
    default=None,
    cast=None,
    settings_dict=d,
):
    """Config defines a variable that can be used in the project.

    Values already resolved in `settings_dict` win. Anything else is read
    from the environment through python-decouple.
    """
    if var_name in settings_dict:
        return settings_dict[var_name]
    if default is None and cast is None:
        return _config(var_name)
    if cast is None:
        return _config(var_name, default=default)
    return _config(var_name, default=default, cast=cast)


def create_dirs():
    ## If they don't exist, create the _data and _output directories
    d["DATA_DIR"].mkdir(parents=True, exist_ok=True)
    d["RAW_DATA_DIR"].mkdir(parents=True, exist_ok=True)
    d["OUTPUT_DIR"].mkdir(parents=True, exist_ok=True)


if __name__ == "__main__":
    create_dirs()
    print(f"Project root: {d['BASE_DIR']}", file=sys.stderr)
