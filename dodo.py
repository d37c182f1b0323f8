"""Run or update the project. This file uses the `doit` Python package. It works
like a Makefile, but is Python-based

"""

import sys

sys.path.insert(1, "./src/")

from os import environ, getcwd, path
from pathlib import Path

from settings import config
from colorama import Fore, Style, init

# ====================================================================================
# PyDoit Formatting
# ====================================================================================

## Custom reporter: Print PyDoit Text in Green
# Some tasks write to stderr and pollute the output in the console. The task
# lines printed by PyDoit should stand out from among all the other lines.
from doit.reporter import ConsoleReporter

in_slurm = environ.get("SLURM_JOB_ID") is not None


class GreenReporter(ConsoleReporter):
    def write(self, stuff, **kwargs):
        doit_mark = stuff.split(" ")[0].ljust(2)
        task = " ".join(stuff.split(" ")[1:]).strip() + "\n"
        output = (
            Fore.GREEN
            + doit_mark
            + f" {path.basename(getcwd())}: "
            + task
            + Style.RESET_ALL
        )
        self.outstream.write(output)


if not in_slurm:
    DOIT_CONFIG = {
        "reporter": GreenReporter,
        'backend': 'sqlite3',
        'dep_file': './.doit-db.sqlite'
    }
else:
    DOIT_CONFIG = {
        'backend': 'sqlite3',
        'dep_file': './.doit-db.sqlite'
    }
init(autoreset=True)

# ====================================================================================
# Configuration and Helpers for PyDoit
# ====================================================================================

DATA_DIR = Path(config("DATA_DIR"))
RAW_DATA_DIR = Path(config("RAW_DATA_DIR"))
MANUAL_DATA_DIR = Path(config("MANUAL_DATA_DIR"))
OUTPUT_DIR = Path(config("OUTPUT_DIR"))
SHO_PILOT_FILE = config("SHO_PILOT_FILE")
SHO_ROSTER_FILE = config("SHO_ROSTER_FILE")


##################################
## Begin rest of PyDoit tasks here
##################################

def task_config():
    """Create empty directories for data and output if they don't exist"""
    return {
        "actions": ["ipython ./src/settings.py"],
        "targets": [RAW_DATA_DIR, OUTPUT_DIR],
        "file_dep": ["./src/settings.py"],
        "clean": [],
    }


def task_pull_compustat():
    """Pull Compustat fundamentals, company header and the CRSP link table from WRDS"""
    return {
        "actions": ["ipython ./src/pull_compustat.py"],
        "targets": [
            RAW_DATA_DIR / "Compustat_funda.parquet",
            RAW_DATA_DIR / "Compustat_company.parquet",
            RAW_DATA_DIR / "CRSP_Comp_Link_Table.parquet",
        ],
        "file_dep": ["./src/settings.py", "./src/utils.py", "./src/pull_compustat.py"],
        "task_dep": ["config"],
        "clean": [],  # Don't clean these files by default.
        "verbosity": 2,
    }


def task_pull_ff_industries():
    """Download the Fama-French 48 industry definitions"""
    return {
        "actions": ["ipython ./src/pull_ff_industries.py"],
        "targets": [RAW_DATA_DIR / "ff_industries_48.parquet"],
        "file_dep": ["./src/settings.py", "./src/utils.py", "./src/pull_ff_industries.py"],
        "task_dep": ["config"],
        "clean": [],
        "verbosity": 2,
    }


PANEL_SRC = [
    "./src/pull_sho.py",
    "./src/transform_sho.py",
    "./src/transform_compustat.py",
    "./src/calc_accruals.py",
    "./src/calc_perf_match.py",
    "./src/regressions.py",
    "./src/calc_FHK_2016.py",
]


def task_build_panel():
    """Build the Reg SHO regression panel from the cached inputs"""
    return {
        "actions": [
            "python -c \"import sys; sys.path.insert(0, './src'); "
            "import logging; logging.basicConfig(level=logging.INFO); "
            "from calc_FHK_2016 import build_panel_from_cache; build_panel_from_cache()\"",
        ],
        "targets": [DATA_DIR / "fhk_panel.parquet"],
        "file_dep": [
            RAW_DATA_DIR / "Compustat_funda.parquet",
            RAW_DATA_DIR / "Compustat_company.parquet",
            RAW_DATA_DIR / "CRSP_Comp_Link_Table.parquet",
            RAW_DATA_DIR / "ff_industries_48.parquet",
            MANUAL_DATA_DIR / SHO_PILOT_FILE,
            MANUAL_DATA_DIR / SHO_ROSTER_FILE,
            *PANEL_SRC,
        ],
        "clean": True,
        "verbosity": 2,
    }


def task_run_regressions():
    """Fit the panel regressions and write the tables and the figure"""
    return {
        "actions": ["ipython ./src/calc_FHK_2016.py"],
        "targets": [
            OUTPUT_DIR / "table_fhk_year_fe.tex",
            OUTPUT_DIR / "table_fhk_year_fe.txt",
            OUTPUT_DIR / "table_fhk_firm_year_fe.tex",
            OUTPUT_DIR / "table_fhk_firm_year_fe.txt",
            OUTPUT_DIR / "table_fhk_descriptives.tex",
            OUTPUT_DIR / "fhk_by_year_coefficients.png",
        ],
        "file_dep": [DATA_DIR / "fhk_panel.parquet", *PANEL_SRC],
        "clean": True,
        "verbosity": 2,
    }
