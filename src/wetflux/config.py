"""Study constants for the wetland greenhouse-gas visit-reduction analysis."""

from pathlib import Path

try:
    from importlib.metadata import version as _pkg_version

    PACKAGE_VERSION = _pkg_version("wetflux")
except Exception:
    PACKAGE_VERSION = "dev"

DATA_PATH = Path("data") / "ghg_concentrations.csv"

# Gas columns in modeling order, with display labels for logs and reports
GASES = ("co2", "ch4", "n2o")
GAS_LABELS = {"co2": "CO2", "ch4": "CH4", "n2o": "N2O"}

N_SITES = 16
FULL_VISITS = (1, 2, 3, 4, 5)
REDUCED_VISITS = (1, 3, 5)  # visits 2 and 4 dropped

SCENARIO_FULL = "full"
SCENARIO_REDUCED = "reduced"

REQUIRED_COLUMNS = ("site", "year", "visit", *GASES)
MISSING_COLUMN = "missing"

# Header variants seen in field spreadsheets → canonical column name
COLUMN_ALIASES = {
    "site_id": "site",
    "site_name": "site",
    "sampling_year": "year",
    "visit_number": "visit",
    "visit_no": "visit",
    "co2_ppm": "co2",
    "ch4_ppm": "ch4",
    "n2o_ppm": "n2o",
    "n2o_ppb": "n2o",
    "missing_data": "missing",
    "is_missing": "missing",
}

# Case-insensitive strings that mark a row as missing
MISSING_MARKERS = frozenset({"y", "yes", "true", "t", "1", "x", "missing"})
