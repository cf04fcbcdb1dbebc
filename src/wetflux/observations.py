"""Load, clean, and subset the field observation table.

One row per (site, year, visit) with CO2, CH4, and N2O concentrations. Rows
flagged by the missingness marker are dropped at load time; nothing downstream
ever sees them.
"""

import re
from pathlib import Path

import numpy as np
import polars as pl

from wetflux.config import (
    COLUMN_ALIASES,
    GASES,
    MISSING_COLUMN,
    MISSING_MARKERS,
    REDUCED_VISITS,
    REQUIRED_COLUMNS,
)
from wetflux.errors import InvalidInputError

_HEADER_SEP_RE = re.compile(r"[\s\-./()]+")


def normalize_column_name(name: str) -> str:
    """Canonical snake_case column name.

    Examples:
        "Site ID"   → "site"  (via alias "site_id")
        " CO2 (ppm)" → "co2"  (via alias "co2_ppm")
        "Visit"     → "visit"
    """
    cleaned = _HEADER_SEP_RE.sub("_", name.strip().lower()).strip("_")
    return COLUMN_ALIASES.get(cleaned, cleaned)


def clean_columns(df: pl.DataFrame) -> pl.DataFrame:
    """Rename every column to its canonical name.

    Raises:
        InvalidInputError: If two headers collapse to the same name.
    """
    mapping = {c: normalize_column_name(c) for c in df.columns}
    targets = list(mapping.values())
    dupes = sorted({t for t in targets if targets.count(t) > 1})
    if dupes:
        msg = f"Columns collapse to duplicate names after cleanup: {dupes}"
        raise InvalidInputError(msg)
    return df.rename(mapping)


def _missing_flag(df: pl.DataFrame) -> pl.Expr:
    """Boolean expression for the missingness marker, whatever its dtype."""
    if MISSING_COLUMN not in df.columns:
        return pl.lit(False)
    dtype = df.schema[MISSING_COLUMN]
    if dtype == pl.Boolean:
        return pl.col(MISSING_COLUMN).fill_null(False)
    if dtype.is_numeric():
        return pl.col(MISSING_COLUMN).fill_null(0) != 0
    return (
        pl.col(MISSING_COLUMN)
        .cast(pl.Utf8)
        .str.strip_chars()
        .str.to_lowercase()
        .is_in(list(MISSING_MARKERS))
        .fill_null(False)
    )


def prepare_observations(raw: pl.DataFrame) -> pl.DataFrame:
    """Clean an in-memory observation table and drop missing-marked rows.

    Returns a new DataFrame with columns site (str), year (int), visit (int),
    and one float column per gas, sorted by site, year, visit. The marker
    column is removed.

    Raises:
        InvalidInputError: On missing required columns, unparseable values,
            empty site/year/visit cells, invalid gas values,
            or duplicated (site, year, visit) triples.
    """
    df = clean_columns(raw)
    absent = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if absent:
        msg = f"Observation table is missing required columns: {absent}"
        raise InvalidInputError(msg)

    n_raw = df.height
    df = df.filter(~_missing_flag(df))
    n_dropped = n_raw - df.height
    if n_dropped:
        print(f"  Dropped {n_dropped} rows marked missing ({df.height} remain)")

    try:
        df = df.select(
            pl.col("site").cast(pl.Utf8).str.strip_chars(),
            pl.col("year").cast(pl.Int64),
            pl.col("visit").cast(pl.Int64),
            *[pl.col(g).cast(pl.Float64) for g in GASES],
        )
    except pl.exceptions.PolarsError as e:
        msg = f"Could not coerce observation columns to site/year/visit/gas types: {e}"
        raise InvalidInputError(msg) from e

    check_key_cells(df)
    for gas in GASES:
        validate_gas_values(df, gas)
    check_unique_observations(df)
    return df.sort("site", "year", "visit")


def load_observations(path: Path) -> pl.DataFrame:
    """Read the observations CSV and return the cleaned table.

    Raises:
        FileNotFoundError: If the file does not exist.
        InvalidInputError: See prepare_observations().
    """
    if not path.exists():
        msg = f"Observation file not found: {path}"
        raise FileNotFoundError(msg)
    raw = pl.read_csv(path, infer_schema_length=None)
    print(f"  Loaded {raw.height} rows x {raw.width} columns from {path.name}")
    df = prepare_observations(raw)
    print(
        f"  {df['site'].n_unique()} sites, years {sorted(df['year'].unique().to_list())}, "
        f"visits {sorted(df['visit'].unique().to_list())}"
    )
    return df


def check_key_cells(df: pl.DataFrame) -> None:
    """Raise if any site, year, or visit cell is null or blank."""
    empty = {col: int(df[col].is_null().sum()) for col in ("site", "year", "visit")}
    empty["site"] += int((df["site"] == "").sum())
    empty = {col: n for col, n in empty.items() if n}
    if empty:
        msg = f"Observation rows with empty key cells: {empty}"
        raise InvalidInputError(msg)


def validate_gas_values(observations: pl.DataFrame, gas: str) -> None:
    """Concentrations must be finite and strictly positive before the log transform.

    Raises:
        InvalidInputError: If the column is absent or any value is null,
            NaN, infinite, or <= 0.
    """
    if gas not in observations.columns:
        msg = f"Gas column {gas!r} not in observations (have {observations.columns})"
        raise InvalidInputError(msg, gas=gas)

    values = observations[gas].cast(pl.Float64).to_numpy()
    bad = ~np.isfinite(values) | (np.nan_to_num(values, nan=-1.0) <= 0)
    if bad.any():
        n_bad = int(bad.sum())
        examples = observations.filter(pl.Series(bad)).select("site", "year", "visit", gas)
        msg = (
            f"{n_bad} non-finite or non-positive {gas} values; first: "
            f"{examples.head(3).rows()}"
        )
        raise InvalidInputError(msg, gas=gas)


def check_unique_observations(df: pl.DataFrame) -> None:
    """Raise if any (site, year, visit) triple appears more than once."""
    dupes = df.group_by("site", "year", "visit").len().filter(pl.col("len") > 1)
    if dupes.height:
        examples = dupes.sort("site", "year", "visit").head(5).rows()
        msg = (
            f"{dupes.height} duplicated (site, year, visit) triples, e.g. "
            f"{[(s, y, v) for s, y, v, _ in examples]}"
        )
        raise InvalidInputError(msg)


def reduce_visits(
    df: pl.DataFrame,
    keep: tuple[int, ...] = REDUCED_VISITS,
) -> pl.DataFrame:
    """Subset to the visits a reduced sampling program would collect.

    Returns a new DataFrame; the input is not modified.

    Raises:
        InvalidInputError: If a kept visit never occurs, or nothing remains.
    """
    present = set(df["visit"].unique().to_list())
    absent = sorted(set(keep) - present)
    if absent:
        msg = f"Cannot keep visits {absent}: not present in data (have {sorted(present)})"
        raise InvalidInputError(msg)
    reduced = df.filter(pl.col("visit").is_in(list(keep)))
    if reduced.height == 0:
        msg = f"No observations remain after keeping visits {list(keep)}"
        raise InvalidInputError(msg)
    return reduced
