"""Tests for observation loading and cleanup in wetflux/observations.py.

Covers header normalization, missingness filtering across marker dtypes,
type coercion, duplicate detection, CSV loading, and visit reduction.

Run: uv run pytest tests/test_observations.py -v
"""

import polars as pl
import pytest

from wetflux.errors import InvalidInputError
from wetflux.observations import (
    check_unique_observations,
    clean_columns,
    load_observations,
    normalize_column_name,
    prepare_observations,
    reduce_visits,
)


def _raw(**overrides) -> pl.DataFrame:
    data = {
        "Site ID": ["S02", "S01", "S01", "S02"],
        "Year": [2022, 2022, 2023, 2023],
        "Visit": [1, 1, 2, 2],
        "CO2 (ppm)": [410.0, 420.0, 415.0, 430.0],
        "CH4 (ppm)": [2.1, 2.0, 1.9, 2.2],
        "N2O (ppb)": [330.0, 331.0, 332.0, 333.0],
    }
    data.update(overrides)
    return pl.DataFrame(data)


# ── normalize_column_name() ──────────────────────────────────────────────────


class TestNormalizeColumnName:
    """Field-spreadsheet headers map to canonical names."""

    def test_alias_with_spaces(self):
        assert normalize_column_name("Site ID") == "site"

    def test_units_in_parentheses(self):
        assert normalize_column_name(" CO2 (ppm)") == "co2"

    def test_n2o_ppb(self):
        assert normalize_column_name("N2O (ppb)") == "n2o"

    def test_plain_lowercase(self):
        assert normalize_column_name("Visit") == "visit"

    def test_unknown_passthrough(self):
        assert normalize_column_name("Water Depth") == "water_depth"

    def test_missing_alias(self):
        assert normalize_column_name("Is Missing") == "missing"


class TestCleanColumns:
    def test_renames_all(self):
        df = clean_columns(_raw())
        assert df.columns == ["site", "year", "visit", "co2", "ch4", "n2o"]

    def test_duplicate_after_cleanup_raises(self):
        df = pl.DataFrame({"Site": ["a"], "site_id": ["b"]})
        with pytest.raises(InvalidInputError, match="duplicate"):
            clean_columns(df)


# ── prepare_observations() ───────────────────────────────────────────────────


class TestPrepareObservations:
    """Cleanup, filtering, typing, and ordering."""

    def test_schema(self):
        df = prepare_observations(_raw())
        assert df.schema == {
            "site": pl.Utf8,
            "year": pl.Int64,
            "visit": pl.Int64,
            "co2": pl.Float64,
            "ch4": pl.Float64,
            "n2o": pl.Float64,
        }

    def test_sorted_by_site_year_visit(self):
        df = prepare_observations(_raw())
        assert df.select("site", "year", "visit").rows() == [
            ("S01", 2022, 1),
            ("S01", 2023, 2),
            ("S02", 2022, 1),
            ("S02", 2023, 2),
        ]

    def test_does_not_mutate_input(self):
        raw = _raw()
        prepare_observations(raw)
        assert "Site ID" in raw.columns
        assert raw.height == 4

    def test_string_marker_filters(self):
        df = prepare_observations(_raw(Missing=["", "Y", None, "no"]))
        assert df.height == 3
        assert "missing" not in df.columns
        assert ("S01", 2022, 1) not in df.select("site", "year", "visit").rows()

    def test_string_marker_case_insensitive(self):
        df = prepare_observations(_raw(Missing=["TRUE", " yes ", "x", "n"]))
        assert df.height == 1

    def test_boolean_marker(self):
        df = prepare_observations(_raw(missing=[True, False, None, False]))
        assert df.height == 3

    def test_numeric_marker(self):
        df = prepare_observations(_raw(missing=[0, 1, 0, 1]))
        assert df.height == 2

    def test_no_marker_column_keeps_all(self):
        assert prepare_observations(_raw()).height == 4

    def test_missing_required_column(self):
        raw = _raw().drop("CH4 (ppm)")
        with pytest.raises(InvalidInputError, match="ch4"):
            prepare_observations(raw)

    def test_unparseable_year(self):
        with pytest.raises(InvalidInputError, match="coerce"):
            prepare_observations(_raw(Year=["2022", "2022", "twenty", "2023"]))

    def test_site_stripped(self):
        df = prepare_observations(_raw(**{"Site ID": [" S02", "S01 ", "S01", "S02"]}))
        assert set(df["site"].to_list()) == {"S01", "S02"}

    def test_null_year_raises(self):
        with pytest.raises(InvalidInputError, match="year"):
            prepare_observations(_raw(Year=[2022, 2023, 2022, None]))

    def test_null_visit_raises(self):
        with pytest.raises(InvalidInputError, match="visit"):
            prepare_observations(_raw(Visit=[1, None, 2, 2]))

    def test_blank_site_raises(self):
        with pytest.raises(InvalidInputError, match="site"):
            prepare_observations(_raw(**{"Site ID": ["S02", "  ", "S01", None]}))

    def test_null_key_on_marked_row_is_ok(self):
        raw = _raw(Year=[2022, 2022, 2023, None], Missing=["", "", "", "y"])
        assert prepare_observations(raw).height == 3

    @pytest.mark.parametrize("column", ["CO2 (ppm)", "CH4 (ppm)", "N2O (ppb)"])
    def test_every_gas_validated(self, column):
        with pytest.raises(InvalidInputError, match="non-positive") as exc:
            prepare_observations(_raw(**{column: [1.0, 0.0, 1.0, 1.0]}))
        assert exc.value.gas == normalize_column_name(column)

    def test_null_gas_raises(self):
        with pytest.raises(InvalidInputError, match="n2o"):
            prepare_observations(_raw(**{"N2O (ppb)": [330.0, None, 332.0, 333.0]}))

    def test_duplicates_raise(self):
        raw = _raw(Visit=[1, 1, 2, 1], Year=[2022, 2022, 2023, 2022])
        with pytest.raises(InvalidInputError, match="duplicated"):
            prepare_observations(raw)

    def test_duplicate_hidden_by_marker_is_ok(self):
        raw = _raw(Visit=[1, 1, 2, 1], Year=[2022, 2022, 2023, 2022], Missing=["", "", "", "y"])
        assert prepare_observations(raw).height == 3


class TestCheckUniqueObservations:
    def test_unique_passes(self, observations):
        check_unique_observations(observations)

    def test_reports_count(self, observations):
        doubled = pl.concat([observations, observations.head(2)])
        with pytest.raises(InvalidInputError, match="2 duplicated"):
            check_unique_observations(doubled)


# ── load_observations() ──────────────────────────────────────────────────────


class TestLoadObservations:
    def test_roundtrip_csv(self, tmp_path):
        path = tmp_path / "obs.csv"
        _raw(Missing=["", "", "y", ""]).write_csv(path)
        df = load_observations(path)
        assert df.height == 3
        assert df.columns == ["site", "year", "visit", "co2", "ch4", "n2o"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_observations(tmp_path / "nope.csv")

    def test_prints_summary(self, tmp_path, capsys):
        path = tmp_path / "obs.csv"
        _raw().write_csv(path)
        load_observations(path)
        out = capsys.readouterr().out
        assert "Loaded 4 rows" in out
        assert "2 sites" in out


# ── reduce_visits() ──────────────────────────────────────────────────────────


class TestReduceVisits:
    """Subsetting to the reduced sampling program."""

    def test_keeps_visits_1_3_5(self, observations):
        reduced = reduce_visits(observations)
        assert sorted(reduced["visit"].unique().to_list()) == [1, 3, 5]
        assert reduced.height == 16 * 2 * 3

    def test_input_untouched(self, observations):
        before = observations.height
        reduce_visits(observations)
        assert observations.height == before
        assert sorted(observations["visit"].unique().to_list()) == [1, 2, 3, 4, 5]

    def test_custom_keep(self, observations):
        assert reduce_visits(observations, keep=(2,)).height == 32

    def test_absent_visit_raises(self, observations):
        with pytest.raises(InvalidInputError, match=r"\[6\]"):
            reduce_visits(observations, keep=(1, 6))

    def test_empty_keep_raises(self, observations):
        with pytest.raises(InvalidInputError, match="No observations remain"):
            reduce_visits(observations, keep=())
