"""
Tests for the visit-reduction batch in analysis/01_visit_reduction/visit_reduction.py.

The batch is exercised with an injected fit function returning synthetic
posteriors, so the orchestration (seeding, failure isolation, error context,
pairing of full and reduced fits, output tables) is tested without MCMC.

Run: uv run pytest tests/test_visit_reduction.py -v
"""

import json
import sys
from pathlib import Path

import arviz as az
import numpy as np
import polars as pl
import pytest
import xarray as xr

sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.anova import PosteriorFit
from analysis.model_spec import FactorChoice, FitTag, SamplerConfig
from analysis.visit_reduction import (
    FitFailure,
    build_scenarios,
    comparison_overview,
    fit_diagnostics_table,
    main,
    parse_args,
    run_comparisons,
    run_fits,
)
from wetflux.errors import InvalidInputError, SamplingError

CONFIG = SamplerConfig(chains=2, tune=10, draws=50, seed=100)


class FakeFitter:
    """Stands in for fit_model: records calls, returns label-keyed posteriors."""

    def __init__(self, fail: set[FitTag] | None = None, warn: set[FitTag] | None = None):
        self.fail = fail or set()
        self.warn = warn or set()
        self.calls: list[tuple[FitTag, SamplerConfig]] = []

    def __call__(self, spec, config, tag):
        self.calls.append((tag, config))
        if tag in self.fail:
            raise SamplingError("chain 2 hit NaN", **tag.as_context())
        rng = np.random.default_rng(config.seed)
        shape = (config.chains, config.draws)

        def vector(dim, labels):
            return xr.DataArray(
                rng.normal(size=(*shape, len(labels))),
                dims=["chain", "draw", dim],
                coords={dim: list(labels)},
            )

        posterior = xr.Dataset(
            {
                **{
                    name: xr.DataArray(rng.normal(size=shape), dims=["chain", "draw"])
                    for name in ("mu", "alpha_hyper", "gamma_hyper", "sigma")
                },
                "alpha": vector("year", spec.factor1_labels),
                "beta": vector("level", spec.factor2_labels),
                "gamma": vector("cell", spec.interaction_labels),
            }
        )
        warnings = ("R-hat for beta = 1.050 (>= 1.01)",) if tag in self.warn else ()
        convergence = {
            "beta_rhat_max": 1.05 if warnings else 1.001,
            "mu_rhat_max": 1.0,
            "beta_ess_min": 900.0,
            "mu_ess_min": 1200.0,
            "divergences": 0,
            "problems": list(warnings),
            "all_ok": not warnings,
        }
        return PosteriorFit(
            tag=tag,
            spec=spec,
            idata=az.InferenceData(posterior=posterior),
            convergence=convergence,
            warnings=warnings,
            sampling_time=0.25,
        )


# ── parse_args() ─────────────────────────────────────────────────────────────


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.chains == 4
        assert args.tune == 2000
        assert args.draws == 1000
        assert args.seed == 42
        assert args.gases == ["co2", "ch4", "n2o"]
        assert args.cores is None

    def test_overrides(self):
        args = parse_args(["--draws", "200", "--gases", "ch4", "--results-root", "/tmp/x"])
        assert args.draws == 200
        assert args.gases == ["ch4"]
        assert args.results_root == "/tmp/x"

    def test_unknown_gas_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["--gases", "h2o"])


# ── build_scenarios() ────────────────────────────────────────────────────────


class TestBuildScenarios:
    def test_two_scenarios(self, observations):
        scenarios = build_scenarios(observations)
        assert list(scenarios) == ["full", "reduced"]
        assert scenarios["full"] is observations
        assert scenarios["reduced"].height == 96


# ── run_fits() ───────────────────────────────────────────────────────────────


class TestRunFits:
    """Twelve fits, one config, isolated failures."""

    def test_twelve_fits(self, observations):
        fitter = FakeFitter()
        fits, failures = run_fits(observations, CONFIG, fit_fn=fitter)
        assert len(fits) == 12
        assert failures == []
        assert {(t.gas, t.question, t.scenario) for t in fits} == {
            (g, q, s)
            for g in ("co2", "ch4", "n2o")
            for q in ("visit", "site")
            for s in ("full", "reduced")
        }

    def test_shared_config_distinct_seeds(self, observations):
        fitter = FakeFitter()
        run_fits(observations, CONFIG, fit_fn=fitter)
        configs = [c for _, c in fitter.calls]
        assert [c.seed for c in configs] == list(range(100, 112))
        assert {(c.chains, c.tune, c.draws) for c in configs} == {(2, 10, 50)}

    def test_config_not_mutated(self, observations):
        run_fits(observations, CONFIG, fit_fn=FakeFitter())
        assert CONFIG.seed == 100

    def test_sampling_error_isolated(self, observations):
        bad = FitTag("ch4", "visit", "reduced")
        fits, failures = run_fits(observations, CONFIG, fit_fn=FakeFitter(fail={bad}))
        assert len(fits) == 11
        assert bad not in fits
        assert failures == [
            FitFailure(bad, "SamplingError", "chain 2 hit NaN [gas=ch4, question=visit, "
                       "scenario=reduced]")
        ]

    def test_failure_does_not_stop_later_fits(self, observations):
        first = FitTag("co2", "visit", "full")
        fitter = FakeFitter(fail={first})
        fits, _ = run_fits(observations, CONFIG, fit_fn=fitter)
        assert len(fitter.calls) == 12
        assert FitTag("n2o", "site", "reduced") in fits

    def test_invalid_input_propagates_with_context(self, observations):
        bad = observations.with_columns(pl.lit(0.0).alias("n2o"))
        with pytest.raises(InvalidInputError) as exc:
            run_fits(bad, CONFIG, fit_fn=FakeFitter())
        assert exc.value.gas == "n2o"
        assert exc.value.question == "visit"
        assert exc.value.scenario == "full"

    def test_subset_of_gases(self, observations):
        fits, _ = run_fits(
            observations,
            CONFIG,
            gases=["co2"],
            factors=(FactorChoice.BY_SITE,),
            fit_fn=FakeFitter(),
        )
        assert set(fits) == {FitTag("co2", "site", "full"), FitTag("co2", "site", "reduced")}

    def test_reduced_fit_sees_three_visits(self, observations):
        fitter = FakeFitter()
        fits, _ = run_fits(observations, CONFIG, gases=["co2"], fit_fn=fitter)
        reduced = fits[FitTag("co2", "visit", "reduced")]
        assert reduced.spec.factor2_labels == ("Visit 1", "Visit 3", "Visit 5")


# ── run_comparisons() ────────────────────────────────────────────────────────


class TestRunComparisons:
    def test_pairs_full_with_reduced(self, observations):
        fits, _ = run_fits(observations, CONFIG, fit_fn=FakeFitter())
        differences = run_comparisons(fits)
        assert len(differences) == 6
        summary = differences[("co2", "visit")]
        assert summary.columns[:2] == ["gas", "question"]
        assert set(summary["gas"].to_list()) == {"co2"}
        # 4 scalars + 2 years + 3 shared visits + 6 shared cells
        assert summary.height == 15

    def test_site_question_keeps_all_sites(self, observations):
        fits, _ = run_fits(observations, CONFIG, gases=["ch4"], fit_fn=FakeFitter())
        summary = run_comparisons(fits)[("ch4", "site")]
        assert summary.height == 4 + 2 + 16 + 32

    def test_missing_partner_skipped(self, observations):
        bad = FitTag("co2", "site", "full")
        fits, _ = run_fits(observations, CONFIG, gases=["co2"], fit_fn=FakeFitter(fail={bad}))
        differences = run_comparisons(fits)
        assert list(differences) == [("co2", "visit")]


# ── Output tables ────────────────────────────────────────────────────────────


class TestDiagnosticsTable:
    def test_statuses(self, observations):
        ok_warn = FitTag("co2", "visit", "full")
        failed = FitTag("co2", "site", "reduced")
        fits, failures = run_fits(
            observations,
            CONFIG,
            gases=["co2"],
            fit_fn=FakeFitter(fail={failed}, warn={ok_warn}),
        )
        table = fit_diagnostics_table(fits, failures)
        assert table.height == 4
        status = {(r["question"], r["scenario"]): r["status"] for r in table.iter_rows(named=True)}
        assert status[("visit", "full")] == "convergence warning"
        assert status[("site", "reduced")] == "failed"
        assert status[("visit", "reduced")] == "ok"

    def test_worst_values(self, observations):
        warn = FitTag("co2", "visit", "full")
        fits, failures = run_fits(
            observations, CONFIG, gases=["co2"], fit_fn=FakeFitter(warn={warn})
        )
        row = fit_diagnostics_table(fits, failures).filter(
            (pl.col("question") == "visit") & (pl.col("scenario") == "full")
        )
        assert row["rhat_max"].item() == 1.05
        assert row["ess_min"].item() == 900.0
        assert row["n_draws"].item() == 100
        assert "R-hat for beta" in row["warnings"].item()

    def test_empty(self):
        table = fit_diagnostics_table({}, [])
        assert table.height == 0
        assert "status" in table.columns


class TestComparisonOverview:
    def test_counts(self):
        summary = pl.DataFrame(
            {
                "median": [0.1, -2.0, 0.0],
                "contains_zero_50": [True, False, True],
                "contains_zero_90": [True, False, True],
            }
        )
        overview = comparison_overview({("co2", "visit"): summary})
        row = overview.row(0, named=True)
        assert row["n_matched"] == 3
        assert row["n_shifted_90"] == 1
        assert row["n_contains_zero_90"] == 2
        assert row["max_abs_median"] == 2.0

    def test_empty(self):
        assert comparison_overview({}).height == 0


# ── main() ───────────────────────────────────────────────────────────────────


class TestMain:
    """End to end with the fit step replaced."""

    def test_writes_outputs(self, tmp_path, observations, monkeypatch):
        import importlib

        module = importlib.import_module("analysis.01_visit_reduction.visit_reduction")
        fitter = FakeFitter(fail={FitTag("ch4", "site", "full")})
        original = module.run_fits

        def run_fits_with_fake(obs, config, gases):
            return original(obs, config, gases, fit_fn=fitter)

        monkeypatch.setattr(module, "run_fits", run_fits_with_fake)

        data_path = tmp_path / "obs.csv"
        observations.write_csv(data_path)
        results = tmp_path / "results"
        module.main(
            ["--data", str(data_path), "--results-root", str(results), "--draws", "20",
             "--chains", "2", "--gases", "co2", "ch4"]
        )

        run_dir = results / "01_visit_reduction" / "latest"
        assert (run_dir / "data" / "fit_diagnostics.parquet").exists()
        assert (run_dir / "data" / "difference_summary.parquet").exists()
        assert (run_dir / "data" / "posterior_summary.parquet").exists()
        assert (run_dir / "01_visit_reduction_report.html").exists()

        manifest = json.loads((run_dir / "filtering_manifest.json").read_text())
        assert manifest["n_fits_ok"] == 7
        assert manifest["n_fits_failed"] == 1
        assert manifest["failed_fits"] == ["ch4/site/full"]
        assert manifest["sampler"]["draws"] == 20

        diffs = pl.read_parquet(run_dir / "data" / "difference_summary.parquet")
        assert set(zip(diffs["gas"], diffs["question"])) == {
            ("co2", "visit"),
            ("co2", "site"),
            ("ch4", "visit"),
        }
        assert (results / "01_visit_reduction" / "README.md").exists()

    def test_bad_data_fails_run(self, tmp_path):
        results = tmp_path / "results"
        with pytest.raises(FileNotFoundError):
            main(["--data", str(tmp_path / "nope.csv"), "--results-root", str(results)])
        assert not (results / "01_visit_reduction" / "latest").exists()
