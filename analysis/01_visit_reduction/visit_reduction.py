"""
Wetland GHG — Can Five Visits per Year Become Three?

Fits a hierarchical two-way ANOVA to log CO2, CH4, and N2O concentrations at
16 restoration sites over two years, once on the full 5-visit data and once on
a reduced 3-visit subset (visits 1, 3, 5), for two questions: do
concentrations differ among visits, and do they differ among sites? Matched
parameters of the full and reduced posteriors are differenced draw-for-draw to
quantify what the reduction costs.

3 gases x 2 questions x 2 scenarios = 12 independent fits. A fit whose sampler
fails is reported and skipped; the rest of the batch continues.

Usage:
  uv run python analysis/01_visit_reduction/visit_reduction.py [--data data/ghg_concentrations.csv]
      [--draws 1000] [--tune 2000] [--chains 4] [--seed 42] [--gases co2 ch4]

Outputs (in results/01_visit_reduction/<date>/):
  - data/:   Parquet files (posterior summaries, full-vs-reduced differences)
  - filtering_manifest.json, run_info.json, run_log.txt
  - 01_visit_reduction_report.html
"""

import argparse
import dataclasses
import sys
from dataclasses import dataclass
from pathlib import Path

import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext
except ModuleNotFoundError:
    from run_context import RunContext

try:
    from analysis.model_spec import (
        ALL_FACTORS,
        MODEL_PRIORS,
        N_CHAINS,
        N_DRAWS,
        N_TUNE,
        RANDOM_SEED,
        FactorChoice,
        FitTag,
        SamplerConfig,
    )
except ModuleNotFoundError:
    from model_spec import (  # type: ignore[no-redef]
        ALL_FACTORS,
        MODEL_PRIORS,
        N_CHAINS,
        N_DRAWS,
        N_TUNE,
        RANDOM_SEED,
        FactorChoice,
        FitTag,
        SamplerConfig,
    )

try:
    from analysis.design import build_model_spec, describe_spec
except ModuleNotFoundError:
    from design import build_model_spec, describe_spec  # type: ignore[no-redef]

try:
    from analysis.anova import (
        ESS_THRESHOLD,
        MAX_DIVERGENCES,
        RHAT_THRESHOLD,
        PosteriorFit,
        fit_model,
        print_header,
    )
except ModuleNotFoundError:
    from anova import (  # type: ignore[no-redef]
        ESS_THRESHOLD,
        MAX_DIVERGENCES,
        RHAT_THRESHOLD,
        PosteriorFit,
        fit_model,
        print_header,
    )

try:
    from analysis.comparison import compare_posteriors, match_parameters, summarize_posterior
except ModuleNotFoundError:
    from comparison import (  # type: ignore[no-redef]
        compare_posteriors,
        match_parameters,
        summarize_posterior,
    )

try:
    from analysis.visit_reduction_report import build_visit_reduction_report
except ModuleNotFoundError:
    from visit_reduction_report import build_visit_reduction_report  # type: ignore[no-redef]

from wetflux.config import (
    DATA_PATH,
    PACKAGE_VERSION,
    GAS_LABELS,
    GASES,
    REDUCED_VISITS,
    SCENARIO_FULL,
    SCENARIO_REDUCED,
)
from wetflux.errors import InvalidInputError, SamplingError
from wetflux.observations import load_observations, reduce_visits

# ── Primer ───────────────────────────────────────────────────────────────────

VISIT_REDUCTION_PRIMER = """\
# Visit Reduction: Five Visits vs Three

## Purpose

Decide whether the wetland monitoring program can drop from five visits per
site per year to three (visits 1, 3 and 5) without changing what the data say
about CO2, CH4 and N2O concentrations.

## Method

For each gas and each question (differences among visits; differences among
sites) the same hierarchical model is fit to the full data and to the
reduced data:

```
mu          ~ Normal(0, 3)
alpha_hyper ~ Normal(0, 1);  alpha = alpha_hyper + alpha_raw,  alpha_raw ~ Normal(0, 1)  [year]
beta        ~ Normal(0, 1)                                                          [visit or site]
gamma_hyper ~ Normal(0, 1);  gamma = gamma_hyper + gamma_raw,  gamma_raw ~ Normal(0, 1)  [year x visit/site]
sigma       ~ Exponential(1)
log(conc)   ~ Normal(mu + alpha[year] + beta[level] + gamma[cell], sigma)
```

Year and interaction effects are partially pooled with a fixed unit variance;
visit/site effects are unpooled. Sampling: nutpie NUTS, 4 chains x 1000 draws
after 2000 warmup.

Matched parameters (same name, same year/visit/site/cell label) are
differenced draw-for-draw, full minus reduced. Cells for visits 2 and 4 exist
only in the full fit and are excluded.

## Outputs

| File | Description |
|------|-------------|
| `posterior_summary.parquet` | Median and 50%/90% intervals per parameter, every fit |
| `difference_summary.parquet` | Full − reduced differences per matched parameter |
| `fit_diagnostics.parquet` | R-hat, ESS, divergences, warnings per fit |

## Interpretation Guide

- Difference median near 0 with both intervals spanning 0: negligible
  information loss from the reduction.
- 90% interval excluding 0: the reduction shifts that parameter detectably.
- A fit flagged with convergence warnings should not be trusted until rerun
  with more warmup.
"""

# ── Helpers ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FitFailure:
    """A fit that aborted with SamplingError. The batch continued without it."""

    tag: FitTag
    error_type: str
    message: str


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Wetland GHG visit-reduction analysis")
    parser.add_argument("--data", default=str(DATA_PATH), help="Observations CSV")
    parser.add_argument("--results-root", default=None, help="Override results directory")
    parser.add_argument("--draws", type=int, default=N_DRAWS, help="MCMC draws kept per chain")
    parser.add_argument("--tune", type=int, default=N_TUNE, help="MCMC warmup draws (discarded)")
    parser.add_argument("--chains", type=int, default=N_CHAINS, help="Number of MCMC chains")
    parser.add_argument("--seed", type=int, default=RANDOM_SEED, help="Base random seed")
    parser.add_argument(
        "--cores", type=int, default=None, help="CPU cores for sampling (default: chains)"
    )
    parser.add_argument(
        "--gases", nargs="+", choices=list(GASES), default=list(GASES), help="Gases to model"
    )
    return parser.parse_args(argv)


def build_scenarios(
    observations: pl.DataFrame,
    reduced_visits: tuple[int, ...] = REDUCED_VISITS,
) -> dict[str, pl.DataFrame]:
    """Full table and reduced-visit subset. Neither is modified later."""
    return {
        SCENARIO_FULL: observations,
        SCENARIO_REDUCED: reduce_visits(observations, reduced_visits),
    }


# ── Batch ────────────────────────────────────────────────────────────────────


def run_fits(
    observations: pl.DataFrame,
    config: SamplerConfig,
    gases: tuple[str, ...] | list[str] = GASES,
    factors: tuple[FactorChoice, ...] = ALL_FACTORS,
    reduced_visits: tuple[int, ...] = REDUCED_VISITS,
    fit_fn=fit_model,
) -> tuple[dict[FitTag, PosteriorFit], list[FitFailure]]:
    """Run every gas x question x scenario fit with one shared sampler config.

    Each fit gets seed ``config.seed + i`` (i = position in the batch), so the
    fits are independently seeded but reproducible.

    Returns (fits keyed by tag, failures). A SamplingError aborts only its own
    fit. InvalidInputError propagates with gas/question/scenario context.
    """
    scenarios = build_scenarios(observations, reduced_visits)
    fits: dict[FitTag, PosteriorFit] = {}
    failures: list[FitFailure] = []

    i = 0
    for gas in gases:
        for factor in factors:
            for scenario, table in scenarios.items():
                tag = FitTag(gas=gas, question=factor.question, scenario=scenario)
                try:
                    spec = build_model_spec(table, gas, factor)
                except InvalidInputError as e:
                    raise e.with_context(**tag.as_context()) from e

                print_header(f"MODEL — {GAS_LABELS.get(gas, gas)} by {factor.question}, {scenario}")
                describe_spec(spec)
                fit_config = dataclasses.replace(config, seed=config.seed + i)
                i += 1
                try:
                    fits[tag] = fit_fn(spec, fit_config, tag)
                except SamplingError as e:
                    print(f"\n  WARNING: fit {tag} failed: {e}")
                    print("  Continuing with the remaining fits.")
                    failures.append(FitFailure(tag, type(e).__name__, str(e)))

    print(f"\n  Fits completed: {len(fits)}, failed: {len(failures)}")
    return fits, failures


def run_comparisons(fits: dict[FitTag, PosteriorFit]) -> dict[tuple[str, str], pl.DataFrame]:
    """Full − reduced difference summaries for every gas x question with both fits.

    Returns dict keyed by (gas, question); each table has gas and question
    columns prepended.
    """
    results: dict[tuple[str, str], pl.DataFrame] = {}
    pairs = sorted({(t.gas, t.question) for t in fits})
    for gas, question in pairs:
        full = fits.get(FitTag(gas, question, SCENARIO_FULL))
        reduced = fits.get(FitTag(gas, question, SCENARIO_REDUCED))
        if full is None or reduced is None:
            print(f"  Skipping comparison {gas}/{question}: a fit is missing")
            continue

        print_header(f"COMPARISON — {GAS_LABELS.get(gas, gas)} by {question}")
        matches = match_parameters(full, reduced)
        summary = compare_posteriors(full, reduced, matches)
        n_zero = int(summary["contains_zero_90"].sum())
        print(
            f"  {summary.height} matched parameters; 90% interval contains 0 for "
            f"{n_zero}/{summary.height}"
        )
        results[(gas, question)] = summary.select(
            pl.lit(gas).alias("gas"), pl.lit(question).alias("question"), pl.all()
        )
    return results


def fit_diagnostics_table(
    fits: dict[FitTag, PosteriorFit],
    failures: list[FitFailure],
) -> pl.DataFrame:
    """One row per attempted fit: status, worst R-hat / ESS, divergences, warnings."""
    rows = []
    for tag, fit in fits.items():
        conv = fit.convergence
        rhats = [v for k, v in conv.items() if k.endswith("_rhat_max")]
        ess = [v for k, v in conv.items() if k.endswith("_ess_min")]
        rows.append(
            {
                **tag.as_context(),
                "status": "ok" if fit.converged else "convergence warning",
                "n_draws": fit.n_draws,
                "rhat_max": max(rhats) if rhats else None,
                "ess_min": min(ess) if ess else None,
                "divergences": conv.get("divergences"),
                "sampling_time_s": round(fit.sampling_time, 1),
                "warnings": "; ".join(fit.warnings),
            }
        )
    for failure in failures:
        rows.append(
            {
                **failure.tag.as_context(),
                "status": "failed",
                "n_draws": 0,
                "rhat_max": None,
                "ess_min": None,
                "divergences": None,
                "sampling_time_s": None,
                "warnings": failure.message,
            }
        )
    schema = {
        "gas": pl.Utf8,
        "question": pl.Utf8,
        "scenario": pl.Utf8,
        "status": pl.Utf8,
        "n_draws": pl.Int64,
        "rhat_max": pl.Float64,
        "ess_min": pl.Float64,
        "divergences": pl.Int64,
        "sampling_time_s": pl.Float64,
        "warnings": pl.Utf8,
    }
    return pl.DataFrame(rows, schema=schema).sort("gas", "question", "scenario")


def comparison_overview(differences: dict[tuple[str, str], pl.DataFrame]) -> pl.DataFrame:
    """Per gas x question: how many matched parameters shifted detectably."""
    rows = []
    for (gas, question), summary in sorted(differences.items()):
        n = summary.height
        n_zero_90 = int(summary["contains_zero_90"].sum())
        rows.append(
            {
                "gas": gas,
                "question": question,
                "n_matched": n,
                "n_contains_zero_50": int(summary["contains_zero_50"].sum()),
                "n_contains_zero_90": n_zero_90,
                "n_shifted_90": n - n_zero_90,
                "max_abs_median": float(summary["median"].abs().max()) if n else 0.0,
            }
        )
    return pl.DataFrame(
        rows,
        schema={
            "gas": pl.Utf8,
            "question": pl.Utf8,
            "n_matched": pl.Int64,
            "n_contains_zero_50": pl.Int64,
            "n_contains_zero_90": pl.Int64,
            "n_shifted_90": pl.Int64,
            "max_abs_median": pl.Float64,
        },
    )


# ── Main ─────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    config = SamplerConfig(
        chains=args.chains,
        tune=args.tune,
        draws=args.draws,
        seed=args.seed,
        cores=args.cores,
    )
    data_path = Path(args.data)
    results_root = Path(args.results_root) if args.results_root else None

    with RunContext(
        analysis_name="01_visit_reduction",
        params=vars(args),
        results_root=results_root,
        primer=VISIT_REDUCTION_PRIMER,
    ) as ctx:
        print("Wetland GHG Visit Reduction — Five Visits vs Three")
        print(f"Data:    {data_path}")
        print(f"Output:  {ctx.run_dir}")
        print(f"Sampler: {config.describe()}")
        for name, prior in MODEL_PRIORS.items():
            print(f"  {name} ~ {prior.describe()}")

        print_header("LOADING DATA")
        observations = load_observations(data_path)

        fits, failures = run_fits(observations, config, gases=args.gases)
        differences = run_comparisons(fits)

        # ── Tables ──
        print_header("SAVING RESULTS")
        diagnostics = fit_diagnostics_table(fits, failures)
        overview = comparison_overview(differences)
        posterior_frames = [summarize_posterior(fit) for fit in fits.values()]

        ctx.save_parquet(diagnostics, "fit_diagnostics")
        ctx.save_parquet(overview, "comparison_overview")
        if posterior_frames:
            ctx.save_parquet(pl.concat(posterior_frames), "posterior_summary")
        if differences:
            ctx.save_parquet(pl.concat(list(differences.values())), "difference_summary")

        # ── HTML Report ──
        print_header("HTML REPORT")
        ctx.report.title = "Wetland GHG — Can Five Visits per Year Become Three?"
        build_visit_reduction_report(
            ctx.report,
            config=config,
            diagnostics=diagnostics,
            overview=overview,
            differences=differences,
        )

        # ── Manifest ──
        manifest: dict = {
            "analysis": "visit_reduction",
            "package_version": PACKAGE_VERSION,
            "data": str(data_path),
            "n_observations": observations.height,
            "reduced_visits": list(REDUCED_VISITS),
            "sampler": dataclasses.asdict(config),
            "constants": {
                "RHAT_THRESHOLD": RHAT_THRESHOLD,
                "ESS_THRESHOLD": ESS_THRESHOLD,
                "MAX_DIVERGENCES": MAX_DIVERGENCES,
            },
            "priors": {name: prior.describe() for name, prior in MODEL_PRIORS.items()},
            "n_fits_ok": len(fits),
            "n_fits_failed": len(failures),
            "failed_fits": [str(f.tag) for f in failures],
            "convergence_warnings": {
                str(t): list(f.warnings) for t, f in fits.items() if f.warnings
            },
        }
        for row in overview.iter_rows(named=True):
            key = f"{row['gas']}_{row['question']}"
            manifest[f"{key}_n_matched"] = row["n_matched"]
            manifest[f"{key}_n_shifted_90"] = row["n_shifted_90"]

        ctx.save_json(manifest, "filtering_manifest")

        print_header("DONE")
        print(f"  All outputs in: {ctx.run_dir}")


if __name__ == "__main__":
    main()
