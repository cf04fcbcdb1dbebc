"""Visit-reduction HTML report builder.

Tables only: model and sampler settings, per-fit diagnostics (convergence
warnings and failed fits surface here), an overview of how many matched
parameters shifted per gas x question, and the full difference tables.

Usage (called from visit_reduction.py):
    from analysis.visit_reduction_report import build_visit_reduction_report
    build_visit_reduction_report(ctx.report, config=..., diagnostics=..., ...)
"""

from __future__ import annotations

import polars as pl

try:
    from analysis.report import ReportBuilder, TextSection
except ModuleNotFoundError:
    from report import ReportBuilder, TextSection  # type: ignore[no-redef]

try:
    from analysis.model_spec import MODEL_PRIORS, SamplerConfig
except ModuleNotFoundError:
    from model_spec import MODEL_PRIORS, SamplerConfig  # type: ignore[no-redef]

from wetflux.config import GAS_LABELS, REDUCED_VISITS


def build_visit_reduction_report(
    report: ReportBuilder,
    *,
    config: SamplerConfig,
    diagnostics: pl.DataFrame,
    overview: pl.DataFrame,
    differences: dict[tuple[str, str], pl.DataFrame],
) -> None:
    """Build the full visit-reduction HTML report by adding sections."""
    _add_settings(report, config)
    _add_diagnostics_table(report, diagnostics)
    _add_overview_table(report, overview)

    for gas, question in sorted(differences):
        _add_difference_table(report, differences[(gas, question)], gas, question)

    print(f"  Report: {report.n_sections} sections added")


# ── Private section builders ─────────────────────────────────────────────────


def _add_settings(report: ReportBuilder, config: SamplerConfig) -> None:
    priors = pl.DataFrame(
        {
            "parameter": list(MODEL_PRIORS),
            "prior": [p.describe() for p in MODEL_PRIORS.values()],
        }
    )
    report.add_table(
        "settings",
        "Model and Sampler Settings",
        priors,
        title="Priors",
        subtitle=config.describe(),
        caption=(
            "alpha = alpha_hyper + alpha_raw and gamma = gamma_hyper + gamma_raw. "
            f"Reduced scenario keeps visits {', '.join(map(str, REDUCED_VISITS))}."
        ),
    )


def _flagged_rows(mask: pl.Series) -> list[int]:
    return [i for i, flagged in enumerate(mask.to_list()) if flagged]


def _add_diagnostics_table(report: ReportBuilder, diagnostics: pl.DataFrame) -> None:
    if diagnostics.height == 0:
        return
    flagged = _flagged_rows(diagnostics["status"] != "ok")
    report.add_table(
        "diagnostics",
        "Fit Diagnostics",
        diagnostics,
        title="Convergence per fit",
        subtitle=f"{len(flagged)} of {diagnostics.height} fits flagged or failed",
        column_labels={
            "rhat_max": "Max R-hat",
            "ess_min": "Min ESS",
            "sampling_time_s": "Time (s)",
        },
        number_formats={"rhat_max": ".3f", "ess_min": ",.0f", "sampling_time_s": ".1f"},
        highlight_rows=flagged,
    )


def _add_overview_table(report: ReportBuilder, overview: pl.DataFrame) -> None:
    if overview.height == 0:
        report.add(
            TextSection(
                id="overview",
                title="Full vs Reduced Overview",
                html="<p>No gas/question had both a full and a reduced fit to compare.</p>",
            )
        )
        return
    report.add_table(
        "overview",
        "Full vs Reduced Overview",
        overview.with_columns(pl.col("gas").replace(GAS_LABELS)),
        title="Matched parameters whose difference interval excludes zero",
        column_labels={
            "n_matched": "Matched",
            "n_contains_zero_50": "50% CI ∋ 0",
            "n_contains_zero_90": "90% CI ∋ 0",
            "n_shifted_90": "Shifted (90%)",
            "max_abs_median": "Max |median|",
        },
        number_formats={"max_abs_median": ".3f"},
        highlight_rows=_flagged_rows(overview["n_shifted_90"] > 0),
        caption="Differences are full minus reduced, per draw.",
    )


def _add_difference_table(
    report: ReportBuilder,
    summary: pl.DataFrame,
    gas: str,
    question: str,
) -> None:
    display = summary.select(
        "label", "median", "q25", "q75", "q05", "q95", "contains_zero_90"
    )
    report.add_table(
        f"diff-{gas}-{question}",
        f"{GAS_LABELS.get(gas, gas)} by {question}: Full − Reduced",
        display,
        column_labels={
            "label": "Parameter",
            "median": "Median",
            "q25": "25%",
            "q75": "75%",
            "q05": "5%",
            "q95": "95%",
            "contains_zero_90": "90% CI ∋ 0",
        },
        number_formats={c: ".3f" for c in ("median", "q25", "q75", "q05", "q95")},
        highlight_rows=_flagged_rows(~display["contains_zero_90"]),
        caption="Shaded rows: 90% interval of the difference excludes zero.",
    )
