"""Posterior comparison engine: full-data fit vs reduced-data fit.

Differences are taken draw-for-draw (draw k of A minus draw k of B over the
flattened chain x draw axis) for parameters matched by semantic key. Keys are
the coordinate labels carried on every indexed parameter ("Visit 3",
"2023-Visit1", "S07", "2022"), never integer positions: the reduced scenario
has fewer visit levels and interaction cells, so position 2 in one fit is not
position 2 in the other.

A difference whose 90% interval contains zero is read as negligible
information loss from the reduction; an interval excluding zero is a
detectable shift.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.anova import PARAM_DIMS, SCALAR_PARAMS, PosteriorFit
except ModuleNotFoundError:
    from anova import PARAM_DIMS, SCALAR_PARAMS, PosteriorFit  # type: ignore[no-redef]

from wetflux.errors import MismatchedParameterError

# Parameters compared by default: globals first, then indexed effects
COMPARED_PARAMS = [*SCALAR_PARAMS, "alpha", "beta", "gamma"]

SUMMARY_PERCENTILES = {"median": 50, "q25": 25, "q75": 75, "q05": 5, "q95": 95}


@dataclass(frozen=True)
class ParameterMatch:
    """``param[key_a]`` in sample set A is the same quantity as ``param[key_b]`` in B.

    Keys are None for scalar parameters (mu, sigma, hyper-means).
    """

    param: str
    key_a: str | None = None
    key_b: str | None = None

    @classmethod
    def same_key(cls, param: str, key: str | None = None) -> ParameterMatch:
        return cls(param=param, key_a=key, key_b=key)

    @property
    def label(self) -> str:
        if self.key_a is None:
            return self.param
        if self.key_a == self.key_b:
            return f"{self.param}[{self.key_a}]"
        return f"{self.param}[{self.key_a} ↔ {self.key_b}]"


def _fit_context(fit_a: PosteriorFit, fit_b: PosteriorFit) -> dict[str, str]:
    return {
        "gas": fit_a.tag.gas,
        "question": fit_a.tag.question,
        "scenario": f"{fit_a.tag.scenario} vs {fit_b.tag.scenario}",
    }


def parameter_labels(fit: PosteriorFit, param: str) -> tuple[str, ...]:
    """Semantic keys of an indexed parameter; empty tuple for scalars.

    Raises:
        MismatchedParameterError: If the parameter is not in the posterior.
    """
    posterior = fit.idata.posterior
    if param not in posterior:
        msg = f"Parameter {param!r} not in posterior {fit.tag}"
        raise MismatchedParameterError(msg, **fit.tag.as_context())
    dims = [d for d in posterior[param].dims if d not in ("chain", "draw")]
    if not dims:
        return ()
    return tuple(str(v) for v in posterior[param].coords[dims[0]].values)


def parameter_draws(fit: PosteriorFit, param: str, key: str | None = None) -> np.ndarray:
    """Flattened (chain-major) draws of one parameter element, selected by key.

    Raises:
        MismatchedParameterError: If the parameter or key does not exist, or a
            key is given for a scalar / omitted for an indexed parameter.
    """
    labels = parameter_labels(fit, param)
    da = fit.idata.posterior[param]
    if not labels:
        if key is not None:
            msg = f"{param!r} is scalar in {fit.tag}; got key {key!r}"
            raise MismatchedParameterError(msg, **fit.tag.as_context())
        return np.asarray(da.values, dtype=np.float64).reshape(-1)

    if key is None:
        msg = f"{param!r} is indexed in {fit.tag}; a key is required"
        raise MismatchedParameterError(msg, **fit.tag.as_context())
    if key not in labels:
        msg = f"No {param}[{key}] in {fit.tag} (available: {list(labels)})"
        raise MismatchedParameterError(msg, **fit.tag.as_context())

    dim = PARAM_DIMS.get(param) or [d for d in da.dims if d not in ("chain", "draw")][0]
    selected = da.sel({dim: key}).transpose("chain", "draw")
    return np.asarray(selected.values, dtype=np.float64).reshape(-1)


def difference_draws(
    fit_a: PosteriorFit,
    fit_b: PosteriorFit,
    match: ParameterMatch,
) -> np.ndarray:
    """Draw-for-draw difference A − B for one matched parameter.

    Raises:
        MismatchedParameterError: If either side lacks the parameter/key, or
            the two sample sets have different draw counts.
    """
    context = _fit_context(fit_a, fit_b)
    try:
        a = parameter_draws(fit_a, match.param, match.key_a)
        b = parameter_draws(fit_b, match.param, match.key_b)
    except MismatchedParameterError as e:
        raise e.with_context(**context) from None

    if a.shape != b.shape:
        msg = (
            f"Draw counts differ for {match.label}: {a.size} ({fit_a.tag}) vs "
            f"{b.size} ({fit_b.tag})"
        )
        raise MismatchedParameterError(msg, **context)
    return a - b


def summarize_draws(draws: np.ndarray) -> dict[str, float]:
    """Median, 50% interval (q25–q75), and 90% interval (q05–q95)."""
    values = np.percentile(draws, list(SUMMARY_PERCENTILES.values()))
    return {name: float(v) for name, v in zip(SUMMARY_PERCENTILES, values)}


def match_parameters(
    fit_a: PosteriorFit,
    fit_b: PosteriorFit,
    params: list[str] | None = None,
) -> list[ParameterMatch]:
    """Explicit matches for every key present in BOTH fits.

    Keys present in only one fit (e.g. "2023-Visit2" when B dropped visit 2)
    are excluded, never paired with something else. Order follows fit A.
    """
    matches: list[ParameterMatch] = []
    for param in COMPARED_PARAMS if params is None else params:
        labels_a = parameter_labels(fit_a, param)
        labels_b = parameter_labels(fit_b, param)
        if not labels_a and not labels_b:
            matches.append(ParameterMatch.same_key(param))
            continue
        shared = set(labels_b)
        kept = [k for k in labels_a if k in shared]
        excluded = [k for k in labels_a if k not in shared] + [
            k for k in labels_b if k not in set(labels_a)
        ]
        matches.extend(ParameterMatch.same_key(param, k) for k in kept)
        if excluded:
            print(f"  {param}: {len(kept)} matched, excluded unmatched keys {excluded}")
    return matches


def compare_posteriors(
    fit_a: PosteriorFit,
    fit_b: PosteriorFit,
    matches: list[ParameterMatch],
) -> pl.DataFrame:
    """Summarize A − B for each match.

    Returns DataFrame with param, key, label, median, q25, q75, q05, q95,
    n_draws, contains_zero_50, contains_zero_90 (one row per match, in order).

    Raises:
        MismatchedParameterError: If the fits model different questions, or
            any match cannot be resolved in both fits.
    """
    if fit_a.spec.factor is not fit_b.spec.factor:
        msg = (
            f"Cannot compare fits of different questions: {fit_a.spec.factor.question} "
            f"vs {fit_b.spec.factor.question}"
        )
        raise MismatchedParameterError(msg, **_fit_context(fit_a, fit_b))

    rows = []
    for match in matches:
        diff = difference_draws(fit_a, fit_b, match)
        stats = summarize_draws(diff)
        rows.append(
            {
                "param": match.param,
                "key": match.key_a,
                "label": match.label,
                **stats,
                "n_draws": int(diff.size),
                "contains_zero_50": stats["q25"] <= 0.0 <= stats["q75"],
                "contains_zero_90": stats["q05"] <= 0.0 <= stats["q95"],
            }
        )

    schema = {
        "param": pl.Utf8,
        "key": pl.Utf8,
        "label": pl.Utf8,
        **{name: pl.Float64 for name in SUMMARY_PERCENTILES},
        "n_draws": pl.Int64,
        "contains_zero_50": pl.Boolean,
        "contains_zero_90": pl.Boolean,
    }
    return pl.DataFrame(rows, schema=schema)


def shifted_parameters(summary: pl.DataFrame) -> pl.DataFrame:
    """Rows whose 90% difference interval excludes zero."""
    return summary.filter(~pl.col("contains_zero_90"))


def summarize_posterior(fit: PosteriorFit, params: list[str] | None = None) -> pl.DataFrame:
    """Per-element posterior median and 50%/90% intervals, keyed by label.

    Returns DataFrame with gas, question, scenario, param, key, mean, sd,
    median, q25, q75, q05, q95.
    """
    rows = []
    for param in COMPARED_PARAMS if params is None else params:
        labels = parameter_labels(fit, param)
        for key in labels or (None,):
            draws = parameter_draws(fit, param, key)
            rows.append(
                {
                    **fit.tag.as_context(),
                    "param": param,
                    "key": key,
                    "mean": float(draws.mean()),
                    "sd": float(draws.std()),
                    **summarize_draws(draws),
                }
            )
    return pl.DataFrame(rows, infer_schema_length=None)
