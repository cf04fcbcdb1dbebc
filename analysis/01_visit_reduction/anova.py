"""Hierarchical two-way ANOVA for log gas concentration, sampled with nutpie.

Model (one fit per gas x question x scenario):

    mu          ~ Normal(0, 3)
    alpha_hyper ~ Normal(0, 1)
    alpha_raw   ~ Normal(0, 1)        per year
    alpha       = alpha_hyper + alpha_raw
    beta        ~ Normal(0, 1)        per visit or site (unpooled)
    gamma_hyper ~ Normal(0, 1)
    gamma_raw   ~ Normal(0, 1)        per observed (year, factor2) cell
    gamma       = gamma_hyper + gamma_raw
    sigma       ~ Exponential(1)

    log(y_i) ~ Normal(mu + alpha[year_i] + beta[level_i] + gamma[cell_i], sigma)

Year and cell effects are partially pooled toward a learned hyper-mean with a
fixed unit shrinkage variance. There is deliberately no hyper-SD: reported
results depend on this exact prior structure.

Every indexed parameter carries named coordinates (year, level, cell) taken
from the ModelSpec labels, so the posterior can be queried by semantic key.
"""

import sys
import time
import warnings
from dataclasses import dataclass, field
from pathlib import Path

import arviz as az
import numpy as np
import nutpie
import pymc as pm

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.model_spec import (
        FIXED_EFFECT_PRIOR,
        HYPER_MEAN_PRIOR,
        MU_PRIOR,
        RAW_EFFECT_PRIOR,
        SIGMA_PRIOR,
        FitTag,
        ModelSpec,
        SamplerConfig,
    )
except ModuleNotFoundError:
    from model_spec import (  # type: ignore[no-redef]
        FIXED_EFFECT_PRIOR,
        HYPER_MEAN_PRIOR,
        MU_PRIOR,
        RAW_EFFECT_PRIOR,
        SIGMA_PRIOR,
        FitTag,
        ModelSpec,
        SamplerConfig,
    )

from wetflux.errors import ConvergenceWarning, SamplingError

# ── Constants ────────────────────────────────────────────────────────────────

# Rank-normalized split R-hat (Vehtari et al. 2021) and bulk ESS thresholds.
# 400 = 100 per chain x 4 chains.
RHAT_THRESHOLD = 1.01
ESS_THRESHOLD = 400
MAX_DIVERGENCES = 0
BFMI_THRESHOLD = 0.3

CONVERGENCE_VARS = ["mu", "alpha_hyper", "alpha", "beta", "gamma_hyper", "gamma", "sigma"]

# Posterior dimension names for each indexed parameter
PARAM_DIMS = {
    "alpha_raw": "year",
    "alpha": "year",
    "beta": "level",
    "gamma_raw": "cell",
    "gamma": "cell",
}
SCALAR_PARAMS = ["mu", "alpha_hyper", "gamma_hyper", "sigma"]


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


# ── Model Graph ─────────────────────────────────────────────────────────────


def build_anova_graph(spec: ModelSpec) -> pm.Model:
    """Build the hierarchical ANOVA model graph (no sampling).

    ModelSpec codes are 1-based; they are shifted to 0-based indices here.
    Returns the PyMC model for use with nutpie or pm.sample().
    """
    year_idx = spec.factor1 - 1
    level_idx = spec.factor2 - 1
    cell_idx = spec.interaction - 1

    coords = {
        "year": list(spec.factor1_labels),
        "level": list(spec.factor2_labels),
        "cell": list(spec.interaction_labels),
        "obs_id": np.arange(spec.n_obs),
    }

    with pm.Model(coords=coords) as model:
        mu = MU_PRIOR.build("mu")

        # --- Year: random effect around a hyper-mean ---
        alpha_hyper = HYPER_MEAN_PRIOR.build("alpha_hyper")
        alpha_raw = RAW_EFFECT_PRIOR.build("alpha_raw", dims="year")
        alpha = pm.Deterministic("alpha", alpha_hyper + alpha_raw, dims="year")

        # --- Visit or site: fixed effect, no pooling ---
        beta = FIXED_EFFECT_PRIOR.build("beta", dims="level")

        # --- Year x factor2 cells: random effect around a hyper-mean ---
        gamma_hyper = HYPER_MEAN_PRIOR.build("gamma_hyper")
        gamma_raw = RAW_EFFECT_PRIOR.build("gamma_raw", dims="cell")
        gamma = pm.Deterministic("gamma", gamma_hyper + gamma_raw, dims="cell")

        sigma = SIGMA_PRIOR.build("sigma")

        # --- Likelihood ---
        eta = mu + alpha[year_idx] + beta[level_idx] + gamma[cell_idx]
        pm.Normal("log_conc", mu=eta, sigma=sigma, observed=spec.y.copy(), dims="obs_id")

    return model


# ── Sampling ────────────────────────────────────────────────────────────────


def sample_model(
    spec: ModelSpec,
    config: SamplerConfig,
    tag: FitTag | None = None,
) -> tuple[az.InferenceData, float]:
    """Compile the ANOVA graph with nutpie and draw from the posterior.

    Chains run in parallel inside nutpie and are kept separate in the returned
    InferenceData (chain x draw) so split R-hat can be computed before pooling.

    Returns (InferenceData, sampling_time_seconds).

    Raises:
        SamplingError: If compilation or sampling fails, the posterior holds
            non-finite draws, or the draw count is not chains x draws.
    """
    context = tag.as_context() if tag is not None else {}
    model = build_anova_graph(spec)

    print("  Compiling model with nutpie...")
    print(f"  Sampling: {config.describe()}")
    t0 = time.time()
    try:
        compiled = nutpie.compile_pymc_model(model)
        idata = nutpie.sample(
            compiled,
            draws=config.draws,
            tune=config.tune,
            chains=config.chains,
            cores=config.cores,
            seed=config.seed,
            progress_bar=False,
            store_divergences=True,
        )
    except Exception as e:
        msg = f"Sampler did not complete: {type(e).__name__}: {e}"
        raise SamplingError(msg, **context) from e
    sampling_time = time.time() - t0

    posterior = idata.posterior
    n_draws = posterior.sizes["chain"] * posterior.sizes["draw"]
    if n_draws != config.total_draws:
        msg = f"Expected {config.total_draws} draws, sampler returned {n_draws}"
        raise SamplingError(msg, **context)

    for name, values in posterior.data_vars.items():
        if not np.all(np.isfinite(values.values)):
            msg = f"Non-finite draws in {name!r} (numerical overflow)"
            raise SamplingError(msg, **context)

    print(f"  Sampling complete in {sampling_time:.1f}s")
    return idata, sampling_time


# ── Convergence ─────────────────────────────────────────────────────────────


def check_convergence(idata: az.InferenceData, label: str) -> dict:
    """Check R-hat, ESS, divergences, and E-BFMI on the per-chain posterior.

    Returns dict with all diagnostic metrics, ``all_ok``, and ``problems``
    (one human-readable message per failed check).
    """
    print_header(f"CONVERGENCE — {label}")

    diag: dict = {}
    problems: list[str] = []
    available_vars = [v for v in CONVERGENCE_VARS if v in idata.posterior]
    n_chains = len(idata.posterior.chain)

    # R-hat (rank-normalized split R-hat; undefined with a single chain)
    if n_chains > 1:
        rhat = az.rhat(idata, var_names=available_vars)
        for var in available_vars:
            max_rhat = float(rhat[var].max())
            diag[f"{var}_rhat_max"] = max_rhat
            ok = max_rhat < RHAT_THRESHOLD
            print(f"  R-hat ({var}): max = {max_rhat:.4f}  {'OK' if ok else 'WARNING'}")
            if not ok:
                problems.append(f"R-hat for {var} = {max_rhat:.3f} (>= {RHAT_THRESHOLD})")

    # Bulk ESS
    ess = az.ess(idata, var_names=available_vars)
    for var in available_vars:
        min_ess = float(ess[var].min())
        diag[f"{var}_ess_min"] = min_ess
        ok = min_ess > ESS_THRESHOLD
        print(
            f"  ESS ({var}): min = {min_ess:.0f}  {'OK' if ok else 'WARNING'}  "
            f"(per-chain: {min_ess / n_chains:.0f})"
        )
        if not ok:
            problems.append(f"ESS for {var} = {min_ess:.0f} (<= {ESS_THRESHOLD})")

    # Divergences
    divergences = 0
    if hasattr(idata, "sample_stats") and "diverging" in idata.sample_stats:
        divergences = int(idata.sample_stats["diverging"].sum().values)
    diag["divergences"] = divergences
    div_ok = divergences <= MAX_DIVERGENCES
    print(f"  Divergences: {divergences}  {'OK' if div_ok else 'WARNING'}")
    if not div_ok:
        problems.append(f"{divergences} divergent transitions")

    # E-BFMI
    if hasattr(idata, "sample_stats") and "energy" in idata.sample_stats:
        bfmi_values = az.bfmi(idata)
        diag["ebfmi"] = [float(v) for v in bfmi_values]
        for i, v in enumerate(bfmi_values):
            ok = v > BFMI_THRESHOLD
            print(f"  E-BFMI chain {i}: {v:.3f}  {'OK' if ok else 'WARNING'}")
            if not ok:
                problems.append(f"E-BFMI chain {i} = {v:.3f} (<= {BFMI_THRESHOLD})")

    diag["problems"] = problems
    diag["all_ok"] = not problems
    if diag["all_ok"]:
        print("  CONVERGENCE: ALL CHECKS PASSED")
    else:
        print("  CONVERGENCE: SOME CHECKS FAILED — inspect diagnostics")
    return diag


# ── Fit ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PosteriorFit:
    """One completed fit: posterior draws plus the labels and diagnostics that travel with them."""

    tag: FitTag
    spec: ModelSpec
    idata: az.InferenceData
    convergence: dict = field(default_factory=dict)
    warnings: tuple[str, ...] = ()
    sampling_time: float = 0.0

    @property
    def n_draws(self) -> int:
        posterior = self.idata.posterior
        return posterior.sizes["chain"] * posterior.sizes["draw"]

    @property
    def converged(self) -> bool:
        return not self.warnings


def fit_model(spec: ModelSpec, config: SamplerConfig, tag: FitTag) -> PosteriorFit:
    """Sample one model and attach convergence diagnostics.

    Convergence failures are reported as ConvergenceWarning and stored on the
    returned fit; they are never raised.

    Raises:
        SamplingError: See sample_model().
    """
    print_header(f"SAMPLING — {tag}")
    idata, sampling_time = sample_model(spec, config, tag)
    convergence = check_convergence(idata, str(tag))

    messages = tuple(convergence["problems"])
    for message in messages:
        warnings.warn(f"{tag}: {message}", ConvergenceWarning, stacklevel=2)

    return PosteriorFit(
        tag=tag,
        spec=spec,
        idata=idata,
        convergence=convergence,
        warnings=messages,
        sampling_time=sampling_time,
    )
