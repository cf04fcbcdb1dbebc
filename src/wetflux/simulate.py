"""Synthetic observation tables with known injected effects.

Used for calibration checks: fit the model to data whose true site, visit,
and interaction effects are known, then ask whether the posterior recovers
them. Effects are additive on the log-concentration scale, so the gas columns
are exp() of the simulated linear predictor and always positive.
"""

import numpy as np
import polars as pl

from wetflux.config import FULL_VISITS, GASES, N_SITES

DEFAULT_YEARS = (2022, 2023)


def site_names(n_sites: int = N_SITES) -> list[str]:
    """Zero-padded site identifiers: S01, S02, ..."""
    return [f"S{i:02d}" for i in range(1, n_sites + 1)]


def simulate_observations(
    rng: np.random.Generator,
    *,
    n_sites: int = N_SITES,
    years: tuple[int, ...] = DEFAULT_YEARS,
    visits: tuple[int, ...] = FULL_VISITS,
    baseline: float = 0.0,
    site_effects: dict[str, float] | None = None,
    visit_effects: dict[int, float] | None = None,
    year_effects: dict[int, float] | None = None,
    interaction_effects: dict[tuple[int, int], float] | None = None,
    noise_sd: float = 0.1,
) -> pl.DataFrame:
    """Simulate one full sampling program in the loader's output schema.

    Args:
        rng: Random generator (seed it for reproducible tests).
        baseline: Log-scale grand mean shared by every gas.
        site_effects: Site id → additive log-scale effect. Unlisted sites get 0.
        visit_effects: Visit number → effect. Unlisted visits get 0.
        year_effects: Year → effect. Unlisted years get 0.
        interaction_effects: (year, visit) → effect. Unlisted cells get 0.
        noise_sd: Residual standard deviation on the log scale.

    Returns:
        DataFrame with columns site, year, visit, co2, ch4, n2o, one row per
        (site, year, visit), sorted in that order. Each gas gets independent
        noise around the same linear predictor.
    """
    site_effects = site_effects or {}
    visit_effects = visit_effects or {}
    year_effects = year_effects or {}
    interaction_effects = interaction_effects or {}

    rows = []
    for site in site_names(n_sites):
        for year in years:
            for visit in visits:
                eta = (
                    baseline
                    + site_effects.get(site, 0.0)
                    + visit_effects.get(visit, 0.0)
                    + year_effects.get(year, 0.0)
                    + interaction_effects.get((year, visit), 0.0)
                )
                rows.append((site, year, visit, eta))

    eta = np.array([r[3] for r in rows])
    gas_cols = {g: np.exp(eta + rng.normal(0.0, noise_sd, size=len(rows))) for g in GASES}

    return pl.DataFrame(
        {
            "site": [r[0] for r in rows],
            "year": [r[1] for r in rows],
            "visit": [r[2] for r in rows],
            **gas_cols,
        },
        schema_overrides={"year": pl.Int64, "visit": pl.Int64},
    )
