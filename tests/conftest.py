"""Shared fixtures for wetflux tests.

Provides small simulated observation tables in the loader's output schema:
a full 16-site x 2-year x 5-visit program and its 3-visit reduction.
"""

import numpy as np
import polars as pl
import pytest

from wetflux.observations import reduce_visits
from wetflux.simulate import simulate_observations

# ── Observation fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def observations() -> pl.DataFrame:
    """Full program, no injected effects (baseline log-concentration 1.0)."""
    return simulate_observations(np.random.default_rng(7), baseline=1.0)


@pytest.fixture
def reduced_observations(observations: pl.DataFrame) -> pl.DataFrame:
    """Visits 1, 3, 5 only."""
    return reduce_visits(observations)


@pytest.fixture
def small_observations() -> pl.DataFrame:
    """3 sites x 2 years x 5 visits: fast enough for graph-building tests."""
    return simulate_observations(np.random.default_rng(11), n_sites=3, baseline=0.5)
