"""Wetflux - wetland greenhouse-gas visit-reduction analysis."""

__version__ = "2026.10.18"

from wetflux.errors import ConvergenceWarning as ConvergenceWarning
from wetflux.errors import InvalidInputError as InvalidInputError
from wetflux.errors import MismatchedParameterError as MismatchedParameterError
from wetflux.errors import SamplingError as SamplingError
from wetflux.observations import load_observations as load_observations
from wetflux.observations import reduce_visits as reduce_visits
