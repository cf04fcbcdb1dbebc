"""Exception and warning types for the visit-reduction analysis.

Every error can carry the (gas, question, scenario) of the fit or comparison
it aborted, so a failure in a 12-fit batch is diagnosable from the message
alone.
"""

from __future__ import annotations

import copy


class WetfluxError(Exception):
    """Base class for analysis errors, with optional fit context."""

    def __init__(
        self,
        message: str,
        *,
        gas: str | None = None,
        question: str | None = None,
        scenario: str | None = None,
    ) -> None:
        self.message = message
        self.gas = gas
        self.question = question
        self.scenario = scenario
        super().__init__(message)

    @property
    def context(self) -> dict[str, str]:
        """Non-empty context fields, in gas/question/scenario order."""
        fields = {"gas": self.gas, "question": self.question, "scenario": self.scenario}
        return {k: v for k, v in fields.items() if v is not None}

    def with_context(
        self,
        *,
        gas: str | None = None,
        question: str | None = None,
        scenario: str | None = None,
    ) -> WetfluxError:
        """Return a copy with any unset context fields filled in."""
        err = copy.copy(self)
        err.gas = self.gas or gas
        err.question = self.question or question
        err.scenario = self.scenario or scenario
        err.args = (self.message,)
        return err

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} [{ctx}]"


class InvalidInputError(WetfluxError, ValueError):
    """Observation data is empty, malformed, or physically impossible."""


class SamplingError(WetfluxError, RuntimeError):
    """MCMC could not run to completion for one fit."""


class MismatchedParameterError(WetfluxError, LookupError):
    """A parameter match refers to a name or key absent from a sample set."""


class ConvergenceWarning(UserWarning):
    """Sampling finished but diagnostics say the posterior may be unreliable."""
