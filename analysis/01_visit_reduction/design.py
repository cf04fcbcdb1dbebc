"""Design-matrix builder: observation table → ModelSpec.

Encodes year as factor1, visit or site as factor2, and each observed
(year, factor2) pairing as an interaction cell. All codes are 1-based and
contiguous over the levels actually present, and every code ships with the
label it stands for.

Level order is fixed so identical tables always produce identical codes:
  - years ascending
  - visits ascending (numeric), sites ascending (lexical)
  - interaction cells in first-appearance order after a stable sort by
    (year, factor2), i.e. year-major then factor2
"""

import sys
from pathlib import Path

import numpy as np
import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.model_spec import FactorChoice, ModelSpec
except ModuleNotFoundError:
    from model_spec import FactorChoice, ModelSpec  # type: ignore[no-redef]

from wetflux.errors import InvalidInputError
from wetflux.observations import check_key_cells, validate_gas_values


def year_label(year: int) -> str:
    return str(year)


def level_label(factor: FactorChoice, value: object) -> str:
    """Display label for a factor2 level: "Visit 3" for visits, the site id for sites."""
    if factor is FactorChoice.BY_VISIT:
        return f"Visit {int(value)}"
    return str(value)


def cell_label(year: int, factor: FactorChoice, value: object) -> str:
    """Interaction cell key, e.g. "2023-Visit2" or "2022-S07".

    Site ids are used verbatim so distinct sites never share a key.
    """
    if factor is FactorChoice.BY_VISIT:
        return f"{year_label(year)}-Visit{int(value)}"
    return f"{year_label(year)}-{value}"


def build_model_spec(
    observations: pl.DataFrame,
    gas: str,
    factor: FactorChoice,
) -> ModelSpec:
    """Encode one gas under one factor choice as a ModelSpec.

    Args:
        observations: Cleaned table (missing rows already dropped) with
            site, year, visit, and the gas column.
        gas: Gas column to model (log-transformed).
        factor: BY_VISIT or BY_SITE.

    Raises:
        InvalidInputError: If the table is empty or the gas values are invalid.
    """
    if observations.height == 0:
        msg = "Observation table is empty"
        raise InvalidInputError(msg, gas=gas, question=factor.question)
    try:
        check_key_cells(observations)
        validate_gas_values(observations, gas)
    except InvalidInputError as e:
        raise e.with_context(gas=gas, question=factor.question) from None

    col = factor.value
    df = observations.sort("year", col, maintain_order=True)

    years = sorted(df["year"].unique().to_list())
    levels = sorted(df[col].unique().to_list())
    year_code = {y: i + 1 for i, y in enumerate(years)}
    level_code = {v: i + 1 for i, v in enumerate(levels)}

    cells = df.select("year", col).unique(maintain_order=True).rows()
    cell_code = {c: i + 1 for i, c in enumerate(cells)}

    year_vals = df["year"].to_list()
    level_vals = df[col].to_list()

    return ModelSpec(
        gas=gas,
        factor=factor,
        y=np.log(df[gas].cast(pl.Float64).to_numpy()),
        factor1=[year_code[y] for y in year_vals],
        factor2=[level_code[v] for v in level_vals],
        interaction=[cell_code[(y, v)] for y, v in zip(year_vals, level_vals)],
        factor1_labels=[year_label(y) for y in years],
        factor2_labels=[level_label(factor, v) for v in levels],
        interaction_labels=[cell_label(y, factor, v) for y, v in cells],
    )


def describe_spec(spec: ModelSpec) -> None:
    """Print the bundle dimensions."""
    print(
        f"  {spec.gas} by {spec.factor.question}: {spec.n_obs} obs, "
        f"{spec.n_factor1} years, {spec.n_factor2} {spec.factor.question} levels, "
        f"{spec.n_interaction} interaction cells"
    )
    print(f"  log({spec.gas}) mean = {spec.y.mean():.3f}, sd = {spec.y.std():.3f}")
