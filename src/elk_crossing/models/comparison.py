"""
AIC comparison of crossing models fitted to the same rows.

AIC differences are only meaningful between likelihoods computed on identical
observations, so every comparison first checks that the models used the same
rows (a covariate with missing values silently shrinks a model's data).
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
import pandas as pd

from .glmm import GLMMResult

logger = logging.getLogger(__name__)


class IncomparableModelsError(Exception):
    """Raised when models were fitted on different observations or responses."""
    pass


@dataclass(frozen=True)
class AICComparison:
    """Pairwise AIC comparison; delta_aic is first minus second."""
    first: str
    second: str
    aic_first: float
    aic_second: float
    delta_aic: float

    @property
    def preferred(self) -> str:
        """Name of the model with the lower AIC (first on ties)."""
        return self.second if self.delta_aic > 0 else self.first


def check_comparable(results: Sequence[GLMMResult]):
    """
    Ensure every model was fitted to the same response and rows.

    Raises:
        IncomparableModelsError: On differing row counts, row labels or responses
    """
    reference = results[0]
    ref_response = _response(reference)
    for other in results[1:]:
        if other.nobs != reference.nobs:
            raise IncomparableModelsError(
                f"'{reference.name}' used {reference.nobs} rows but '{other.name}' used "
                f"{other.nobs}; AIC requires the same observations"
            )
        if not np.array_equal(np.sort(other.row_index), np.sort(reference.row_index)):
            raise IncomparableModelsError(
                f"'{reference.name}' and '{other.name}' were fitted to different rows"
            )
        if _response(other) != ref_response:
            raise IncomparableModelsError(
                f"'{reference.name}' models '{ref_response}' but '{other.name}' "
                f"models '{_response(other)}'"
            )


def _response(result: GLMMResult) -> str:
    return result.formula.split("~", 1)[0].strip()


def compare_aic(first: GLMMResult, second: GLMMResult) -> AICComparison:
    """Compare two models by AIC (lower is better)."""
    check_comparable([first, second])
    return AICComparison(
        first=first.name,
        second=second.name,
        aic_first=first.aic,
        aic_second=second.aic,
        delta_aic=first.aic - second.aic,
    )


def aic_table(results: Sequence[GLMMResult]) -> pd.DataFrame:
    """
    Rank two or more models by AIC.

    Returns:
        DataFrame sorted by AIC with columns model, k, loglik, aic,
        delta_aic (from the best model), weight (Akaike weight) and cum_weight
    """
    results = list(results)
    if len(results) < 2:
        raise ValueError(f"AIC comparison needs at least two models, got {len(results)}")
    check_comparable(results)

    table = pd.DataFrame({
        "model": [r.name for r in results],
        "k": [r.n_params for r in results],
        "loglik": [r.loglik for r in results],
        "aic": [r.aic for r in results],
    })
    table = table.sort_values("aic", kind="mergesort").reset_index(drop=True)
    table["delta_aic"] = table["aic"] - table["aic"].iloc[0]
    rel_likelihood = np.exp(-0.5 * table["delta_aic"])
    table["weight"] = rel_likelihood / rel_likelihood.sum()
    table["cum_weight"] = table["weight"].cumsum()

    logger.debug(f"AIC ranking: {', '.join(table['model'])}")
    return table


def pairwise_deltas(results: Sequence[GLMMResult]) -> List[AICComparison]:
    """Comparison for each pair of models, the earlier model in input order first."""
    results = list(results)
    check_comparable(results)
    return [
        compare_aic(a, b)
        for i, a in enumerate(results)
        for b in results[i + 1:]
    ]
