"""
Synthetic crossing datasets with a known logistic relationship.

Draws steps with the same schema as the field dataset so they pass through
validate_crossing_data unchanged. The outcome follows

    logit P(crossed) = intercept + sum(coef * covariate) + b[elk_winter]
    b ~ Normal(0, re_variance)

which lets tests and demo runs check that a fit recovers what was injected.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd
from scipy.special import expit

from .loader import (
    GROUP_KEY_COLUMN,
    ID_COLUMN,
    OUTCOME_COLUMN,
    SEASON_COLUMN,
    SEASON_LEVELS,
    WINTER_COLUMN,
    WINTER_LEVELS,
    make_group_key,
    validate_crossing_data,
)

logger = logging.getLogger(__name__)

# Collars deployed per winter; prop_collared is n_collared over this
DEPLOYED_COLLARS = 16


def simulate_crossing_data(
    n_rows: int = 500,
    n_groups: int = 10,
    intercept: float = -2.0,
    coefficients: Optional[Dict[str, float]] = None,
    re_variance: float = 0.3,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Draw a synthetic crossing dataset.

    Args:
        n_rows: Number of steps
        n_groups: Number of individual x winter levels; individuals are
            paired with winters w2/w3 in turn, so levels 0 and 1 share an elk
        intercept: Intercept of the linear predictor (logit scale)
        coefficients: Covariate name -> injected effect (logit scale).
            Defaults to {"traffic_100": 1.5}
        re_variance: Variance of the random intercept per individual x winter
        seed: Seed for numpy's Generator

    Returns:
        Validated DataFrame with the full crossing schema
    """
    if n_groups < 1 or n_rows < n_groups:
        raise ValueError(f"Need n_rows >= n_groups >= 1, got {n_rows} rows and {n_groups} groups")
    if coefficients is None:
        coefficients = {"traffic_100": 1.5}

    rng = np.random.default_rng(seed)

    # Every level gets at least one step
    level = np.concatenate([np.arange(n_groups), rng.integers(0, n_groups, n_rows - n_groups)])
    rng.shuffle(level)

    elk_ids = np.array([f"E{(k // 2) + 1:02d}" for k in range(n_groups)])
    winters = np.array([WINTER_LEVELS[k % 2] for k in range(n_groups)])

    traffic_100 = rng.uniform(0.0, 3.0, n_rows)
    n_collared = 2 + rng.poisson(1.0, n_rows)
    group_size = n_collared + rng.gamma(2.0, 4.0, n_rows)

    # Individual phenotypes are fixed per elk
    n_elk = len(np.unique(elk_ids))
    elo_by_elk = rng.normal(1000.0, 150.0, n_elk)
    eigen_by_elk = rng.uniform(0.0, 1.0, n_elk)
    sri_by_elk = rng.beta(2.0, 5.0, n_elk)
    fusion_by_elk = rng.gamma(2.0, 24.0, n_elk)
    elk_index = level // 2

    df = pd.DataFrame({
        ID_COLUMN: elk_ids[level],
        WINTER_COLUMN: winters[level],
        SEASON_COLUMN: rng.choice(SEASON_LEVELS, n_rows),
        "traffic": traffic_100 * 100.0,
        "traffic_100": traffic_100,
        "n_collared": n_collared.astype(float),
        "prop_collared": n_collared / DEPLOYED_COLLARS,
        "group_size": group_size,
        "elo": elo_by_elk[elk_index],
        "eigen_scaled": eigen_by_elk[elk_index],
        "sri_median": sri_by_elk[elk_index],
        "fusion_median": fusion_by_elk[elk_index],
    })
    df["group_elo_max"] = df["elo"] + np.abs(rng.normal(0.0, 60.0, n_rows))
    df["group_eigen_max"] = np.minimum(1.0, df["eigen_scaled"] + rng.uniform(0.0, 0.3, n_rows))
    df["group_sri_median"] = np.clip(df["sri_median"] + rng.normal(0.0, 0.05, n_rows), 0.0, 1.0)
    df["group_fusion_median"] = df["fusion_median"] * rng.uniform(0.7, 1.3, n_rows)
    df[GROUP_KEY_COLUMN] = make_group_key(df[ID_COLUMN], df[WINTER_COLUMN])

    eta = np.full(n_rows, intercept, dtype=float)
    for name, coef in coefficients.items():
        if name not in df.columns:
            raise ValueError(f"Unknown covariate for injected effect: {name}")
        eta += coef * df[name].to_numpy(dtype=float)
    random_intercepts = rng.normal(0.0, np.sqrt(re_variance), n_groups)
    eta += random_intercepts[level]

    df[OUTCOME_COLUMN] = rng.binomial(1, expit(eta))

    logger.debug(f"Simulated {n_rows} steps over {n_groups} groups "
                 f"(crossing rate {df[OUTCOME_COLUMN].mean():.3f})")
    return validate_crossing_data(df)
