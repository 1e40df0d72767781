"""
Shared pytest fixtures for the crossing-model tests.

Provides synthetic crossing datasets (full schema, known effects) and
fitted models reused across test modules.
"""

import numpy as np
import pandas as pd
import pytest

from elk_crossing.data.simulate import simulate_crossing_data
from elk_crossing.models.formula import ModelSpec
from elk_crossing.models.glmm import fit_model


# ============================================================================
# Dataset Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def crossing_data():
    """400 steps, 12 individual x winter levels, traffic and group-size effects."""
    return simulate_crossing_data(
        n_rows=400,
        n_groups=12,
        intercept=-1.5,
        coefficients={"traffic_100": 1.0, "group_size": -0.05},
        re_variance=0.5,
        seed=11,
    )


@pytest.fixture
def crossing_csv(tmp_path, crossing_data):
    """The synthetic dataset written to CSV."""
    path = tmp_path / "elk_highway_crossings.csv"
    crossing_data.to_csv(path, index=False)
    return path


@pytest.fixture
def singular_data():
    """Ten groups holding identical steps, so the between-group variance is zero.

    With identical groups the likelihood is maximised at a random-intercept
    variance of exactly zero.
    """
    block = simulate_crossing_data(n_rows=40, n_groups=1, re_variance=0.0, seed=3)
    frames = []
    for k in range(10):
        part = block.copy()
        part["elk_id"] = f"E{k + 1:02d}"
        part["winter"] = "w2"
        part["elk_winter"] = f"E{k + 1:02d}_w2"
        frames.append(part)
    data = pd.concat(frames, ignore_index=True)
    data["winter"] = pd.Categorical(data["winter"], categories=["w2", "w3"])
    return data


# ============================================================================
# Fitted Model Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def traffic_spec():
    return ModelSpec("traffic", ("traffic_100",))


@pytest.fixture(scope="session")
def group_size_spec():
    return ModelSpec("group_size", ("traffic_100", "group_size"))


@pytest.fixture(scope="session")
def traffic_result(crossing_data, traffic_spec):
    return fit_model(crossing_data, traffic_spec, check_singular=False)


@pytest.fixture(scope="session")
def group_size_result(crossing_data, group_size_spec):
    return fit_model(crossing_data, group_size_spec, check_singular=False)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
