"""Shared synthetic data for the scoring tests."""

import numpy as np
import pandas as pd
import pytest

# Noise rows: rolled copies of one zero-mean pattern, small between-group gaps.
NOISE_PATTERN = np.array([0.3, -1.2, 0.8, -0.5, 1.1, -0.4])


def two_group_design(n_a: int, n_b: int) -> np.ndarray:
    """Intercept + indicator of group B."""
    X = np.ones((n_a + n_b, 2))
    X[:n_a, 1] = 0.0
    return X


@pytest.fixture
def signal_matrix() -> pd.DataFrame:
    """10 features x 6 samples (3 vs 3); sig1 and sig2 shifted by 5 SD in group B."""
    rows = {}
    within = np.array([-1.0, 0.0, 1.0])  # unit SD inside each group
    rows["sig1"] = np.concatenate([10 + within, 15 + within])
    rows["sig2"] = np.concatenate([2 + within[::-1], -3 + within[::-1]])
    for k in range(6):
        rows[f"noise{k}"] = 5 + np.roll(NOISE_PATTERN, k)
    rows["noise6"] = 1 + 2 * NOISE_PATTERN
    rows["noise7"] = -1 + 0.5 * np.roll(NOISE_PATTERN, 3)

    samples = ["A1", "A2", "A3", "B1", "B2", "B3"]
    order = ["noise0", "noise1", "sig1", "noise2", "noise3", "noise4", "sig2", "noise5", "noise6", "noise7"]
    return pd.DataFrame([rows[k] for k in order], index=order, columns=samples)


@pytest.fixture
def random_matrix() -> pd.DataFrame:
    """300 features x 8 samples (4 vs 4), the first 30 shifted by 3 SD."""
    rng = np.random.default_rng(7)
    values = rng.normal(0.0, 1.0, size=(300, 8))
    values[:30, 4:] += 3.0
    return pd.DataFrame(
        values,
        index=[f"cg{i:05d}" for i in range(300)],
        columns=[f"S{j}" for j in range(8)],
    )


@pytest.fixture
def annotation() -> pd.DataFrame:
    """Sample sheet for the 6-sample fixtures, shuffled and with one extra sample."""
    return pd.DataFrame(
        {
            "status": ["tumor", "normal", "tumor", "normal", "tumor", "normal", "normal"],
            "age": [61, 45, 58, 50, 70, 39, 44],
        },
        index=pd.Index(["B2", "A1", "B1", "A3", "B3", "A2", "X9"], name="Sample"),
    )
