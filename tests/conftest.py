"""Shared synthetic data for the pipeline tests."""

import numpy as np
import pandas as pd
import pytest

from coexpression.utils import default_config, override_config


N_SAMPLES = 10
SAMPLES = [f"S{j:02d}" for j in range(N_SAMPLES)]
_T = np.arange(N_SAMPLES)

# zero-mean, mutually orthogonal profiles over one full period
PROFILE_A = np.sin(2 * np.pi * _T / N_SAMPLES)
PROFILE_B = np.cos(2 * np.pi * _T / N_SAMPLES)
PROFILE_C = np.sin(4 * np.pi * _T / N_SAMPLES)
GROUP = np.array([0, 0, 0, 0, 0, 1, 1, 1, 1, 1], dtype=float)


def make_block(profile, prefix: str, n: int, noise: float = 0.0, rng=None) -> dict:
    """n genes = positive scale * profile + offset (+ optional noise)."""
    cols = {}
    for i in range(n):
        values = (1.0 + 0.1 * i) * profile + 5.0 + i
        if noise and rng is not None:
            values = values + rng.normal(scale=noise, size=len(profile))
        cols[f"{prefix}{i:02d}"] = values
    return cols


def make_two_block_expression(seed: int = 0) -> pd.DataFrame:
    """10 samples × 50 genes: two planted blocks of 20 + 10 noise genes."""
    rng = np.random.default_rng(seed)
    cols = {}
    cols.update(make_block(PROFILE_A, 'A', 20))
    cols.update(make_block(PROFILE_B, 'B', 20))
    for i in range(10):
        cols[f"N{i:02d}"] = rng.normal(size=N_SAMPLES)
    return pd.DataFrame(cols, index=SAMPLES)


def make_marker_expression(seed: int = 1) -> pd.DataFrame:
    """Marker genes following GROUP, a cos block and noise genes."""
    rng = np.random.default_rng(seed)
    cols = {}
    cols.update(make_block(GROUP, 'M', 20, noise=0.01, rng=rng))
    cols.update(make_block(PROFILE_B, 'B', 20, noise=0.01, rng=rng))
    for i in range(10):
        cols[f"N{i:02d}"] = rng.normal(size=N_SAMPLES)
    return pd.DataFrame(cols, index=SAMPLES)


def make_traits() -> pd.DataFrame:
    rng = np.random.default_rng(7)
    return pd.DataFrame({'infected': GROUP, 'weight': rng.normal(size=N_SAMPLES)},
                        index=SAMPLES)


def small_config(tmp_path=None, **sections) -> dict:
    cfg = override_config(default_config(), {
        'network': {'power': 6, 'powers': list(range(1, 11))},
        'modules': {'min_module_size': 15},
        'compute': {'parallel': False},
    })
    if tmp_path is not None:
        cfg['paths']['output_dir'] = str(tmp_path)
    return override_config(cfg, sections)


@pytest.fixture
def two_block_expression():
    return make_two_block_expression()


@pytest.fixture
def marker_expression():
    return make_marker_expression()


@pytest.fixture
def traits():
    return make_traits()
