"""Shared fixtures for the poverty mapping tests."""

import copy

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from povmap.utils import load_config

N_FEATURES = 6


@pytest.fixture(scope="session")
def base_config():
    return load_config()


@pytest.fixture
def config(base_config, tmp_path):
    """Default configuration scaled down for fast tests."""
    config = copy.deepcopy(base_config)
    config['features']['n_features'] = N_FEATURES
    config['model']['n_estimators_tuning'] = 10
    config['model']['n_estimators'] = 25
    config['model']['n_jobs'] = 1
    config['data']['base_path'] = str(tmp_path / "data")
    config['data']['output_folder'] = str(tmp_path / "output")
    return config


@pytest.fixture
def feature_columns():
    return [f"feature_{i}" for i in range(N_FEATURES)]


@pytest.fixture
def grid_data():
    """60 grid cells on a regular 0.1 degree lattice, 12 regions of 5 cells."""
    ids = np.arange(1, 61)
    return pd.DataFrame({
        'id': ids,
        'X': np.round(100 + ((ids - 1) % 10) * 0.1, 4),
        'Y': np.round(-5 + ((ids - 1) // 10) * 0.1, 4),
        'adm4_code': [f"ID{3201001 + (i - 1) // 5}" for i in ids],
        'population_2020': 100 + (ids % 7) * 25.0,
    })


@pytest.fixture
def feature_table(grid_data):
    """Raw CNN feature table as written by the feature extractor."""
    rng = np.random.default_rng(0)
    table = pd.DataFrame(
        rng.normal(size=(len(grid_data), N_FEATURES)),
        columns=[str(i) for i in range(N_FEATURES)],
    )
    # Regional signal in feature 0 so the model has something to learn
    region_index = (grid_data['id'].to_numpy() - 1) // 5
    table['0'] = region_index + rng.normal(scale=0.1, size=len(grid_data))
    table['file_name'] = grid_data['id'].map("{:06d}.jpg".format)
    return table


@pytest.fixture
def poverty_statistics():
    """Official statistics as published: numeric codes, named rate column."""
    codes = np.arange(3201001, 3201013)
    return pd.DataFrame({
        'adm4_code': codes,
        'pov_rate_2019': np.linspace(0.05, 0.6, len(codes)),
    })
