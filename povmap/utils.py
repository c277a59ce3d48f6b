"""
Utility functions for the poverty mapping pipeline.
"""

import os
import yaml
import numpy as np
import pandas as pd
from pathlib import Path
from typing import Dict, Any, List
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class PovmapError(ValueError):
    """Base class for pipeline errors."""


class SchemaMismatchError(PovmapError):
    """Input table is missing join keys or has an unexpected layout."""


class DegenerateInputError(PovmapError):
    """Numeric input admits no meaningful fit (e.g. no positive night lights)."""


class InsufficientDataError(PovmapError):
    """Training table is empty or has fewer rows than features."""


class ModelNotFittedError(PovmapError):
    """Prediction was requested before the model was fitted."""


def load_config(config_path: str = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Parameters:
        config_path (str): Path to the configuration file.
                          If None, uses default path relative to this file.

    Returns:
        Dict[str, Any]: Configuration dictionary.
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"
    config_path = Path(config_path)

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    logger.info(f"Configuration loaded from {config_path.name}")
    return config


def read_table(file_path) -> pd.DataFrame:
    """
    Read a tabular file, choosing the reader from the file suffix.

    Supported: .csv, .feather, .parquet, .pkl/.pickle.
    """
    file_path = Path(file_path)
    suffix = file_path.suffix.lower()

    if suffix == '.csv':
        df = pd.read_csv(file_path)
    elif suffix == '.feather':
        df = pd.read_feather(file_path)
    elif suffix == '.parquet':
        df = pd.read_parquet(file_path)
    elif suffix in ('.pkl', '.pickle'):
        df = pd.read_pickle(file_path)
    else:
        raise ValueError(f"Unsupported table format: {suffix}")

    logger.info(f"Loaded {len(df)} rows from {file_path.name}")
    return df


def validate_dataframe_columns(df, required_columns: List[str],
                               name: str = "DataFrame") -> bool:
    """
    Validate that a DataFrame contains all required columns.

    Parameters:
        df: DataFrame to validate.
        required_columns (List[str]): List of required column names.
        name (str): Name of the DataFrame for error messages.

    Returns:
        bool: True if all columns are present, raises SchemaMismatchError otherwise.
    """
    missing_columns = set(required_columns) - set(df.columns)

    if missing_columns:
        raise SchemaMismatchError(
            f"{name} is missing required columns: {sorted(missing_columns)}"
        )

    return True


def log_dataframe_info(df, name: str = "DataFrame") -> None:
    """
    Log basic information about a DataFrame.

    Parameters:
        df: DataFrame to log information about.
        name (str): Name of the DataFrame for logging.
    """
    logger.info(f"{name} shape: {df.shape}")
    if df.shape[1] <= 20:
        logger.info(f"{name} columns: {list(df.columns)}")

    # Log missing values
    missing = df.isnull().sum()
    missing_cols = missing[missing > 0]
    if len(missing_cols) > 0:
        logger.info(f"{name} columns with missing values: {len(missing_cols)} "
                   f"({int(missing_cols.sum())} missing cells)")
    else:
        logger.info(f"{name} has no missing values")


def resolve_data_dir(config: Dict[str, Any], data_dir: str = None) -> Path:
    """Input directory: explicit argument, then LOCAL_FILE_PATH, then config."""
    if data_dir:
        return Path(data_dir)
    return Path(os.getenv('LOCAL_FILE_PATH') or config['data']['base_path'])


def resolve_output_dir(config: Dict[str, Any], output_dir: str = None) -> Path:
    """Output directory, created if missing."""
    output_dir = Path(output_dir or config['data']['output_folder'])
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def grid_spacing(values, digits: int = 6):
    """
    Cell size of a regular lattice from its cell-centre coordinates.

    Coordinates are snapped to `digits` decimals first so floating-point
    noise does not create spurious near-zero gaps.

    Parameters:
        values: Cell-centre coordinates along one axis.
        digits (int): Decimal places to snap to.

    Returns:
        float: Smallest gap between distinct snapped coordinates, or None
               when there is only one distinct coordinate.
    """
    snapped = np.unique(np.round(np.asarray(values, dtype=float), digits))
    steps = np.diff(snapped)
    if len(steps) == 0:
        return None
    return float(np.round(steps.min(), digits))
