"""
Feature Aggregation Module for the poverty mapping pipeline.

This module joins CNN feature vectors to grid cells and averages them
by administrative region.
"""

import pandas as pd
from typing import Dict, Any, List

from .utils import (
    load_config, logger, log_dataframe_info, read_table,
    validate_dataframe_columns, SchemaMismatchError,
)


def valid_feature_rows(df: pd.DataFrame, feature_columns: List[str]) -> pd.Series:
    """
    Boolean mask of rows usable for aggregation and prediction.

    A row is valid when none of its feature values is missing. Aggregation
    and prediction both go through this mask so that training and
    prediction populations agree.
    """
    return df[feature_columns].notna().all(axis=1)


class FeatureAggregator:
    """
    Class to attach CNN features to grid cells and aggregate them by region.
    """

    def __init__(self, config: Dict[str, Any] = None, config_path: str = None):
        """
        Initialize the FeatureAggregator.

        Parameters:
            config (Dict[str, Any]): Configuration dictionary. If None, loads from config_path.
            config_path (str): Path to configuration file. If None, uses default.
        """
        if config is None:
            config = load_config(config_path)

        self.config = config
        self.features_config = config['features']
        self.columns = config['columns']

    @property
    def feature_columns(self) -> List[str]:
        prefix = self.features_config['prefix']
        return [f"{prefix}{i}" for i in range(self.features_config['n_features'])]

    def load_features(self, file_path: str) -> pd.DataFrame:
        """
        Load the CNN feature table and give feature columns canonical names.

        Every column except the file name is treated as a feature, in file
        order, and renamed to feature_0 .. feature_{n-1}.

        Parameters:
            file_path (str): Path to the feature table (Feather by default).

        Returns:
            pd.DataFrame: Feature table with a file-name column.
        """
        features = read_table(file_path)
        return self.rename_features(features)

    def rename_features(self, features: pd.DataFrame) -> pd.DataFrame:
        """
        Rename the extracted feature columns to prefix_0 .. prefix_{n-1}.

        Columns other than the file name column are renamed in their
        stored order. A missing file name column or a feature count other
        than features.n_features raises SchemaMismatchError.

        Parameters:
            features (pd.DataFrame): File name column plus one column per feature.

        Returns:
            pd.DataFrame: Feature table with canonical feature names.
        """
        file_col = self.columns['file_name']
        validate_dataframe_columns(features, [file_col], "Feature table")

        value_columns = [c for c in features.columns if c != file_col]
        expected = self.features_config['n_features']
        if len(value_columns) != expected:
            raise SchemaMismatchError(
                f"Feature table has {len(value_columns)} feature columns, "
                f"expected {expected}"
            )

        renamed = dict(zip(value_columns, self.feature_columns))
        features = features.rename(columns=renamed)

        logger.info(f"Feature table ready: {len(features)} images, "
                   f"{expected} features")
        return features

    def attach_file_names(self, grid: pd.DataFrame) -> pd.DataFrame:
        """
        Derive the image file name of each grid cell from its id.
        """
        id_col = self.columns['id']
        validate_dataframe_columns(grid, [id_col], "Grid table")

        grid = grid.copy()
        fmt = self.features_config['file_name_format']
        grid[self.columns['file_name']] = grid[id_col].astype(int).map(fmt.format)
        return grid

    def combine(self, grid: pd.DataFrame, features: pd.DataFrame) -> pd.DataFrame:
        """
        Join grid cells to their feature vectors by image file name.

        Parameters:
            grid (pd.DataFrame): Grid table (file names derived if absent).
            features (pd.DataFrame): Renamed feature table.

        Returns:
            pd.DataFrame: One row per grid cell with an image.
        """
        file_col = self.columns['file_name']
        if file_col not in grid.columns:
            grid = self.attach_file_names(grid)
        validate_dataframe_columns(features, [file_col] + self.feature_columns,
                                   "Feature table")

        combined = grid.merge(features, on=file_col, how='inner')
        if combined.empty:
            raise SchemaMismatchError(
                f"No grid cells matched feature rows on {file_col}"
            )

        logger.info(f"Matched {len(combined)} of {len(grid)} grids to CNN features")
        return combined

    def aggregate_by_region(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Average feature vectors over the grid cells of each region.

        Rows with any missing feature value are excluded. Regions without
        any valid row do not appear in the result.

        Parameters:
            df (pd.DataFrame): Combined grid/feature table.

        Returns:
            pd.DataFrame: One row per region: region code and mean features.
        """
        region_col = self.columns['region']
        feature_cols = self.feature_columns
        validate_dataframe_columns(df, [region_col] + feature_cols, "Grid features")

        valid = valid_feature_rows(df, feature_cols)
        dropped = int((~valid).sum())
        if dropped:
            logger.warning(f"Excluded {dropped} grids with missing features "
                          f"from aggregation")

        aggregated = (
            df.loc[valid, [region_col] + feature_cols]
            .groupby(region_col, sort=True)
            .mean()
            .reset_index()
        )

        log_dataframe_info(aggregated, "Region features")
        return aggregated
