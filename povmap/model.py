"""
Poverty Model Module for the poverty mapping pipeline.

Fits a Random Forest regressor of official regional poverty rates on
region-averaged CNN features and predicts grid-level poverty rates.

The per-split feature count (mtry) is chosen by a greedy local search on
out-of-bag error: starting from a third of the features, mtry is stepped
down and then up by a fixed factor, and a step is kept only when it lowers
the OOB error by at least the configured relative margin. The search may
settle on a local optimum; it is never widened to a grid search.
"""

import math
import joblib
import pandas as pd
import numpy as np
from typing import Dict, Any, Tuple
from pathlib import Path
from sklearn.ensemble import RandomForestRegressor

from .features import valid_feature_rows
from .utils import (
    load_config, logger, log_dataframe_info, read_table,
    validate_dataframe_columns, InsufficientDataError, ModelNotFittedError,
)


class PovertyModel:
    """
    Random Forest model of poverty rate on averaged CNN features.
    """

    def __init__(self, config: Dict[str, Any] = None, config_path: str = None):
        """
        Initialize the PovertyModel.

        Parameters:
            config (Dict[str, Any]): Configuration dictionary. If None, loads from config_path.
            config_path (str): Path to configuration file. If None, uses default.
        """
        if config is None:
            config = load_config(config_path)

        self.config = config
        self.model_config = config['model']
        self.poverty_config = config['poverty']
        self.columns = config['columns']

        prefix = config['features']['prefix']
        self.feature_columns = [
            f"{prefix}{i}" for i in range(config['features']['n_features'])
        ]

        self.model = None
        self.best_mtry = None
        self.tuning_history = None

    def load_poverty_statistics(self, file_path: str) -> pd.DataFrame:
        """
        Load official poverty statistics by administrative region.

        Parameters:
            file_path (str): Path to the statistics table (pickle by default).

        Returns:
            pd.DataFrame: Region code and poverty rate columns.
        """
        return self.prepare_poverty_statistics(read_table(file_path))

    def prepare_poverty_statistics(self, poverty: pd.DataFrame) -> pd.DataFrame:
        """
        Select and rename the configured rate column, prefix region codes.
        """
        source_region = self.poverty_config['region_column']
        rate_column = self.poverty_config['rate_column']
        region_col = self.columns['region']
        rate_col = self.columns['poverty_rate']
        prefix = self.poverty_config.get('region_prefix') or ''

        validate_dataframe_columns(poverty, [source_region, rate_column],
                                   "Poverty statistics")

        poverty = poverty[[source_region, rate_column]].rename(
            columns={source_region: region_col, rate_column: rate_col}
        )
        codes = poverty[region_col]
        # numeric codes read back as floats (3201001.0) lose the decimal part
        if pd.api.types.is_float_dtype(codes) and (codes.dropna() % 1 == 0).all():
            codes = codes.astype('Int64')
        codes = codes.astype(str)
        poverty[region_col] = codes.where(codes.str.startswith(prefix), prefix + codes)

        logger.info(f"Poverty statistics for {len(poverty)} regions "
                   f"({rate_column} as {rate_col})")
        return poverty

    def build_training_table(self, aggregated: pd.DataFrame,
                             poverty: pd.DataFrame) -> pd.DataFrame:
        """
        Join region features with official rates; drop incomplete regions.

        Parameters:
            aggregated (pd.DataFrame): Region-averaged features.
            poverty (pd.DataFrame): Prepared poverty statistics.

        Returns:
            pd.DataFrame: Poverty rate followed by feature columns, one row per region.
        """
        region_col = self.columns['region']
        rate_col = self.columns['poverty_rate']

        training = aggregated.merge(poverty, on=region_col, how='inner')
        training = training[[rate_col] + self.feature_columns]

        n_before = len(training)
        training = training.dropna().reset_index(drop=True)
        if len(training) < n_before:
            logger.warning(f"Dropped {n_before - len(training)} regions with "
                          f"missing values from training data")

        log_dataframe_info(training, "Training data")
        return training

    def _oob_error(self, X: np.ndarray, y: np.ndarray, mtry: int) -> float:
        forest = RandomForestRegressor(
            n_estimators=self.model_config['n_estimators_tuning'],
            max_features=mtry,
            bootstrap=True,
            oob_score=True,
            random_state=self.model_config['random_state'],
            n_jobs=self.model_config['n_jobs'],
        )
        forest.fit(X, y)

        oob_prediction = forest.oob_prediction_
        observed = ~np.isnan(oob_prediction)
        return float(np.mean((y[observed] - oob_prediction[observed]) ** 2))

    def tune_mtry(self, X, y) -> Tuple[int, pd.DataFrame]:
        """
        Greedy search of the per-split feature count on OOB error.

        Parameters:
            X: Feature matrix (n_samples, n_features).
            y: Target vector.

        Returns:
            Tuple[int, pd.DataFrame]: Best mtry and the evaluated (mtry, oob_error) table.
        """
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        n_features = X.shape[1]
        step_factor = self.model_config['step_factor']
        improve = self.model_config['improve']

        mtry_start = max(1, n_features // 3)
        error_best = self._oob_error(X, y, mtry_start)
        history = {mtry_start: error_best}
        logger.info(f"mtry = {mtry_start}  OOB error = {error_best:.6f}")

        for direction in ('left', 'right'):
            logger.info(f"Searching {direction} ...")
            mtry_current = mtry_start
            improvement = 1.1 * improve

            while improvement >= improve:
                mtry_previous = mtry_current
                if direction == 'left':
                    mtry_current = max(1, math.ceil(mtry_current / step_factor))
                else:
                    mtry_current = min(n_features, math.floor(mtry_current * step_factor))
                if mtry_current == mtry_previous:
                    break

                error_current = history.get(mtry_current)
                if error_current is None:
                    error_current = self._oob_error(X, y, mtry_current)
                    history[mtry_current] = error_current

                improvement = 1 - error_current / error_best if error_best > 0 else 0.0
                logger.info(f"mtry = {mtry_current}  OOB error = {error_current:.6f}  "
                           f"improvement = {improvement:.4f}")

                if improvement > improve:
                    error_best = error_current

        tuning = (
            pd.DataFrame(sorted(history.items()), columns=['mtry', 'oob_error'])
        )
        best_mtry = int(tuning.loc[tuning['oob_error'].idxmin(), 'mtry'])

        logger.info(f"Best mtry: {best_mtry}")
        return best_mtry, tuning

    def fit(self, training: pd.DataFrame) -> RandomForestRegressor:
        """
        Tune mtry and train the final Random Forest.

        Parameters:
            training (pd.DataFrame): Output of build_training_table.

        Returns:
            RandomForestRegressor: Fitted ensemble.
        """
        rate_col = self.columns['poverty_rate']
        validate_dataframe_columns(training, [rate_col] + self.feature_columns,
                                   "Training data")

        n_features = len(self.feature_columns)
        if training.empty or len(training) < n_features:
            raise InsufficientDataError(
                f"Training data has {len(training)} rows for {n_features} features"
            )

        X = training[self.feature_columns].to_numpy(dtype=float)
        y = training[rate_col].to_numpy(dtype=float)

        self.best_mtry, self.tuning_history = self.tune_mtry(X, y)

        self.model = RandomForestRegressor(
            n_estimators=self.model_config['n_estimators'],
            max_features=self.best_mtry,
            bootstrap=self.model_config['bootstrap'],
            oob_score=self.model_config['bootstrap'],
            random_state=self.model_config['random_state'],
            n_jobs=self.model_config['n_jobs'],
        )
        self.model.fit(X, y)

        if self.model_config['bootstrap']:
            logger.info(f"Final model trained: {self.model.n_estimators} trees, "
                       f"mtry = {self.best_mtry}, OOB R^2 = {self.model.oob_score_:.4f}")
        else:
            logger.info(f"Final model trained: {self.model.n_estimators} trees, "
                       f"mtry = {self.best_mtry}")
        return self.model

    def _check_fitted(self) -> None:
        if self.model is None:
            raise ModelNotFittedError("Poverty model has not been fitted")

    def feature_importance(self) -> pd.DataFrame:
        """
        Impurity-based feature importance, most important first.
        """
        self._check_fitted()

        importance = pd.DataFrame({
            'variable': self.feature_columns,
            'importance': self.model.feature_importances_,
        })
        return importance.sort_values('importance', ascending=False).reset_index(drop=True)

    def predict(self, grid_features: pd.DataFrame) -> pd.DataFrame:
        """
        Predict a poverty rate for each grid cell with complete features.

        Parameters:
            grid_features (pd.DataFrame): Grid cells with id and feature columns.

        Returns:
            pd.DataFrame: Grid id and predicted poverty rate.
        """
        self._check_fitted()

        id_col = self.columns['id']
        rate_col = self.columns['poverty_rate']
        validate_dataframe_columns(grid_features, [id_col] + self.feature_columns,
                                   "Grid features")

        valid = valid_feature_rows(grid_features, self.feature_columns)
        dropped = int((~valid).sum())
        if dropped:
            logger.warning(f"{dropped} grids with missing features are not predicted")

        rows = grid_features.loc[valid]
        predictions = pd.DataFrame({
            id_col: rows[id_col].to_numpy(),
            rate_col: self.model.predict(rows[self.feature_columns].to_numpy(dtype=float)),
        })

        logger.info(f"Predicted poverty rate for {len(predictions)} grids - "
                   f"Mean: {predictions[rate_col].mean():.4f}, "
                   f"Min: {predictions[rate_col].min():.4f}, "
                   f"Max: {predictions[rate_col].max():.4f}")
        return predictions

    def save(self, file_path: str) -> None:
        """Persist the fitted model and its tuning results with joblib."""
        self._check_fitted()

        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump({
            'model': self.model,
            'best_mtry': self.best_mtry,
            'tuning_history': self.tuning_history,
            'feature_columns': self.feature_columns,
        }, file_path)
        logger.info(f"Model saved to {file_path.name}")

    def load(self, file_path: str) -> RandomForestRegressor:
        """Restore a model written by save()."""
        state = joblib.load(file_path)
        self.model = state['model']
        self.best_mtry = state['best_mtry']
        self.tuning_history = state['tuning_history']
        self.feature_columns = state['feature_columns']
        logger.info(f"Model loaded from {Path(file_path).name}")
        return self.model
