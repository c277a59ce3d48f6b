"""
Calibration Module for the poverty mapping pipeline.

Rescales grid-level poverty predictions so that, within every
administrative region, the population-weighted total matches the official
poverty statistic:

    pov_scaling = (official_rate * region_population) / sum(pov_rate * population)
    pov_rate_calibrated = min(pov_rate * pov_scaling, upper_clamp)

Regions without an official statistic, or with a zero or missing predicted
total, keep their uncalibrated rates.
"""

import geopandas as gpd
import pandas as pd
import numpy as np
import rasterio
from rasterio.transform import from_origin
from typing import Dict, Any, Tuple
from pathlib import Path

from .utils import (
    load_config, logger, validate_dataframe_columns, grid_spacing,
    SchemaMismatchError,
)


class PovertyCalibrator:
    """
    Class to calibrate grid-level poverty predictions against official statistics.
    """

    def __init__(self, config: Dict[str, Any] = None, config_path: str = None):
        """
        Initialize the PovertyCalibrator.

        Parameters:
            config (Dict[str, Any]): Configuration dictionary. If None, loads from config_path.
            config_path (str): Path to configuration file. If None, uses default.
        """
        if config is None:
            config = load_config(config_path)

        self.config = config
        self.calibration_config = config['calibration']
        self.raster_config = config['raster']
        self.columns = config['columns']

    def attach_predictions(self, grid: pd.DataFrame,
                           predictions: pd.DataFrame) -> pd.DataFrame:
        """
        Attach predicted rates to every grid cell.

        Cells without a prediction are kept with a missing rate.

        Parameters:
            grid (pd.DataFrame): Grid cells with id, coordinates, region and population.
            predictions (pd.DataFrame): Grid id and predicted poverty rate.

        Returns:
            pd.DataFrame: Grid cells with the predicted rate column.
        """
        c = self.columns
        validate_dataframe_columns(
            grid, [c['id'], c['x'], c['y'], c['region'], c['population']], "Grid table"
        )
        validate_dataframe_columns(predictions, [c['id'], c['poverty_rate']],
                                   "Predictions")

        base = grid[[c['id'], c['x'], c['y'], c['region'], c['population']]]
        base = base.drop_duplicates(subset=c['id'])
        merged = base.merge(predictions[[c['id'], c['poverty_rate']]],
                            on=c['id'], how='left')

        missing = int(merged[c['poverty_rate']].isna().sum())
        if missing:
            logger.info(f"{missing} grids have no prediction")
        return merged

    def region_estimates(self, grid: pd.DataFrame) -> pd.DataFrame:
        """
        Population and population-weighted predicted poverty per region.

        Missing population or prediction contributes zero.
        """
        c = self.columns

        weighted = grid[c['poverty_rate']] * grid[c['population']]
        estimates = (
            grid.assign(_predicted=weighted)
            .groupby(c['region'])
            .agg(population=(c['population'], 'sum'),
                 predicted_total=('_predicted', 'sum'))
            .reset_index()
        )
        return estimates

    def scaling_factors(self, estimates: pd.DataFrame,
                        poverty: pd.DataFrame) -> pd.DataFrame:
        """
        Compute the per-region scaling factor.

        Parameters:
            estimates (pd.DataFrame): Output of region_estimates.
            poverty (pd.DataFrame): Region code and official poverty rate.

        Returns:
            pd.DataFrame: Region estimates with official totals and scaling factor.
        """
        c = self.columns
        validate_dataframe_columns(poverty, [c['region'], c['poverty_rate']],
                                   "Poverty statistics")

        official = poverty[[c['region'], c['poverty_rate']]].rename(
            columns={c['poverty_rate']: 'official_rate'}
        )
        factors = estimates.merge(official, on=c['region'], how='left')
        factors['official_total'] = factors['official_rate'] * factors['population']

        with np.errstate(divide='ignore', invalid='ignore'):
            factors[c['scaling_factor']] = (
                factors['official_total'] / factors['predicted_total']
            )

        return factors

    def apply(self, grid: pd.DataFrame, factors: pd.DataFrame) -> pd.DataFrame:
        """
        Apply scaling factors to grid predictions and clamp the result.

        Parameters:
            grid (pd.DataFrame): Grid cells with predicted rates.
            factors (pd.DataFrame): Output of scaling_factors.

        Returns:
            pd.DataFrame: Grid cells with raw and calibrated rates.
        """
        c = self.columns
        rate_col = c['poverty_rate']
        calibrated_col = c['calibrated_rate']
        scaling_col = c['scaling_factor']

        grid = grid.merge(factors[[c['region'], scaling_col]],
                          on=c['region'], how='left')

        scaling = grid[scaling_col]
        finite = np.isfinite(scaling)

        fallback_regions = factors.loc[~np.isfinite(factors[scaling_col]), c['region']]
        if len(fallback_regions):
            logger.warning(f"{len(fallback_regions)} regions have no finite scaling "
                          f"factor and keep uncalibrated rates")

        grid[calibrated_col] = grid[rate_col].where(~finite, grid[rate_col] * scaling)

        upper = self.calibration_config.get('upper_clamp')
        lower = self.calibration_config.get('lower_clamp')
        if upper is not None:
            clamped = grid[calibrated_col] > upper
            grid.loc[clamped, calibrated_col] = upper
            logger.info(f"Clamped {int(clamped.sum())} calibrated rates to {upper}")
        if lower is not None:
            clamped = grid[calibrated_col] < lower
            grid.loc[clamped, calibrated_col] = lower
            logger.info(f"Clamped {int(clamped.sum())} calibrated rates to {lower}")

        return grid

    def calibrate(self, grid: pd.DataFrame, predictions: pd.DataFrame,
                  poverty: pd.DataFrame) -> pd.DataFrame:
        """
        Calibrate grid predictions against official regional statistics.

        Parameters:
            grid (pd.DataFrame): Grid cells with id, coordinates, region and population.
            predictions (pd.DataFrame): Grid id and predicted poverty rate.
            poverty (pd.DataFrame): Region code and official poverty rate.

        Returns:
            pd.DataFrame: One row per grid cell with raw and calibrated rates.
        """
        logger.info("Calibrating predictions to official statistics")

        grid = self.attach_predictions(grid, predictions)
        estimates = self.region_estimates(grid)
        factors = self.scaling_factors(estimates, poverty)
        calibrated = self.apply(grid, factors)

        scaling = factors[self.columns['scaling_factor']]
        finite = scaling[np.isfinite(scaling)]
        if len(finite):
            logger.info(f"Scaling factors for {len(finite)} regions - "
                       f"Median: {finite.median():.4f}, "
                       f"Min: {finite.min():.4f}, Max: {finite.max():.4f}")
        return calibrated

    def reconcile(self, calibrated: pd.DataFrame,
                  poverty: pd.DataFrame) -> pd.DataFrame:
        """
        Compare calibrated regional totals with the official totals.
        """
        c = self.columns

        weighted = calibrated[c['calibrated_rate']] * calibrated[c['population']]
        totals = (
            calibrated.assign(_calibrated=weighted)
            .groupby(c['region'])
            .agg(population=(c['population'], 'sum'),
                 calibrated_total=('_calibrated', 'sum'))
            .reset_index()
        )
        official = poverty[[c['region'], c['poverty_rate']]].rename(
            columns={c['poverty_rate']: 'official_rate'}
        )
        totals = totals.merge(official, on=c['region'], how='left')
        totals['official_total'] = totals['official_rate'] * totals['population']
        totals['difference'] = totals['calibrated_total'] - totals['official_total']
        return totals

    def _raster_geometry(self, x: np.ndarray, y: np.ndarray) -> Tuple[float, float]:
        resolution = self.raster_config.get('resolution')
        if resolution is not None:
            if np.isscalar(resolution):
                return float(resolution), float(resolution)
            return float(resolution[0]), float(resolution[1])

        digits = self.raster_config.get('coordinate_digits', 6)

        def spacing(values, axis):
            step = grid_spacing(values, digits)
            if step is None:
                raise SchemaMismatchError(
                    f"Cannot infer raster resolution along {axis} from a single "
                    f"coordinate; set raster.resolution"
                )
            return step

        return spacing(x, 'x'), spacing(y, 'y')

    def rasterize(self, calibrated: pd.DataFrame, file_path: str) -> Path:
        """
        Write grid values to a multi-band GeoTIFF on a regular XY grid.

        Coordinates are cell centres. One band per configured column, with
        the column name as band description.

        Parameters:
            calibrated (pd.DataFrame): Output of calibrate.
            file_path (str): Path to output GeoTIFF.

        Returns:
            Path: Path of the written raster.
        """
        c = self.columns
        bands = self.raster_config['bands']
        validate_dataframe_columns(calibrated, [c['x'], c['y']] + bands, "Calibrated grid")

        digits = self.raster_config.get('coordinate_digits', 6)
        x = np.round(calibrated[c['x']].to_numpy(dtype=float), digits)
        y = np.round(calibrated[c['y']].to_numpy(dtype=float), digits)
        res_x, res_y = self._raster_geometry(x, y)

        x_min, y_max = x.min(), y.max()
        cols = np.rint((x - x_min) / res_x).astype(int)
        rows = np.rint((y_max - y) / res_y).astype(int)
        width, height = cols.max() + 1, rows.max() + 1

        transform = from_origin(x_min - res_x / 2, y_max + res_y / 2, res_x, res_y)
        dtype = self.raster_config['dtype']

        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with rasterio.open(
            file_path,
            "w",
            driver="GTiff",
            height=height,
            width=width,
            count=len(bands),
            dtype=dtype,
            crs=self.raster_config['crs'],
            transform=transform,
            nodata=np.nan,
        ) as dst:
            for index, band in enumerate(bands, start=1):
                data = np.full((height, width), np.nan, dtype=dtype)
                data[rows, cols] = calibrated[band].to_numpy(dtype=dtype)
                dst.write(data, index)
                dst.set_band_description(index, band)

        logger.info(f"Raster ({height} x {width}, {len(bands)} bands) saved to "
                   f"{file_path.name}")
        return file_path

    def to_geodataframe(self, calibrated: pd.DataFrame) -> gpd.GeoDataFrame:
        """
        Grid cells as WGS84 points.
        """
        c = self.columns
        return gpd.GeoDataFrame(
            calibrated,
            geometry=gpd.points_from_xy(calibrated[c['x']], calibrated[c['y']]),
            crs=self.raster_config['crs'],
        )

    def save_geopackage(self, calibrated: pd.DataFrame, file_path: str) -> None:
        """
        Save calibrated grid cells to a GeoPackage file.

        Parameters:
            calibrated (pd.DataFrame): Output of calibrate.
            file_path (str): Path to output file.
        """
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        self.to_geodataframe(calibrated).to_file(file_path, driver='GPKG')
        logger.info(f"Calibrated grid saved to {file_path.name}")
