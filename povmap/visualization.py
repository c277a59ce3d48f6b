"""
Visualization Module for the poverty mapping pipeline.

Renders the poverty raster as side-by-side maps of raw and calibrated
predictions, and the model's feature importance as a bar chart.
"""

import pandas as pd
import numpy as np
import rasterio
from rasterio.transform import xy as cell_centres
import matplotlib.pyplot as plt
from matplotlib.colors import Normalize
from typing import Dict, Any, Tuple
from pathlib import Path

from .utils import (
    load_config, logger, validate_dataframe_columns, resolve_output_dir,
    grid_spacing, DegenerateInputError,
)


class PovertyMapPlotter:
    """
    Class to plot poverty maps and model diagnostics.
    """

    def __init__(self, config: Dict[str, Any] = None, config_path: str = None):
        """
        Initialize the PovertyMapPlotter.

        Parameters:
            config (Dict[str, Any]): Configuration dictionary. If None, loads from config_path.
            config_path (str): Path to configuration file. If None, uses default.
        """
        if config is None:
            config = load_config(config_path)

        self.config = config
        self.viz_config = config['visualization']
        self.columns = config['columns']

    def raster_to_frame(self, file_path: str) -> pd.DataFrame:
        """
        Read a multi-band raster into a table of cell centres and band values.

        Band descriptions become column names. Cells where every band is
        missing are dropped.

        Parameters:
            file_path (str): Path to the raster.

        Returns:
            pd.DataFrame: Columns x, y and one column per band.
        """
        with rasterio.open(file_path) as src:
            data = src.read()
            names = [
                desc or f"band_{i}" for i, desc in enumerate(src.descriptions, start=1)
            ]
            rows, cols = np.indices((src.height, src.width))
            xs, ys = cell_centres(src.transform, rows.ravel(), cols.ravel())

        frame = pd.DataFrame({'x': np.asarray(xs), 'y': np.asarray(ys)})
        for name, band in zip(names, data):
            frame[name] = band.ravel()

        frame = frame.dropna(subset=names, how='all').reset_index(drop=True)
        logger.info(f"Read {len(frame)} cells from {Path(file_path).name}")
        return frame

    def to_long(self, frame: pd.DataFrame) -> pd.DataFrame:
        """
        Reshape raw and calibrated bands into long form keyed by (x, y, method).
        """
        labels = self.viz_config['method_labels']
        validate_dataframe_columns(frame, ['x', 'y'] + list(labels), "Raster table")

        long = frame.melt(
            id_vars=['x', 'y'],
            value_vars=list(labels),
            var_name='method',
            value_name='poverty_rate',
        )
        long['method'] = long['method'].map(labels)
        return long

    def raster_resolution(self, file_path: str) -> Tuple[float, float]:
        """Cell size (x, y) of a raster."""
        with rasterio.open(file_path) as src:
            return src.res

    def plot_poverty_map(self, long: pd.DataFrame, output_path: str = None,
                         resolution=None):
        """
        Plot one raster panel per method with a shared colour scale.

        Each panel covers the full regular grid spanned by the cells, so
        empty rows and columns stay in place, and the image extent runs
        half a cell beyond the outermost cell centres.

        Parameters:
            long (pd.DataFrame): Output of to_long.
            output_path (str): Path to save the figure. If None, doesn't save.
            resolution: Cell size as a number or an (x, y) pair. If None,
                        inferred from the smallest coordinate gaps.

        Returns:
            matplotlib.figure.Figure: The figure.
        """
        validate_dataframe_columns(long, ['x', 'y', 'method', 'poverty_rate'],
                                   "Long-form raster table")
        methods = [m for m in self.viz_config['method_labels'].values()
                   if m in set(long['method'])]
        if not methods or long['poverty_rate'].isna().all():
            raise DegenerateInputError("No poverty rates to plot")

        digits = self.config['raster'].get('coordinate_digits', 6)
        x = np.round(long['x'].to_numpy(dtype=float), digits)
        y = np.round(long['y'].to_numpy(dtype=float), digits)
        res_x, res_y = self._cell_size(x, y, resolution, digits)

        x_min, y_max = x.min(), y.max()
        cols = np.rint((x - x_min) / res_x).astype(int)
        rows = np.rint((y_max - y) / res_y).astype(int)
        width, height = cols.max() + 1, rows.max() + 1
        extent = [x_min - res_x / 2, x_min + (width - 0.5) * res_x,
                  y_max - (height - 0.5) * res_y, y_max + res_y / 2]

        norm = Normalize(vmin=np.nanmin(long['poverty_rate']),
                         vmax=np.nanmax(long['poverty_rate']))

        fig, axes = plt.subplots(1, len(methods), figsize=(7 * len(methods), 6),
                                 squeeze=False)

        image = None
        for ax, method in zip(axes[0], methods):
            selected = (long['method'] == method).to_numpy()
            panel = np.full((height, width), np.nan)
            rates = long.loc[selected, 'poverty_rate'].to_numpy(dtype=float)
            panel[rows[selected], cols[selected]] = rates

            image = ax.imshow(
                panel,
                cmap=self.viz_config['cmap'],
                norm=norm,
                extent=extent,
                interpolation='nearest',
            )
            ax.set_aspect('equal')
            ax.set_axis_off()
            ax.set_title(method, fontsize=15)

        colorbar = fig.colorbar(image, ax=axes[0].tolist(), orientation='horizontal',
                                fraction=0.05, pad=0.04)
        colorbar.set_label(self.viz_config['legend_label'], fontsize=15)
        fig.suptitle(self.viz_config['title'])

        if output_path:
            fig.savefig(output_path, dpi=self.viz_config['dpi'], bbox_inches='tight')
            logger.info(f"Poverty map saved to {Path(output_path).name}")

        return fig

    @staticmethod
    def _cell_size(x, y, resolution, digits) -> Tuple[float, float]:
        if resolution is not None:
            if np.isscalar(resolution):
                return float(resolution), float(resolution)
            return float(resolution[0]), float(resolution[1])

        res_x, res_y = grid_spacing(x, digits), grid_spacing(y, digits)
        if res_x is None and res_y is None:
            raise DegenerateInputError(
                "Cannot infer cell size from a single cell; pass resolution"
            )
        # a single row or column borrows the other axis's spacing
        return res_x or res_y, res_y or res_x

    def plot_feature_importance(self, importance: pd.DataFrame,
                                top_n: int = None,
                                output_path: str = None):
        """
        Horizontal bar chart of the most important features.

        Parameters:
            importance (pd.DataFrame): Columns 'variable' and 'importance'.
            top_n (int): Number of features to show. If None, uses config.
            output_path (str): Path to save the figure. If None, doesn't save.

        Returns:
            matplotlib.figure.Figure: The figure.
        """
        if top_n is None:
            top_n = self.viz_config['importance_top_n']

        top = importance.nlargest(top_n, 'importance').iloc[::-1]

        fig, ax = plt.subplots(figsize=(8, max(4, 0.25 * len(top))))
        ax.barh(top['variable'], top['importance'])
        ax.set_xlabel('Importance')
        ax.set_ylabel('Variable')
        ax.set_title(f"Top {len(top)} Most Important Features")

        if output_path:
            fig.savefig(output_path, dpi=self.viz_config['dpi'], bbox_inches='tight')
            logger.info(f"Feature importance plot saved to {Path(output_path).name}")

        return fig


def visualize_raster(raster_path: str,
                     output_path: str = None,
                     config_path: str = None):
    """
    Main function to render raw and calibrated poverty maps from a raster.

    Parameters:
        raster_path (str): Path to the poverty raster.
        output_path (str): Path to save the figure. If None, doesn't save.
        config_path (str): Path to configuration file.

    Returns:
        matplotlib.figure.Figure: The figure.
    """
    plotter = PovertyMapPlotter(config_path=config_path)
    frame = plotter.raster_to_frame(raster_path)
    return plotter.plot_poverty_map(plotter.to_long(frame), output_path,
                                    resolution=plotter.raster_resolution(raster_path))


def main():
    """Entry point for the visualization CLI."""
    import argparse
    from dotenv import load_dotenv

    load_dotenv()

    parser = argparse.ArgumentParser(description="Plot raw and calibrated poverty maps")
    parser.add_argument("--input", "-i", type=str, help="Poverty raster path")
    parser.add_argument("--output", "-o", type=str, help="Output figure path")
    parser.add_argument("--config", "-c", type=str, help="Config file path")

    args = parser.parse_args()

    config = load_config(args.config)
    data_config = config['data']
    output_dir = resolve_output_dir(config)

    raster_path = args.input or str(output_dir / data_config['raster_file'])
    output_path = args.output or str(output_dir / data_config['map_figure_file'])

    visualize_raster(raster_path, output_path, args.config)
    print(f"Poverty map saved to {output_path}")


if __name__ == "__main__":
    main()
