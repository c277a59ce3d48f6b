"""
Night-Light Classification Module for the poverty mapping pipeline.

Classifies grid cells into three night-light intensity tiers (low, medium,
high) with a univariate Gaussian mixture. The tiers are used to label
satellite imagery for CNN training.
"""

import pandas as pd
import numpy as np
from typing import Dict, Any
from pathlib import Path
from sklearn.mixture import GaussianMixture

from .utils import (
    load_config, logger, log_dataframe_info, read_table,
    validate_dataframe_columns, resolve_data_dir, DegenerateInputError,
)


class NightLightClassifier:
    """
    Class to classify grid cells by night-light intensity.

    Mixture component indices are not ordered by intensity, so the
    low/medium/high tier of each class is derived after fitting from the
    class means.
    """

    def __init__(self, config: Dict[str, Any] = None, config_path: str = None):
        """
        Initialize the NightLightClassifier.

        Parameters:
            config (Dict[str, Any]): Configuration dictionary. If None, loads from config_path.
            config_path (str): Path to configuration file. If None, uses default.
        """
        if config is None:
            config = load_config(config_path)

        self.config = config
        self.nl_config = config['night_lights']
        self.columns = config['columns']
        self.model = None

    def load_data(self, grid_path: str, nl_pop_path: str) -> pd.DataFrame:
        """
        Load the grid table and merge night-light/population values onto it.

        Parameters:
            grid_path (str): Path to the grid table (coordinates, admin codes).
            nl_pop_path (str): Path to the night-light and population table.

        Returns:
            pd.DataFrame: Grid table with night-light values attached.
        """
        id_col = self.columns['id']

        grid = read_table(grid_path)
        nl_pop = read_table(nl_pop_path)
        validate_dataframe_columns(grid, [id_col], "Grid table")
        validate_dataframe_columns(nl_pop, [id_col, self.columns['night_light']],
                                   "Night-light table")

        df = grid.merge(nl_pop, on=id_col, how='left')
        log_dataframe_info(df, "Merged grid data")
        return df

    def clean_night_light_values(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Replace non-positive night-light values with the smallest positive one.

        Values <= 0 come from sensor noise. They are replaced before fitting
        because near-zero noise distorts the mixture fit.

        Parameters:
            df (pd.DataFrame): Grid table with a night-light column.

        Returns:
            pd.DataFrame: Copy with non-positive values replaced.
        """
        nl_col = self.columns['night_light']
        validate_dataframe_columns(df, [nl_col], "Grid table")
        df = df.copy()

        values = df[nl_col]
        positive = values[values > 0]
        if positive.empty:
            raise DegenerateInputError(
                f"No positive values in {nl_col}; cannot derive a replacement value"
            )

        non_positive = values <= 0
        replacement = positive.min()
        df.loc[non_positive, nl_col] = replacement

        logger.info(f"Replaced {int(non_positive.sum())} non-positive night-light "
                   f"values with {replacement:.4f}")
        return df

    def fit(self, values) -> GaussianMixture:
        """
        Fit a univariate Gaussian mixture with component-specific variances.

        Parameters:
            values: Night-light values (1-D array-like, no missing values).

        Returns:
            GaussianMixture: Fitted mixture model.
        """
        X = np.asarray(values, dtype=float).reshape(-1, 1)
        n_components = self.nl_config['n_components']

        if len(X) < n_components:
            raise DegenerateInputError(
                f"Need at least {n_components} values to fit {n_components} "
                f"components, got {len(X)}"
            )

        self.model = GaussianMixture(
            n_components=n_components,
            covariance_type=self.nl_config['covariance_type'],
            n_init=self.nl_config['n_init'],
            random_state=self.nl_config['random_state'],
        )
        self.model.fit(X)

        logger.info(f"Gaussian mixture fitted on {len(X)} values "
                   f"(converged: {self.model.converged_}, "
                   f"BIC: {self.model.bic(X):.2f})")
        logger.info(f"Component means: {np.round(self.model.means_.ravel(), 4).tolist()}")
        return self.model

    def classify(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Assign each grid cell a night-light class (1..n_components) and tier.

        Rows with a missing night-light value are left unclassified.

        Parameters:
            df (pd.DataFrame): Grid table with a night-light column.

        Returns:
            pd.DataFrame: Copy with class and tier columns added.
        """
        nl_col = self.columns['night_light']
        class_col = self.columns['night_light_class']

        df = self.clean_night_light_values(df)

        observed = df[nl_col].notna()
        if not observed.all():
            logger.warning(f"{int((~observed).sum())} grids have no night-light "
                          f"value and will not be classified")

        self.fit(df.loc[observed, nl_col])

        X = df.loc[observed, nl_col].to_numpy(dtype=float).reshape(-1, 1)
        df[class_col] = pd.Series(pd.NA, index=df.index, dtype='Int64')
        df.loc[observed, class_col] = self.model.predict(X) + 1

        df = self.derive_tiers(df)
        logger.info(f"\nClassification Summary:\n{self.summarize_classes(df)}")
        return df

    def derive_tiers(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Map night-light classes to semantic tiers by their mean value.

        The class with the lowest mean night light becomes the first tier
        ('low'), the highest the last ('high').
        """
        nl_col = self.columns['night_light']
        class_col = self.columns['night_light_class']
        tier_col = self.columns['night_light_tier']
        tiers = self.nl_config['tiers']

        df = df.copy()
        class_means = df.groupby(class_col)[nl_col].mean().sort_values()

        # Fewer observed classes than tiers: keep the extremes as low/high
        if len(class_means) == len(tiers):
            names = tiers
        elif len(class_means) == 1:
            names = [tiers[0]]
        else:
            names = [tiers[0]] + tiers[1:-1][:len(class_means) - 2] + [tiers[-1]]

        mapping = dict(zip(class_means.index, names))
        df[tier_col] = df[class_col].map(mapping)

        logger.info(f"Night-light tier mapping: {mapping}")
        return df

    def summarize_classes(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Summarize night-light value range and grid count per class.

        Parameters:
            df (pd.DataFrame): Classified grid table.

        Returns:
            pd.DataFrame: One row per class with min, max, count and tier.
        """
        nl_col = self.columns['night_light']
        class_col = self.columns['night_light_class']
        tier_col = self.columns['night_light_tier']

        summary = df.groupby(class_col).agg(
            min_nl=(nl_col, 'min'),
            max_nl=(nl_col, 'max'),
            number_of_grids=(nl_col, 'size'),
        )

        if tier_col in df.columns:
            summary['tier'] = df.groupby(class_col)[tier_col].first()

        return summary

    def save_data(self, df: pd.DataFrame, file_path: str) -> None:
        """
        Save the classified grid table to CSV.

        Parameters:
            df (pd.DataFrame): Classified grid table.
            file_path (str): Path to output file.
        """
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(file_path, index=False)
        logger.info(f"Classified grids saved to {file_path.name}")


def classify_night_lights(grid_path: str,
                          nl_pop_path: str,
                          output_path: str = None,
                          config_path: str = None) -> pd.DataFrame:
    """
    Main function to classify grids by night-light intensity.

    Parameters:
        grid_path (str): Path to the grid table.
        nl_pop_path (str): Path to the night-light/population table.
        output_path (str): Path to output CSV. If None, doesn't save.
        config_path (str): Path to configuration file.

    Returns:
        pd.DataFrame: Classified grid table.
    """
    classifier = NightLightClassifier(config_path=config_path)

    df = classifier.load_data(grid_path, nl_pop_path)
    df_classified = classifier.classify(df)

    if output_path:
        classifier.save_data(df_classified, output_path)

    return df_classified


def main():
    """Entry point for the night-light classification CLI."""
    import argparse
    from dotenv import load_dotenv

    load_dotenv()

    parser = argparse.ArgumentParser(description="Classify grids by night-light intensity")
    parser.add_argument("--grid", type=str, help="Grid table path")
    parser.add_argument("--nl-pop", type=str, help="Night-light/population table path")
    parser.add_argument("--output", "-o", type=str, help="Output file path")
    parser.add_argument("--config", "-c", type=str, help="Config file path")

    args = parser.parse_args()

    # Load config to get default file paths
    config = load_config(args.config)
    data_config = config['data']
    data_dir = resolve_data_dir(config)

    grid_path = args.grid or str(data_dir / data_config['grid_file'])
    nl_pop_path = args.nl_pop or str(data_dir / data_config['nl_pop_file'])
    output_path = args.output or str(data_dir / data_config['classified_grid_file'])

    df = classify_night_lights(grid_path, nl_pop_path, output_path, args.config)
    print(f"Classification complete. Output shape: {df.shape}")


if __name__ == "__main__":
    main()
