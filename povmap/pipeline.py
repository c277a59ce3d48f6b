"""
End-to-End Pipeline for poverty mapping.

This module provides a unified interface to run the complete pipeline
from classified grids and CNN features to a calibrated poverty raster.
"""

import pandas as pd
from typing import Dict, Any
from pathlib import Path

from .night_lights import NightLightClassifier
from .features import FeatureAggregator
from .model import PovertyModel
from .calibration import PovertyCalibrator
from .visualization import PovertyMapPlotter
from .utils import load_config, logger, read_table, resolve_data_dir, resolve_output_dir


class PovertyMappingPipeline:
    """
    End-to-end pipeline for grid-level poverty mapping.
    """

    def __init__(self, config_path: str = None, config: Dict[str, Any] = None,
                 data_dir: str = None, output_dir: str = None):
        """
        Initialize the pipeline.

        Parameters:
            config_path (str): Path to configuration file.
            config (Dict[str, Any]): Configuration dictionary; overrides config_path.
            data_dir (str): Input directory. If None, uses LOCAL_FILE_PATH or config.
            output_dir (str): Output directory. If None, uses config.
        """
        self.config = config if config is not None else load_config(config_path)
        self.data_config = self.config['data']
        self.data_dir = resolve_data_dir(self.config, data_dir)
        self.output_dir = resolve_output_dir(self.config, output_dir)

        self.classifier = NightLightClassifier(config=self.config)
        self.aggregator = FeatureAggregator(config=self.config)
        self.model = PovertyModel(config=self.config)
        self.calibrator = PovertyCalibrator(config=self.config)
        self.plotter = PovertyMapPlotter(config=self.config)

    def input_path(self, key: str) -> Path:
        """
        Path of a configured input file under the data directory.

        Parameters:
            key (str): File key in the data section of the config.

        Returns:
            Path: Input file path.
        """
        return self.data_dir / self.data_config[key]

    def output_path(self, key: str) -> Path:
        """
        Path of a configured output file under the output directory.

        Parameters:
            key (str): File key in the data section of the config.

        Returns:
            Path: Output file path.
        """
        return self.output_dir / self.data_config[key]

    def run_classification(self) -> pd.DataFrame:
        """
        Classify grids by night-light intensity and save the result.

        Returns:
            pd.DataFrame: Classified grid table.
        """
        grids = self.classifier.load_data(self.input_path('grid_file'),
                                          self.input_path('nl_pop_file'))
        classified = self.classifier.classify(grids)
        self.classifier.save_data(classified, self.input_path('classified_grid_file'))
        return classified

    def run_model(self) -> pd.DataFrame:
        """
        Aggregate features, fit the model, predict and calibrate grid poverty.

        Returns:
            pd.DataFrame: Calibrated grid table.
        """
        # Step 1: Load inputs
        logger.info("\n[Step 1/5] Loading grid data, features and poverty statistics...")
        grid = read_table(self.input_path('grid_data_file'))
        features = self.aggregator.load_features(self.input_path('features_file'))
        poverty = self.model.load_poverty_statistics(self.input_path('poverty_file'))

        # Step 2: Aggregate features by region
        logger.info("\n[Step 2/5] Aggregating CNN features by region...")
        combined = self.aggregator.combine(grid, features)
        aggregated = self.aggregator.aggregate_by_region(combined)

        # Step 3: Fit the model
        logger.info("\n[Step 3/5] Tuning and training Random Forest...")
        training = self.model.build_training_table(aggregated, poverty)
        self.model.fit(training)
        self.model.save(self.output_path('model_file'))

        importance = self.model.feature_importance()
        importance.to_csv(self.output_path('importance_file'), index=False)
        self.plotter.plot_feature_importance(
            importance, output_path=self.output_path('importance_figure_file')
        )

        # Step 4: Predict grid-level poverty
        logger.info("\n[Step 4/5] Predicting grid-level poverty...")
        predictions = self.model.predict(combined)

        # Step 5: Calibrate and save
        logger.info("\n[Step 5/5] Calibrating predictions...")
        calibrated = self.calibrator.calibrate(combined, predictions, poverty)
        self.calibrator.rasterize(calibrated, self.output_path('raster_file'))
        self.calibrator.save_geopackage(calibrated, self.output_path('grid_output_file'))

        return calibrated

    def run_visualization(self):
        """
        Plot raw and calibrated poverty maps from the saved raster.
        """
        raster_path = self.output_path('raster_file')
        frame = self.plotter.raster_to_frame(raster_path)
        return self.plotter.plot_poverty_map(
            self.plotter.to_long(frame),
            output_path=self.output_path('map_figure_file'),
            resolution=self.plotter.raster_resolution(raster_path),
        )

    def run(self) -> pd.DataFrame:
        """
        Run the complete pipeline.

        Returns:
            pd.DataFrame: Calibrated grid table.
        """
        logger.info("=" * 60)
        logger.info("Starting Poverty Mapping Pipeline")
        logger.info("=" * 60)

        self.run_classification()
        calibrated = self.run_model()
        self.run_visualization()

        logger.info("\n" + "=" * 60)
        logger.info("Pipeline Complete!")
        logger.info("=" * 60)

        return calibrated


def run_pipeline(config_path: str = None,
                 data_dir: str = None,
                 output_dir: str = None) -> pd.DataFrame:
    """
    Convenience function to run the complete pipeline.

    Parameters:
        config_path (str): Path to configuration file.
        data_dir (str): Input directory.
        output_dir (str): Output directory.

    Returns:
        pd.DataFrame: Calibrated grid table.
    """
    pipeline = PovertyMappingPipeline(config_path=config_path,
                                      data_dir=data_dir,
                                      output_dir=output_dir)
    return pipeline.run()


def main():
    """Entry point for the pipeline CLI."""
    import argparse
    from dotenv import load_dotenv

    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Run the grid-level poverty mapping pipeline"
    )
    parser.add_argument("--config", "-c", type=str, help="Config file path")
    parser.add_argument("--data-dir", type=str, help="Input data directory")
    parser.add_argument("--output-dir", type=str, help="Output directory")
    parser.add_argument("--step", type=str,
                        choices=['all', 'classify', 'model', 'visualize'],
                        default='all',
                        help="Which step(s) to run")

    args = parser.parse_args()

    pipeline = PovertyMappingPipeline(config_path=args.config,
                                      data_dir=args.data_dir,
                                      output_dir=args.output_dir)

    if args.step == 'all':
        pipeline.run()
    elif args.step == 'classify':
        pipeline.run_classification()
    elif args.step == 'model':
        pipeline.run_model()
    elif args.step == 'visualize':
        pipeline.run_visualization()

    print(f"\nPipeline '{args.step}' complete. Outputs in {pipeline.output_dir}")


if __name__ == "__main__":
    main()
