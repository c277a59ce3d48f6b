"""
Poverty Mapping Pipeline

Classifies grid cells by night-light intensity, models regional poverty
from CNN image features, and calibrates grid-level predictions to
official statistics.
"""

from .night_lights import NightLightClassifier, classify_night_lights
from .features import FeatureAggregator, valid_feature_rows
from .model import PovertyModel
from .calibration import PovertyCalibrator
from .visualization import PovertyMapPlotter, visualize_raster
from .pipeline import PovertyMappingPipeline, run_pipeline
from .utils import (
    load_config,
    PovmapError,
    SchemaMismatchError,
    DegenerateInputError,
    InsufficientDataError,
    ModelNotFittedError,
)

__all__ = [
    'NightLightClassifier',
    'classify_night_lights',
    'FeatureAggregator',
    'valid_feature_rows',
    'PovertyModel',
    'PovertyCalibrator',
    'PovertyMapPlotter',
    'visualize_raster',
    'PovertyMappingPipeline',
    'run_pipeline',
    'load_config',
    'PovmapError',
    'SchemaMismatchError',
    'DegenerateInputError',
    'InsufficientDataError',
    'ModelNotFittedError',
]

__version__ = '0.1.0'
