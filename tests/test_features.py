"""Tests for CNN feature aggregation."""

import numpy as np
import pandas as pd
import pytest

from povmap.features import FeatureAggregator, valid_feature_rows
from povmap.utils import SchemaMismatchError


@pytest.fixture
def aggregator(config):
    return FeatureAggregator(config=config)


def test_region_mean_of_features(aggregator, feature_columns):
    df = pd.DataFrame({'adm4_code': ['R1', 'R1', 'R2']})
    for i, col in enumerate(feature_columns):
        df[col] = [2.0, 4.0, float(i)]

    aggregated = aggregator.aggregate_by_region(df).set_index('adm4_code')

    assert aggregated.loc['R1', 'feature_0'] == pytest.approx(3.0)
    assert aggregated.loc['R2', 'feature_5'] == pytest.approx(5.0)


def test_rows_with_missing_features_are_dropped(aggregator, feature_columns):
    df = pd.DataFrame({'adm4_code': ['R1', 'R1', 'R2']})
    for col in feature_columns:
        df[col] = [2.0, 4.0, 1.0]
    df.loc[1, 'feature_3'] = np.nan
    df.loc[2, 'feature_0'] = np.nan

    aggregated = aggregator.aggregate_by_region(df)

    # R2 has no complete row: absent, not zero-filled
    assert aggregated['adm4_code'].tolist() == ['R1']
    assert aggregated.loc[0, 'feature_0'] == pytest.approx(2.0)


def test_valid_rows_mask(feature_columns):
    df = pd.DataFrame(np.ones((3, len(feature_columns))), columns=feature_columns)
    df.iloc[1, 2] = np.nan

    assert valid_feature_rows(df, feature_columns).tolist() == [True, False, True]


def test_feature_columns_renamed_in_order(aggregator, feature_table):
    renamed = aggregator.rename_features(feature_table)

    assert renamed.columns.tolist() == aggregator.feature_columns + ['file_name']
    np.testing.assert_array_equal(renamed['feature_0'], feature_table['0'])


def test_feature_count_mismatch(aggregator, feature_table):
    with pytest.raises(SchemaMismatchError):
        aggregator.rename_features(feature_table.drop(columns=['5']))


def test_missing_file_name_column(aggregator, feature_table):
    with pytest.raises(SchemaMismatchError):
        aggregator.rename_features(feature_table.drop(columns=['file_name']))


def test_file_names_from_grid_id(aggregator):
    grid = pd.DataFrame({'id': [7, 42, 123456]})
    named = aggregator.attach_file_names(grid)

    assert named['file_name'].tolist() == ['000007.jpg', '000042.jpg', '123456.jpg']


def test_combine_joins_by_file_name(aggregator, grid_data, feature_table):
    features = aggregator.rename_features(feature_table.iloc[:40])
    combined = aggregator.combine(grid_data, features)

    assert len(combined) == 40
    assert set(aggregator.feature_columns) <= set(combined.columns)


def test_combine_without_matches(aggregator, grid_data, feature_table):
    features = aggregator.rename_features(feature_table)
    features['file_name'] = 'missing.jpg'

    with pytest.raises(SchemaMismatchError):
        aggregator.combine(grid_data, features)


def test_load_features_from_feather(aggregator, feature_table, tmp_path):
    path = tmp_path / "features.feather"
    feature_table.to_feather(path)

    features = aggregator.load_features(path)

    assert len(features) == len(feature_table)
    assert 'feature_5' in features.columns
