"""Tests for the poverty Random Forest model."""

import numpy as np
import pandas as pd
import pytest

from povmap.features import FeatureAggregator
from povmap.model import PovertyModel
from povmap.utils import (
    InsufficientDataError, ModelNotFittedError, SchemaMismatchError,
)


@pytest.fixture
def model(config):
    return PovertyModel(config=config)


@pytest.fixture
def training_table(feature_columns):
    rng = np.random.default_rng(1)
    n = 80
    table = pd.DataFrame(rng.uniform(size=(n, len(feature_columns))),
                         columns=feature_columns)
    table.insert(0, 'pov_rate', 0.1 + 0.6 * table['feature_0'])
    return table


def test_poverty_statistics_prefixed_and_renamed(model, poverty_statistics):
    poverty = model.prepare_poverty_statistics(poverty_statistics)

    assert poverty.columns.tolist() == ['adm4_code', 'pov_rate']
    assert poverty['adm4_code'].iloc[0] == 'ID3201001'


def test_already_prefixed_codes_unchanged(model):
    raw = pd.DataFrame({'adm4_code': ['ID3201001'], 'pov_rate_2019': [0.2]})
    poverty = model.prepare_poverty_statistics(raw)

    assert poverty['adm4_code'].tolist() == ['ID3201001']


def test_float_region_codes_prefixed_without_decimals(model):
    raw = pd.DataFrame({'adm4_code': [3201001.0, 3201002.0],
                        'pov_rate_2019': [0.2, 0.3]})
    poverty = model.prepare_poverty_statistics(raw)

    assert poverty['adm4_code'].tolist() == ['ID3201001', 'ID3201002']


def test_missing_rate_column(model, poverty_statistics):
    with pytest.raises(SchemaMismatchError):
        model.prepare_poverty_statistics(poverty_statistics.drop(columns=['pov_rate_2019']))


def test_training_table_from_regions(config, model, grid_data, feature_table,
                                     poverty_statistics):
    aggregator = FeatureAggregator(config=config)
    combined = aggregator.combine(grid_data, aggregator.rename_features(feature_table))
    aggregated = aggregator.aggregate_by_region(combined)
    poverty = model.prepare_poverty_statistics(poverty_statistics.iloc[:10])

    training = model.build_training_table(aggregated, poverty)

    assert len(training) == 10
    assert training.columns[0] == 'pov_rate'
    assert training.notna().all().all()


def test_empty_training_table(model, training_table):
    with pytest.raises(InsufficientDataError):
        model.fit(training_table.iloc[:0])


def test_fewer_rows_than_features(model, training_table):
    with pytest.raises(InsufficientDataError):
        model.fit(training_table.iloc[:5])


def test_tuning_starts_at_third_of_features(model, training_table, feature_columns):
    best, history = model.tune_mtry(training_table[feature_columns],
                                    training_table['pov_rate'])

    assert 2 in history['mtry'].tolist()
    assert best in history['mtry'].tolist()
    assert history['mtry'].between(1, len(feature_columns)).all()
    assert best == history.loc[history['oob_error'].idxmin(), 'mtry']


def test_tuning_is_deterministic(config, training_table, feature_columns):
    X, y = training_table[feature_columns], training_table['pov_rate']

    first = PovertyModel(config=config).tune_mtry(X, y)
    second = PovertyModel(config=config).tune_mtry(X, y)

    assert first[0] == second[0]
    pd.testing.assert_frame_equal(first[1], second[1])


def scripted_errors(monkeypatch, errors):
    """Replace the forest fit with a fixed OOB error per mtry."""
    monkeypatch.setattr(PovertyModel, '_oob_error',
                        lambda self, X, y, mtry: errors[mtry])


def test_tuning_stops_below_improvement_threshold(model, monkeypatch):
    # 8 improves on 9 by less than 1%, 13 is worse than the left-side best
    scripted_errors(monkeypatch, {11: 1.0, 10: 0.9, 9: 0.85, 8: 0.845,
                                  13: 0.86, 15: 0.5})

    best, history = model.tune_mtry(np.zeros((40, 33)), np.zeros(40))

    assert history['mtry'].tolist() == [8, 9, 10, 11, 13]
    assert best == 8


def test_tuning_accepts_right_step_against_left_best(model, monkeypatch):
    scripted_errors(monkeypatch, {11: 1.0, 10: 0.9, 9: 0.85, 8: 0.845,
                                  13: 0.80, 15: 0.84})

    best, history = model.tune_mtry(np.zeros((40, 33)), np.zeros(40))

    assert history['mtry'].tolist() == [8, 9, 10, 11, 13, 15]
    assert history['oob_error'].tolist() == [0.845, 0.85, 0.9, 1.0, 0.80, 0.84]
    assert best == 13


def test_tuning_with_three_features_evaluates_once(model, monkeypatch):
    scripted_errors(monkeypatch, {1: 0.5})

    best, history = model.tune_mtry(np.zeros((40, 3)), np.zeros(40))

    assert history['mtry'].tolist() == [1]
    assert best == 1


def test_importance_ranks_signal_feature_first(model, training_table):
    model.fit(training_table)
    importance = model.feature_importance()

    assert importance['variable'].iloc[0] == 'feature_0'
    assert importance['importance'].is_monotonic_decreasing
    assert len(importance) == 6


def test_predict_before_fit(model, feature_columns):
    grid = pd.DataFrame(np.zeros((2, len(feature_columns))), columns=feature_columns)
    grid['id'] = [1, 2]

    with pytest.raises(ModelNotFittedError):
        model.predict(grid)


def test_predict_skips_incomplete_rows(model, training_table, feature_columns):
    model.fit(training_table)
    grid = training_table[feature_columns].iloc[:4].copy()
    grid['id'] = [10, 11, 12, 13]
    grid.loc[grid.index[1], 'feature_2'] = np.nan

    predictions = model.predict(grid)

    assert predictions['id'].tolist() == [10, 12, 13]
    assert predictions['pov_rate'].notna().all()


def test_save_and_load(config, model, training_table, feature_columns, tmp_path):
    model.fit(training_table)
    grid = training_table[feature_columns].iloc[:3].copy()
    grid['id'] = [1, 2, 3]
    path = tmp_path / "model.joblib"

    model.save(path)
    restored = PovertyModel(config=config)
    restored.load(path)

    assert restored.best_mtry == model.best_mtry
    pd.testing.assert_frame_equal(restored.predict(grid), model.predict(grid))
