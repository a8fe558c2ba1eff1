"""
Tests for detector evaluation, batch scoring and feature importance.
"""

import numpy as np
import pandas as pd
import pytest

from anomaly_engine.evaluation.metrics import (
    analyze_feature_importance,
    evaluate_detector,
    evaluate_on_scenario,
)
from anomaly_engine.features.schema import FEATURE_NAMES
from anomaly_engine.inference.batch_predict import score_batch, score_records
from anomaly_engine.ingestion.synthetic import dataframe_to_vectors, generate_labeled_scenario
from anomaly_engine.models.errors import NotTrainedError
from anomaly_engine.models.fusion import FusionModel


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def known_scores():
    """4 anomalies, 6 normal; top 3 scores are anomalies, one anomaly missed."""
    y_true = np.array([1, 1, 1, 1, 0, 0, 0, 0, 0, 0])
    final_scores = np.array([0.9, 0.8, 0.7, 0.4, 0.6, 0.3, 0.3, 0.2, 0.1, 0.0])

    scored = pd.DataFrame({
        'final_score': final_scores,
        'if_score': final_scores,
        'ahc_flag': [True, True, False, False, False, False, False, False, False, False],
        'is_anomaly': final_scores > 0.65,
    })
    return y_true, scored


@pytest.fixture(scope="module")
def scenario():
    return generate_labeled_scenario(n_normal=90, n_outliers=10, random_state=42)


@pytest.fixture(scope="module")
def scenario_model(scenario):
    model = FusionModel(n_trees=50, random_state=42)
    model.train(dataframe_to_vectors(scenario))
    return model


# ============================================================================
# EVALUATE DETECTOR
# ============================================================================

@pytest.mark.unit
def test_confusion_counts(known_scores):
    y_true, scored = known_scores
    metrics = evaluate_detector(y_true, scored, verbose=False)

    # Flagged: 0.9, 0.8, 0.7 -> TP=3, FP=0, FN=1
    assert metrics['true_positives'] == 3
    assert metrics['false_positives'] == 0
    assert metrics['false_negatives'] == 1
    assert metrics['true_negatives'] == 6
    assert metrics['precision'] == 1.0
    assert metrics['recall'] == 0.75
    assert metrics['cluster_flags'] == 2


@pytest.mark.unit
def test_auc_metrics(known_scores):
    y_true, scored = known_scores
    metrics = evaluate_detector(y_true, scored, verbose=False)

    # One normal (0.6) outranks one anomaly (0.4): 23 of 24 pairs ordered
    assert metrics['roc_auc'] == pytest.approx(23 / 24)
    assert metrics['if_roc_auc'] == metrics['roc_auc']
    assert 0.0 < metrics['pr_auc'] <= 1.0


@pytest.mark.unit
def test_single_class_has_no_auc():
    scored = pd.DataFrame({
        'final_score': [0.1, 0.2],
        'if_score': [0.1, 0.2],
        'ahc_flag': [False, False],
        'is_anomaly': [False, False],
    })
    metrics = evaluate_detector(np.array([0, 0]), scored, verbose=False)

    assert metrics['roc_auc'] is None
    assert metrics['precision'] == 0.0


@pytest.mark.unit
def test_length_mismatch_rejected(known_scores):
    y_true, scored = known_scores
    with pytest.raises(ValueError):
        evaluate_detector(y_true[:5], scored, verbose=False)


# ============================================================================
# SCENARIO EVALUATION
# ============================================================================

@pytest.mark.integration
def test_isolation_scores_separate_scenario(scenario, scenario_model):
    metrics = evaluate_on_scenario(scenario_model, scenario, verbose=False)

    assert metrics['n_samples'] == 100
    assert metrics['n_anomalies'] == 10
    assert metrics['if_roc_auc'] > 0.9, f"IF ROC-AUC too low: {metrics['if_roc_auc']:.4f}"
    assert metrics['roc_auc'] is not None


@pytest.mark.unit
def test_untrained_model_cannot_be_evaluated(scenario):
    with pytest.raises(NotTrainedError):
        evaluate_on_scenario(FusionModel(), scenario, verbose=False)


# ============================================================================
# BATCH SCORING
# ============================================================================

@pytest.mark.integration
def test_score_batch_columns(scenario, scenario_model):
    vectors = dataframe_to_vectors(scenario.head(5))
    scored = score_batch(scenario_model, vectors)

    assert len(scored) == 5
    assert list(scored.columns) == [
        'final_score', 'if_score', 'ahc_flag', 'is_anomaly',
        'confidence', 'risk_factors', 'model_version', 'threshold'
    ]
    assert scored['final_score'].between(0, 1).all()
    assert all(isinstance(r, str) for r in scored['risk_factors'])


@pytest.mark.integration
def test_score_records_runs_adapter(scenario_model):
    records = [{
        "amount": 5000.0,
        "userId": "u1",
        "timeOfDay": 2,
        "dayOfWeek": 6,
        "merchantCategory": "gambling",
    }]
    scored = score_records(scenario_model, records)

    assert "unusually high amount" in scored.loc[0, 'risk_factors'].split(';')
    assert "unusual hours" in scored.loc[0, 'risk_factors'].split(';')


# ============================================================================
# FEATURE IMPORTANCE
# ============================================================================

@pytest.mark.integration
def test_feature_importance(scenario, scenario_model):
    vectors = dataframe_to_vectors(scenario)
    importance = analyze_feature_importance(scenario_model.forest, vectors, random_state=0)

    assert sorted(importance['feature']) == sorted(FEATURE_NAMES)
    assert (importance['importance'] >= 0).all()
    assert importance['importance'].is_monotonic_decreasing
