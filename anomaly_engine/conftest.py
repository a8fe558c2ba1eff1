"""
Pytest configuration and shared fixtures for the anomaly engine tests.

Scenario used across model, evaluation and API tests:
- 90 "normal" vectors: amount 0-500, daytime hours, established users,
  no risk flags
- 10 "outlier" vectors in 5 tight pairs: amount 2000-5850, night hours,
  new users, high velocity, new payment method, international

The pairs give the clustering stage a confirmed-cluster case: the fused
score of a query next to a pair is boosted by stage agreement. Seeded
runs over generate_labeled_scenario() cover the unpaired case.
"""

import duckdb
import numpy as np
import pytest

from anomaly_engine.features.schema import FeatureVector
from anomaly_engine.models.fusion import FusionModel


OUTLIER_PAIR_AMOUNTS = [2000.0, 2800.0, 3700.0, 4700.0, 5800.0]


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (trains full models, slower)"
    )
    config.addinivalue_line(
        "markers",
        "unit: mark test as unit test (fast, isolated)"
    )


def make_normal_vectors(n=90, seed=42):
    rng = np.random.RandomState(seed)
    return [
        FeatureVector(
            amount=rng.uniform(0, 500),
            time_of_day=rng.randint(8, 21),
            day_of_week=rng.randint(0, 7),
            user_transaction_count=rng.randint(10, 41),
            user_average_amount=rng.uniform(100, 300),
            transaction_velocity=rng.uniform(0, 2),
        )
        for _ in range(n)
    ]


def make_outlier_vectors(seed=7):
    """Two close points around each OUTLIER_PAIR_AMOUNTS entry."""
    rng = np.random.RandomState(seed)
    vectors = []
    for base in OUTLIER_PAIR_AMOUNTS:
        for offset in (0.0, 50.0):
            vectors.append(FeatureVector(
                amount=base + offset,
                time_of_day=rng.randint(1, 5),
                day_of_week=rng.randint(0, 7),
                user_transaction_count=rng.randint(0, 3),
                user_average_amount=rng.uniform(40, 80),
                transaction_velocity=rng.uniform(5, 8),
                is_new_payment_method=1.0,
                is_international=1.0,
            ))
    return vectors


@pytest.fixture
def normal_vectors():
    return make_normal_vectors()


@pytest.fixture
def outlier_vectors():
    return make_outlier_vectors()


@pytest.fixture
def scenario_vectors(normal_vectors, outlier_vectors):
    """90 normals followed by 10 outliers."""
    return normal_vectors + outlier_vectors


@pytest.fixture
def outlier_query():
    """Fresh outlier-shaped vector at the edge of the highest outlier pair."""
    return FeatureVector(
        amount=5850.0,
        time_of_day=1,
        day_of_week=6,
        user_transaction_count=0,
        user_average_amount=40.0,
        transaction_velocity=8.0,
        is_new_payment_method=1.0,
        is_international=1.0,
    )


@pytest.fixture
def normal_query():
    """Fresh normal-shaped vector in the middle of the normal range."""
    return FeatureVector(
        amount=250.0,
        time_of_day=14,
        day_of_week=3,
        user_transaction_count=25,
        user_average_amount=200.0,
        transaction_velocity=1.0,
    )


@pytest.fixture
def trained_fusion(scenario_vectors):
    model = FusionModel(random_state=42)
    model.train(scenario_vectors)
    return model


@pytest.fixture
def history_db(tmp_path):
    """DuckDB file with 3 stored feature rows, 2 of them valid (u1, u2)."""
    path = str(tmp_path / "history.duckdb")
    con = duckdb.connect(path)
    con.execute("""
        CREATE TABLE transaction_features (
            amount DOUBLE,
            user_id VARCHAR,
            time_of_day INTEGER,
            day_of_week INTEGER,
            user_transaction_count INTEGER,
            user_average_amount DOUBLE,
            transaction_velocity DOUBLE,
            is_new_payment_method BOOLEAN,
            is_international BOOLEAN,
            is_high_risk_country BOOLEAN,
            merchant_category VARCHAR,
            created_at TIMESTAMP
        )
    """)
    con.execute("""
        INSERT INTO transaction_features VALUES
            (120.0, 'u2', 14, 2, 12, 110.0, 0.5, false, false, NULL, 'groceries', '2026-01-02 10:00:00'),
            (4200.0, 'u1', 3, 6, 1, 60.0, 6.0, true, true, true, 'gambling', '2026-01-01 10:00:00'),
            (-5.0, 'u3', 12, 1, 3, 20.0, 0.0, false, false, false, NULL, '2026-01-03 10:00:00')
    """)
    con.close()
    return path
