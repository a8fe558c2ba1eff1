"""
Synthetic transaction feature data.

Two generators:

1. generate_warm_start_vectors():
   Small unlabeled dataset used to train the engine before any real history
   exists, so scoring never waits on a cold model. 100 everyday
   transactions plus 10 obviously risky ones.

2. generate_labeled_scenario():
   Labeled DataFrame (is_anomaly column) of "normal" and "outlier" shaped
   transactions, for evaluation and tests.

Shapes:
    normal:  amount 0-500, daytime hours, established user, no risk flags
    outlier: amount 1000-6000, night hours, new user, high velocity,
             new payment method, international, risky merchant
"""

from typing import List

import numpy as np
import pandas as pd
from sklearn.utils import check_random_state

from anomaly_engine.features.schema import FEATURE_NAMES, FeatureVector


def dataframe_to_vectors(df: pd.DataFrame) -> List[FeatureVector]:
    """Convert the FEATURE_NAMES columns of a DataFrame into FeatureVectors."""
    missing = set(FEATURE_NAMES) - set(df.columns)
    if missing:
        raise ValueError(f"Missing feature columns: {missing}")
    return [FeatureVector(**record) for record in df[FEATURE_NAMES].to_dict(orient="records")]


# ============================================================================
# WARM START
# ============================================================================

def generate_warm_start_vectors(
    n_normal: int = 100,
    n_anomalous: int = 10,
    random_state=None
) -> List[FeatureVector]:
    """
    Build the warm-start training set.

    Args:
        n_normal: Everyday transactions
        n_anomalous: Risky transactions appended at the end
        random_state: None, int seed or numpy RandomState

    Returns:
        List of FeatureVectors, normal rows first
    """
    rng = check_random_state(random_state)
    vectors = []

    for _ in range(n_normal):
        vectors.append(FeatureVector(
            amount=rng.random_sample() * 500,
            time_of_day=rng.randint(0, 24),
            day_of_week=rng.randint(0, 7),
            user_transaction_count=rng.randint(0, 20),
            user_average_amount=rng.random_sample() * 300,
            transaction_velocity=rng.random_sample() * 3,
            is_new_payment_method=1.0 if rng.random_sample() > 0.8 else 0.0,
            is_international=1.0 if rng.random_sample() > 0.9 else 0.0,
            is_high_risk_country=1.0 if rng.random_sample() > 0.95 else 0.0,
            merchant_category_risk=1.0 if rng.random_sample() > 0.9 else 0.0,
        ))

    for _ in range(n_anomalous):
        vectors.append(FeatureVector(
            amount=rng.random_sample() * 5000 + 1000,
            time_of_day=rng.randint(0, 6),
            day_of_week=6,
            user_transaction_count=rng.randint(0, 3),
            user_average_amount=rng.random_sample() * 100,
            transaction_velocity=rng.random_sample() * 10,
            is_new_payment_method=1.0,
            is_international=1.0,
            is_high_risk_country=1.0 if rng.random_sample() > 0.5 else 0.0,
            merchant_category_risk=1.0,
        ))

    return vectors


# ============================================================================
# LABELED SCENARIO
# ============================================================================

def generate_labeled_scenario(
    n_normal: int = 90,
    n_outliers: int = 10,
    random_state=None,
    shuffle: bool = False
) -> pd.DataFrame:
    """
    Labeled scenario of normal and outlier shaped transactions.

    Args:
        n_normal: Rows with amount in [0, 500] and hours in [8, 20]
        n_outliers: Rows with amount in [2000, 6000], new payment method,
            international
        random_state: None, int seed or numpy RandomState
        shuffle: Shuffle rows (labels travel with them)

    Returns:
        DataFrame with FEATURE_NAMES columns + 'is_anomaly' (0/1)

    Example:
        >>> df = generate_labeled_scenario(random_state=42)
        >>> df['is_anomaly'].mean()
        0.1
    """
    rng = check_random_state(random_state)

    normal = pd.DataFrame({
        'amount': rng.uniform(0, 500, n_normal),
        'time_of_day': rng.randint(8, 21, n_normal).astype(float),
        'day_of_week': rng.randint(0, 7, n_normal).astype(float),
        'user_transaction_count': rng.randint(10, 41, n_normal).astype(float),
        'user_average_amount': rng.uniform(100, 300, n_normal),
        'transaction_velocity': rng.uniform(0, 2, n_normal),
        'is_new_payment_method': np.zeros(n_normal),
        'is_international': np.zeros(n_normal),
        'is_high_risk_country': np.zeros(n_normal),
        'merchant_category_risk': np.zeros(n_normal),
        'is_anomaly': np.zeros(n_normal, dtype=int),
    })

    outliers = pd.DataFrame({
        'amount': rng.uniform(2000, 6000, n_outliers),
        'time_of_day': rng.randint(0, 6, n_outliers).astype(float),
        'day_of_week': np.full(n_outliers, 6.0),
        'user_transaction_count': rng.randint(0, 3, n_outliers).astype(float),
        'user_average_amount': rng.uniform(0, 100, n_outliers),
        'transaction_velocity': rng.uniform(4, 10, n_outliers),
        'is_new_payment_method': np.ones(n_outliers),
        'is_international': np.ones(n_outliers),
        'is_high_risk_country': (rng.random_sample(n_outliers) > 0.5).astype(float),
        'merchant_category_risk': np.ones(n_outliers),
        'is_anomaly': np.ones(n_outliers, dtype=int),
    })

    df = pd.concat([normal, outliers], axis=0, ignore_index=True)
    if shuffle:
        df = df.iloc[rng.permutation(len(df))].reset_index(drop=True)
    return df
