"""
Batch scoring with a trained FusionModel.

Usage:
    model = FusionModel(random_state=42)
    model.train(history_vectors)
    scored = score_batch(model, new_vectors)

Output columns:
    final_score, if_score, ahc_flag, is_anomaly, confidence,
    risk_factors (';'-joined), model_version
"""

from typing import Sequence

import pandas as pd

from anomaly_engine.features.feature_definitions import to_feature_vector
from anomaly_engine.models.fusion import FusionModel


def score_batch(
    model: FusionModel,
    vectors: Sequence,
    verbose: bool = False
) -> pd.DataFrame:
    """
    Score every vector and collect the results in a DataFrame.

    Args:
        model: Trained FusionModel
        vectors: FeatureVectors, mappings or rows
        verbose: Print the score distribution

    Returns:
        One row per input vector, in input order

    Raises:
        NotTrainedError: model has never been trained
    """
    rows = []
    for result in model.predict_many(vectors):
        row = result.model_dump()
        row['risk_factors'] = ';'.join(result.risk_factors)
        rows.append(row)

    scored = pd.DataFrame(rows, columns=[
        'final_score', 'if_score', 'ahc_flag', 'is_anomaly',
        'confidence', 'risk_factors', 'model_version', 'threshold'
    ])

    if verbose:
        print_score_distribution(scored)

    return scored


def score_records(model: FusionModel, records: Sequence, verbose: bool = False,
                  **adapter_kwargs) -> pd.DataFrame:
    """Adapt raw TransactionFeatures records, then score them."""
    vectors = [to_feature_vector(record, **adapter_kwargs) for record in records]
    return score_batch(model, vectors, verbose=verbose)


def print_score_distribution(scored: pd.DataFrame) -> None:
    final_scores = scored['final_score']
    print(f"\n{'='*70}")
    print(f"ANOMALY SCORE DISTRIBUTION")
    print(f"{'='*70}")
    print(f"Samples scored:      {len(scored):,}")
    print(f"Flagged anomalies:   {int(scored['is_anomaly'].sum()):,} "
          f"({scored['is_anomaly'].mean():.2%})")
    print(f"Cluster-stage flags: {int(scored['ahc_flag'].sum()):,}")
    print(f"")
    print(f"Final Score Statistics:")
    print(f"  Mean:              {final_scores.mean():.4f}")
    print(f"  Std:               {final_scores.std():.4f}")
    print(f"  Min:               {final_scores.min():.4f}")
    print(f"  50th percentile:   {final_scores.quantile(0.50):.4f}")
    print(f"  95th percentile:   {final_scores.quantile(0.95):.4f}")
    print(f"  Max:               {final_scores.max():.4f}")
    print(f"{'='*70}\n")
