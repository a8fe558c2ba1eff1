"""
Detector evaluation on labeled data.

The engine is unsupervised, but labeled scenarios (synthetic or
investigated cases) tell us how well the fused verdict separates fraud
from normal traffic:

- precision / recall / F1 of is_anomaly
- ROC-AUC and PR-AUC of the continuous scores (final and isolation-only)
- how often the clustering stage confirmed a suspicious point

Feature importance is approximated by permutation: shuffle one column,
re-score with the Isolation Forest, and measure the mean absolute score
change.
"""

from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from sklearn.metrics import (
    average_precision_score,
    confusion_matrix,
    f1_score,
    precision_score,
    recall_score,
    roc_auc_score,
)
from sklearn.utils import check_random_state

from anomaly_engine.features.feature_definitions import vectors_to_matrix
from anomaly_engine.inference.batch_predict import score_batch
from anomaly_engine.models.errors import NotTrainedError
from anomaly_engine.models.fusion import FusionModel
from anomaly_engine.models.isolation_forest import IsolationForest


def evaluate_detector(
    y_true: np.ndarray,
    scored: pd.DataFrame,
    verbose: bool = True
) -> Dict:
    """
    Compare scored predictions with known labels.

    Args:
        y_true: True labels (0 or 1), shape (N,)
        scored: Output of score_batch() for the same N rows
        verbose: Print a summary

    Returns:
        Dict with precision, recall, f1, roc_auc, pr_auc, if_roc_auc and
        confusion counts
    """
    y_true = np.asarray(y_true).astype(int)
    if len(y_true) != len(scored):
        raise ValueError(f"Length mismatch: y_true={len(y_true)}, scored={len(scored)}")

    y_pred = scored['is_anomaly'].astype(int).to_numpy()
    tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()

    # AUCs are undefined with a single class present
    has_both_classes = len(np.unique(y_true)) == 2

    results = {
        'n_samples': int(len(y_true)),
        'n_anomalies': int(y_true.sum()),
        'precision': float(precision_score(y_true, y_pred, zero_division=0)),
        'recall': float(recall_score(y_true, y_pred, zero_division=0)),
        'f1': float(f1_score(y_true, y_pred, zero_division=0)),
        'roc_auc': float(roc_auc_score(y_true, scored['final_score'])) if has_both_classes else None,
        'pr_auc': float(average_precision_score(y_true, scored['final_score'])) if has_both_classes else None,
        'if_roc_auc': float(roc_auc_score(y_true, scored['if_score'])) if has_both_classes else None,
        'true_positives': int(tp),
        'false_positives': int(fp),
        'false_negatives': int(fn),
        'true_negatives': int(tn),
        'cluster_flags': int(scored['ahc_flag'].sum()),
    }

    if verbose:
        print(f"{'=' * 70}")
        print(f"DETECTOR EVALUATION")
        print(f"{'=' * 70}")
        print(f"Samples:             {results['n_samples']:,} ({results['n_anomalies']:,} labeled anomalies)")
        print(f"Precision:           {results['precision']:.2%}")
        print(f"Recall:              {results['recall']:.2%}")
        print(f"F1:                  {results['f1']:.4f}")
        if has_both_classes:
            print(f"ROC-AUC (final):     {results['roc_auc']:.4f}")
            print(f"ROC-AUC (isolation): {results['if_roc_auc']:.4f}")
            print(f"PR-AUC (final):      {results['pr_auc']:.4f}")
        print(f"Confusion:           TP={tp} FP={fp} FN={fn} TN={tn}")
        print(f"{'=' * 70}\n")

    return results


def evaluate_on_scenario(
    model: FusionModel,
    scenario: pd.DataFrame,
    label_column: str = 'is_anomaly',
    verbose: bool = True
) -> Dict:
    """
    Score a labeled DataFrame (FEATURE_NAMES columns + label) and evaluate.

    Example:
        >>> df = generate_labeled_scenario(random_state=7)
        >>> model.train(dataframe_to_vectors(df))
        >>> metrics = evaluate_on_scenario(model, df)
    """
    if not model.is_trained:
        raise NotTrainedError("Model has not been trained yet")
    vectors = scenario[model.feature_names].to_dict(orient="records")
    scored = score_batch(model, vectors)
    return evaluate_detector(scenario[label_column].to_numpy(), scored, verbose=verbose)


# ============================================================================
# FEATURE IMPORTANCE
# ============================================================================

def analyze_feature_importance(
    forest: IsolationForest,
    vectors,
    feature_names: Optional[List[str]] = None,
    random_state=None
) -> pd.DataFrame:
    """
    Approximate feature importance by permutation.

    Note: Re-scores the whole sample once per feature. Use on sample data.

    Args:
        forest: Fitted IsolationForest
        vectors: Sample of vectors to permute
        feature_names: Labels for the output (default: forest.feature_names)
        random_state: Seed for the permutations

    Returns:
        DataFrame with columns feature, importance (descending)
    """
    rng = check_random_state(random_state)
    X, names = vectors_to_matrix(vectors, forest.feature_names)
    if feature_names is None:
        feature_names = names

    baseline_scores = forest.decision_scores(X)

    importances = []
    for i in range(X.shape[1]):
        X_permuted = X.copy()
        X_permuted[:, i] = rng.permutation(X_permuted[:, i])
        permuted_scores = forest.decision_scores(X_permuted)
        importances.append(float(np.abs(baseline_scores - permuted_scores).mean()))

    return pd.DataFrame({
        'feature': feature_names,
        'importance': importances
    }).sort_values('importance', ascending=False).reset_index(drop=True)
