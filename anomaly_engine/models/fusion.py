"""
Sequential Fusion Model: Isolation Forest -> Hierarchical Clustering

Purpose:
Orchestrate training of both stages over an append-only history buffer,
and score single transactions into an AnomalyResult with a fused score,
verdict, confidence and an ordered list of human-readable risk factors.

Training (every call rebuilds both stages from scratch):
1. Append new vectors to the history buffer
2. Fit a new Isolation Forest on the whole history
3. Candidates = history rows with IF score > if_threshold
4. Fit a new clustering stage on the candidates, or on the whole history
   when there are fewer than min_candidates (degraded, logged as warning)
5. Publish forest + clusters + history in one reference swap

Scoring:
- if_score <= if_threshold: final = if_score, clustering stage not consulted
- both stages flag:         final = min(1, if_score * 1.2)
- stages disagree:          final = if_score * 0.8
- is_anomaly = final > final_threshold
- confidence = min(1, |final - final_threshold| * 2)

Concurrency:
train() is serialized by a lock. predict() takes one snapshot of the
published state and never sees a half-built forest or cluster set.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field
from sklearn.utils import check_random_state

from anomaly_engine.features.feature_definitions import (
    lookup_feature,
    row_to_dict,
    vector_to_row,
    vectors_to_matrix,
)
from anomaly_engine.models.errors import InvalidInputError, NotTrainedError
from anomaly_engine.models.hierarchical import HierarchicalModel
from anomaly_engine.models.isolation_forest import IsolationForest


logger = logging.getLogger(__name__)

MODEL_VERSION = "2.0.0"

AGREEMENT_BOOST = 1.2
DISAGREEMENT_DAMPING = 0.8


# ============================================================================
# RESULT TYPES
# ============================================================================

class AnomalyResult(BaseModel):
    """Snapshot of one prediction. Holds no reference back to the model."""
    final_score: float = Field(..., ge=0, le=1)
    if_score: float = Field(..., ge=0, le=1)
    ahc_flag: bool
    is_anomaly: bool
    confidence: float = Field(..., ge=0, le=1)
    risk_factors: List[str] = Field(default_factory=list)
    model_version: str = MODEL_VERSION
    threshold: float = Field(..., description="final_threshold used for is_anomaly")

    class Config:
        frozen = True


class TrainingSummary(BaseModel):
    n_new: int
    n_history: int
    n_candidates: int
    degraded: bool
    forest_threshold: float
    duration_ms: float

    class Config:
        frozen = True


# ============================================================================
# FUSION AND EXPLANATION RULES
# ============================================================================

def fuse_scores(if_score: float, ahc_flag: bool, if_threshold: float) -> float:
    if if_score <= if_threshold:
        return if_score
    if ahc_flag:
        return min(1.0, if_score * AGREEMENT_BOOST)
    return if_score * DISAGREEMENT_DAMPING


def compute_confidence(final_score: float, final_threshold: float) -> float:
    """Distance from the decision boundary, clipped to [0, 1]."""
    return min(1.0, abs(final_score - final_threshold) * 2)


def _feature(features: Dict[str, float], name: str) -> float:
    value = lookup_feature(features, name)
    return 0.0 if value is None else value


# (label, predicate(features, if_score, ahc_flag)) in output order
RiskRule = Tuple[str, Callable[[Dict[str, float], float, bool], bool]]

RISK_RULES: List[RiskRule] = [
    ("high isolation score", lambda f, s, a: s > 0.8),
    ("small/distant cluster membership", lambda f, s, a: a),
    ("unusually high amount", lambda f, s, a: _feature(f, 'amount') > 1000),
    ("unusual hours", lambda f, s, a: _feature(f, 'time_of_day') < 6 or _feature(f, 'time_of_day') > 22),
    ("new account", lambda f, s, a: _feature(f, 'user_transaction_count') < 5),
    ("high velocity", lambda f, s, a: _feature(f, 'transaction_velocity') > 3),
    ("new payment method", lambda f, s, a: bool(_feature(f, 'is_new_payment_method'))),
    ("international", lambda f, s, a: bool(_feature(f, 'is_international'))),
    ("high-risk country", lambda f, s, a: bool(_feature(f, 'is_high_risk_country'))),
]


def explain_risk(features: Dict[str, float], if_score: float, ahc_flag: bool) -> List[str]:
    return [label for label, rule in RISK_RULES if rule(features, if_score, ahc_flag)]


# ============================================================================
# MODEL
# ============================================================================

class _FittedState:
    """Everything predict() needs, published as a single reference."""

    __slots__ = ('forest', 'hierarchy', 'summary')

    def __init__(self, forest: IsolationForest, hierarchy: HierarchicalModel,
                 summary: TrainingSummary):
        self.forest = forest
        self.hierarchy = hierarchy
        self.summary = summary


class FusionModel:
    """
    Two-stage anomaly scorer with an append-only training history.

    Args:
        feature_names: Fixed column order (inferred from the first training
            vector if None)
        final_threshold: Cut-off on the fused score
        if_threshold: Isolation score above which the clustering stage is
            consulted (independent of the forest's own threshold_)
        n_trees, max_samples, max_depth, contamination: Isolation Forest config
        n_clusters, ahc_anomaly_threshold: Clustering stage config
        min_candidates: Fewer candidates than this -> cluster the full history
        random_state: None, int seed or numpy RandomState

    Example:
        >>> model = FusionModel(random_state=42)
        >>> model.train(history_vectors)
        >>> result = model.predict(vector)
        >>> result.is_anomaly, result.risk_factors
        (True, ['unusually high amount', 'new payment method'])
    """

    def __init__(
        self,
        feature_names: Optional[List[str]] = None,
        final_threshold: float = 0.65,
        if_threshold: float = 0.5,
        n_trees: int = 100,
        max_samples: int = 256,
        max_depth: int = 8,
        contamination: float = 0.1,
        n_clusters: int = 5,
        ahc_anomaly_threshold: float = 2.0,
        min_candidates: int = 5,
        random_state=None
    ):
        self.feature_names = list(feature_names) if feature_names else None
        self.final_threshold = final_threshold
        self.if_threshold = if_threshold
        self.n_trees = n_trees
        self.max_samples = max_samples
        self.max_depth = max_depth
        self.contamination = contamination
        self.n_clusters = n_clusters
        self.ahc_anomaly_threshold = ahc_anomaly_threshold
        self.min_candidates = min_candidates

        self._rng = check_random_state(random_state)
        self._train_lock = threading.Lock()
        self._history: Optional[np.ndarray] = None
        self._state: Optional[_FittedState] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_trained(self) -> bool:
        return self._state is not None

    @property
    def n_history(self) -> int:
        history = self._history
        return 0 if history is None else len(history)

    @property
    def last_training(self) -> Optional[TrainingSummary]:
        state = self._state
        return None if state is None else state.summary

    @property
    def forest(self) -> IsolationForest:
        return self._get_state().forest

    @property
    def hierarchy(self) -> HierarchicalModel:
        return self._get_state().hierarchy

    def _get_state(self) -> _FittedState:
        state = self._state
        if state is None:
            raise NotTrainedError("Model has not been trained yet")
        return state

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, new_vectors) -> TrainingSummary:
        """
        Append new_vectors to the history and rebuild both stages.

        An empty batch retrains on the existing history.

        Raises:
            InvalidInputError: no history at all, or malformed vectors
        """
        with self._train_lock:
            start_time = time.time()

            if new_vectors is not None and len(new_vectors) > 0:
                new_rows, feature_names = vectors_to_matrix(new_vectors, self.feature_names)
                if self._history is None:
                    history = new_rows
                else:
                    history = np.vstack([self._history, new_rows])
            elif self._history is not None:
                new_rows = self._history[:0]
                feature_names = self.feature_names
                history = self._history
            else:
                raise InvalidInputError("Cannot train: no history and no new vectors")

            forest = IsolationForest(
                n_trees=self.n_trees,
                max_samples=self.max_samples,
                max_depth=self.max_depth,
                contamination=self.contamination,
                feature_names=feature_names,
                random_state=self._rng,
            )
            forest.fit(history)

            if_scores = forest.decision_scores(history)
            candidates = history[if_scores > self.if_threshold]

            hierarchy = HierarchicalModel(
                n_clusters=self.n_clusters,
                anomaly_threshold=self.ahc_anomaly_threshold,
                feature_names=feature_names,
            )
            degraded = len(candidates) < self.min_candidates
            if degraded:
                logger.warning(
                    "Not enough potential anomalies (%d < %d), training clustering stage on all %d rows",
                    len(candidates), self.min_candidates, len(history)
                )
                hierarchy.fit(history)
            else:
                hierarchy.fit(candidates)

            summary = TrainingSummary(
                n_new=len(new_rows),
                n_history=len(history),
                n_candidates=len(candidates),
                degraded=degraded,
                forest_threshold=forest.threshold_,
                duration_ms=(time.time() - start_time) * 1000,
            )

            # Publish
            self.feature_names = feature_names
            self._history = history
            self._state = _FittedState(forest, hierarchy, summary)

            logger.info(
                "Model trained with %d transactions, %d potential anomalies (%.1fms)",
                summary.n_history, summary.n_candidates, summary.duration_ms
            )
            return summary

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def predict(self, vector) -> AnomalyResult:
        """
        Score one feature vector.

        Raises:
            NotTrainedError: train() has never completed
        """
        state = self._get_state()
        feature_names = state.forest.feature_names
        row = vector_to_row(vector, feature_names)

        if_score = state.forest.decision_score(row)

        # Clustering stage only runs on points the forest finds suspicious
        ahc_flag = False
        if if_score > self.if_threshold:
            ahc_flag = state.hierarchy.predict_one(row)

        final_score = fuse_scores(if_score, ahc_flag, self.if_threshold)

        return AnomalyResult(
            final_score=final_score,
            if_score=if_score,
            ahc_flag=ahc_flag,
            is_anomaly=final_score > self.final_threshold,
            confidence=compute_confidence(final_score, self.final_threshold),
            risk_factors=explain_risk(row_to_dict(row, feature_names), if_score, ahc_flag),
            model_version=MODEL_VERSION,
            threshold=self.final_threshold,
        )

    def predict_many(self, vectors) -> List[AnomalyResult]:
        return [self.predict(vector) for vector in vectors]
