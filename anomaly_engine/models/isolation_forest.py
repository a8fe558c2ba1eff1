"""
Stage 1: Isolation Forest (density estimation)

Purpose:
Score how easy a transaction is to isolate with random axis-aligned splits.
Anomalies sit in sparse regions, so they reach a leaf after fewer splits.

Algorithm:
- n_trees trees, each built on max_samples rows drawn WITH replacement
  (duplicates are expected when the history is smaller than max_samples)
- At each node: random feature, random threshold uniform in [min, max],
  left = value < threshold, right = value >= threshold
- Leaf when depth >= max_depth, <= 1 sample, or the chosen feature is
  constant at the node
- Path length = edges walked + leaf_adjustment(leaf size)
- score = 2 ** (-mean_path_length / leaf_adjustment(max_samples)), in (0, 1]

Score arithmetic is done with Python floats in tree order so results stay
comparable with other implementations of the same scoring rule.

The forest's own threshold_ (contamination quantile) is only used by
predict(). The fusion model compares raw scores against its own
if_threshold instead.
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
from sklearn.utils import check_random_state

from anomaly_engine.features.feature_definitions import vectors_to_matrix, vector_to_row
from anomaly_engine.models.errors import NotTrainedError


logger = logging.getLogger(__name__)

EULER_GAMMA = 0.5772156649


def leaf_adjustment(n: int) -> float:
    """
    Expected extra path length needed to isolate a point in a leaf of n samples.

    c(n) = 2 * (ln(n) + gamma) - 2 * (n - 1) / n, and 0 for n <= 1.

    Example:
        >>> leaf_adjustment(1)
        0.0
        >>> round(leaf_adjustment(2), 4)
        1.5407
    """
    if n <= 1:
        return 0.0
    return 2 * (math.log(n) + EULER_GAMMA) - (2 * (n - 1)) / n


# ============================================================================
# TREE
# ============================================================================

class _Leaf:
    __slots__ = ('size',)

    def __init__(self, size: int):
        self.size = size


class _Split:
    __slots__ = ('feature', 'threshold', 'left', 'right')

    def __init__(self, feature: int, threshold: float, left, right):
        self.feature = feature
        self.threshold = threshold
        self.left = left
        self.right = right


class IsolationTree:
    """One immutable isolation tree. Owned by the forest that built it."""

    __slots__ = ('root',)

    def __init__(self, root):
        self.root = root

    def path_length(self, row: Sequence[float]) -> float:
        node = self.root
        edges = 0
        while isinstance(node, _Split):
            if row[node.feature] < node.threshold:
                node = node.left
            else:
                node = node.right
            edges += 1
        return edges + leaf_adjustment(node.size)

    @property
    def depth(self) -> int:
        def _depth(node):
            if isinstance(node, _Leaf):
                return 0
            return 1 + max(_depth(node.left), _depth(node.right))
        return _depth(self.root)

    @property
    def n_leaves(self) -> int:
        count = 0
        stack = [self.root]
        while stack:
            node = stack.pop()
            if isinstance(node, _Leaf):
                count += 1
            else:
                stack.extend((node.left, node.right))
        return count


# ============================================================================
# FOREST
# ============================================================================

class IsolationForest:
    """
    Isolation Forest with an injectable random source.

    Args:
        n_trees: Number of isolation trees
        max_samples: Rows drawn (with replacement) per tree
        max_depth: Depth at which a node always becomes a leaf
        contamination: Expected anomaly fraction, calibrates threshold_
        feature_names: Fixed column order (inferred on first fit if None)
        random_state: None, int seed or numpy RandomState

    Example:
        >>> forest = IsolationForest(random_state=42)
        >>> forest.fit(history_vectors)
        >>> forest.decision_score(vector)
        0.47...
    """

    def __init__(
        self,
        n_trees: int = 100,
        max_samples: int = 256,
        max_depth: int = 8,
        contamination: float = 0.1,
        feature_names: Optional[List[str]] = None,
        random_state=None
    ):
        if n_trees < 1:
            raise ValueError(f"n_trees must be >= 1, got {n_trees}")
        if max_samples < 2:
            raise ValueError(f"max_samples must be >= 2, got {max_samples}")
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        if not 0.0 <= contamination < 1.0:
            raise ValueError(f"contamination must be in [0, 1), got {contamination}")

        self.n_trees = n_trees
        self.max_samples = max_samples
        self.max_depth = max_depth
        self.contamination = contamination
        self.feature_names = list(feature_names) if feature_names else None
        self.random_state = random_state

        # (trees, threshold) replaced together by fit()
        self._fitted: Optional[Tuple[Tuple[IsolationTree, ...], float]] = None

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def fit(self, vectors) -> "IsolationForest":
        """
        Build all trees and calibrate threshold_ from the training scores.

        Raises:
            InvalidInputError: empty or malformed input
        """
        X, feature_names = vectors_to_matrix(vectors, self.feature_names)
        rng = check_random_state(self.random_state)
        n_rows = X.shape[0]

        trees = []
        for _ in range(self.n_trees):
            sampled = X[rng.randint(0, n_rows, size=self.max_samples)]
            trees.append(IsolationTree(self._build_node(sampled, 0, rng)))
        trees = tuple(trees)

        scores = np.array([self._score_row(row, trees) for row in X.tolist()])
        sorted_scores = np.sort(scores)
        threshold_idx = min(
            int(math.floor((1 - self.contamination) * len(sorted_scores))),
            len(sorted_scores) - 1
        )
        threshold = float(sorted_scores[threshold_idx])

        self.feature_names = feature_names
        self._fitted = (trees, threshold)

        logger.debug(
            "Isolation forest fitted: %d rows, %d trees, threshold=%.4f",
            n_rows, len(trees), threshold
        )
        return self

    def _build_node(self, X: np.ndarray, depth: int, rng):
        n_samples, n_features = X.shape

        if depth >= self.max_depth or n_samples <= 1:
            return _Leaf(n_samples)

        feature = rng.randint(n_features)
        column = X[:, feature]
        min_val = float(column.min())
        max_val = float(column.max())

        if min_val == max_val:
            return _Leaf(n_samples)

        threshold = min_val + rng.random_sample() * (max_val - min_val)
        goes_left = column < threshold

        return _Split(
            feature,
            threshold,
            self._build_node(X[goes_left], depth + 1, rng),
            self._build_node(X[~goes_left], depth + 1, rng),
        )

    # ------------------------------------------------------------------
    # Scoring (read-only, safe for concurrent callers)
    # ------------------------------------------------------------------

    @property
    def is_fitted(self) -> bool:
        return self._fitted is not None

    @property
    def trees_(self) -> Tuple[IsolationTree, ...]:
        return self._get_fitted()[0]

    @property
    def threshold_(self) -> float:
        return self._get_fitted()[1]

    def _get_fitted(self):
        fitted = self._fitted
        if fitted is None:
            raise NotTrainedError("IsolationForest has not been fitted yet")
        return fitted

    def _score_row(self, row: Sequence[float], trees) -> float:
        total_path_length = 0.0
        for tree in trees:
            total_path_length += tree.path_length(row)
        avg_path_length = total_path_length / len(trees)
        return 2 ** (-avg_path_length / leaf_adjustment(self.max_samples))

    def decision_score(self, vector) -> float:
        """Anomaly score of a single vector in (0, 1]; higher = more anomalous."""
        trees, _ = self._get_fitted()
        return self._score_row(vector_to_row(vector, self.feature_names), trees)

    def _batch_scores(self, vectors, trees) -> np.ndarray:
        X, _ = vectors_to_matrix(vectors, self.feature_names)
        return np.array([self._score_row(row, trees) for row in X.tolist()])

    def decision_scores(self, vectors) -> np.ndarray:
        """Anomaly scores for a batch of vectors."""
        trees, _ = self._get_fitted()
        return self._batch_scores(vectors, trees)

    def predict(self, vectors) -> np.ndarray:
        """Boolean anomaly flags using the contamination-calibrated threshold_."""
        trees, threshold = self._get_fitted()
        return self._batch_scores(vectors, trees) > threshold

    def predict_with_scores(self, vectors) -> List[Tuple[bool, float]]:
        trees, threshold = self._get_fitted()
        scores = self._batch_scores(vectors, trees)
        return [(bool(score > threshold), float(score)) for score in scores]
