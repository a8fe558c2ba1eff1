"""
Stage 2: Agglomerative Hierarchical Clustering (confirmation stage)

Purpose:
Group the candidate anomalies from Stage 1 into a few clusters and flag
points that land in a small cluster or far away from their cluster.

Algorithm (average linkage, NOT centroid or Ward):
- Every input row starts as a singleton cluster
- distance(A, B) = mean Euclidean distance over all cross pairs (a, b)
- Merge the globally closest pair (first pair in row-major scan order on
  ties), drop both parents, append the merged cluster at the end
- Rebuild the full cluster distance matrix after every merge
- Stop at n_clusters clusters (or fewer if the input had fewer rows)
- distance_to_nearest of each survivor = min linkage to any other survivor

Cost:
O(n^2) memory for the point distance matrix plus an O(k^2) rebuild per
merge. Only ever run on the candidate subset (or on the full history as a
cold-start fallback), never on the request path.

Prediction:
Nearest cluster by mean distance from the query to the cluster's members.
Anomalous if that cluster has < 3 members, or if the query is further than
distance_to_nearest * anomaly_threshold. No clusters at all -> anomalous.
"""

import logging
import math
from typing import List, Optional, Tuple

import numpy as np

from anomaly_engine.features.feature_definitions import vectors_to_matrix, vector_to_row


logger = logging.getLogger(__name__)

SMALL_CLUSTER_SIZE = 3


class Cluster:
    """Members, centroid and size of one cluster."""

    def __init__(self, points: np.ndarray):
        self.points = points
        self.centroid = points.mean(axis=0)
        self.size = len(points)
        self.distance_to_nearest: Optional[float] = None

    def mean_distance_to(self, row: np.ndarray) -> float:
        return float(np.sqrt(((self.points - row) ** 2).sum(axis=1)).mean())

    def __repr__(self):
        return f"Cluster(size={self.size}, distance_to_nearest={self.distance_to_nearest})"


# ============================================================================
# DISTANCE HELPERS
# ============================================================================

def _point_distance_matrix(X: np.ndarray) -> np.ndarray:
    """Pairwise Euclidean distances, one row at a time to keep memory at n^2."""
    n = X.shape[0]
    distances = np.zeros((n, n))
    for i in range(n):
        distances[i] = np.sqrt(((X - X[i]) ** 2).sum(axis=1))
    return distances


def _average_linkage(distance_sums: np.ndarray, sizes: np.ndarray) -> np.ndarray:
    """Full cluster distance matrix; diagonal set to +inf."""
    linkage = distance_sums / np.outer(sizes, sizes)
    np.fill_diagonal(linkage, np.inf)
    return linkage


def _closest_pair(linkage: np.ndarray) -> Tuple[int, int, float]:
    """First (i, j), i < j, holding the minimum in row-major order."""
    k = linkage.shape[0]
    upper = np.where(np.triu(np.ones((k, k), dtype=bool), k=1), linkage, np.inf)
    i, j = divmod(int(np.argmin(upper)), k)
    return i, j, float(upper[i, j])


# ============================================================================
# MODEL
# ============================================================================

class HierarchicalModel:
    """
    Average-linkage agglomerative clustering used as an anomaly confirmer.

    Args:
        n_clusters: Number of clusters kept after merging
        anomaly_threshold: Multiplier on distance_to_nearest for the
            "distant point" rule
        feature_names: Fixed column order (inferred on first fit if None)

    Example:
        >>> ahc = HierarchicalModel(n_clusters=5)
        >>> ahc.fit(candidate_vectors)
        >>> ahc.predict_one(vector)
        True
    """

    def __init__(
        self,
        n_clusters: int = 5,
        anomaly_threshold: float = 2.0,
        feature_names: Optional[List[str]] = None
    ):
        if n_clusters < 1:
            raise ValueError(f"n_clusters must be >= 1, got {n_clusters}")

        self.n_clusters = n_clusters
        self.anomaly_threshold = anomaly_threshold
        self.feature_names = list(feature_names) if feature_names else None

        # Replaced as a whole by fit()
        self._clusters: Tuple[Cluster, ...] = ()
        self.merge_history: List[Tuple[float, int]] = []

    @property
    def clusters(self) -> Tuple[Cluster, ...]:
        return self._clusters

    def fit(self, vectors) -> "HierarchicalModel":
        """
        Merge singletons down to n_clusters clusters.

        Raises:
            InvalidInputError: empty or malformed input
        """
        X, feature_names = vectors_to_matrix(vectors, self.feature_names)

        clusters = [Cluster(X[i:i + 1]) for i in range(X.shape[0])]
        sizes = np.ones(len(clusters))

        # Cross-pair distance sums are additive under merging, so the
        # average-linkage matrix can be rebuilt from them after every merge.
        distance_sums = _point_distance_matrix(X)
        linkage = _average_linkage(distance_sums, sizes)
        merge_history = []

        while len(clusters) > self.n_clusters:
            i, j, distance = _closest_pair(linkage)

            merged = Cluster(np.vstack([clusters[i].points, clusters[j].points]))
            keep = [k for k in range(len(clusters)) if k != i and k != j]
            merged_sums = distance_sums[i] + distance_sums[j]

            new_sums = np.zeros((len(keep) + 1, len(keep) + 1))
            new_sums[:-1, :-1] = distance_sums[np.ix_(keep, keep)]
            new_sums[-1, :-1] = merged_sums[keep]
            new_sums[:-1, -1] = merged_sums[keep]

            clusters = [clusters[k] for k in keep] + [merged]
            sizes = np.append(sizes[keep], merged.size)
            distance_sums = new_sums
            linkage = _average_linkage(distance_sums, sizes)
            merge_history.append((distance, merged.size))

        if len(clusters) > 1:
            nearest = linkage.min(axis=1)
            for cluster, distance in zip(clusters, nearest):
                cluster.distance_to_nearest = float(distance)
        else:
            for cluster in clusters:
                cluster.distance_to_nearest = math.inf

        self.feature_names = feature_names
        self.merge_history = merge_history
        self._clusters = tuple(clusters)

        logger.debug(
            "Hierarchical model fitted: %d rows -> %d clusters (sizes=%s)",
            X.shape[0], len(clusters), [c.size for c in clusters]
        )
        return self

    def predict_one(self, vector) -> bool:
        clusters = self._clusters
        if not clusters:
            # Nothing learned yet: lean towards suspicion
            return True

        row = np.asarray(vector_to_row(vector, self.feature_names))
        return self._is_anomalous(row, clusters)

    def predict(self, vectors) -> List[bool]:
        clusters = self._clusters
        if not clusters:
            return [True] * len(vectors)

        X, _ = vectors_to_matrix(vectors, self.feature_names)
        return [self._is_anomalous(row, clusters) for row in X]

    def _is_anomalous(self, row: np.ndarray, clusters) -> bool:
        min_distance = math.inf
        closest = None
        for cluster in clusters:
            distance = cluster.mean_distance_to(row)
            if distance < min_distance:
                min_distance = distance
                closest = cluster

        if closest is None:
            return True

        is_small = closest.size < SMALL_CLUSTER_SIZE
        is_distant = min_distance > (closest.distance_to_nearest or 0.0) * self.anomaly_threshold
        return bool(is_small or is_distant)
