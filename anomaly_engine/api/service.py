"""
Anomaly Scoring Service for FastAPI Integration.

Owns the process-wide FusionModel handle and adds:
- Lazy model creation, trained on stored DuckDB history when configured
  and on a synthetic warm start otherwise (scoring never waits on an
  empty model)
- Recording of scored transactions and the retrain trigger policy
  (retrain once recorded history exceeds MIN_HISTORY_FOR_RETRAIN)
- Best-effort background retraining that never breaks the request path
- Performance metrics tracking and health checks

The model itself publishes each retrained state with one reference swap,
so scoring concurrent with retraining always sees a complete model.
"""
import time
import threading
import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple
from collections import deque
import logging

import duckdb

from anomaly_engine.api.config import Settings, settings as default_settings
from anomaly_engine.api.models import AnomalyScoreResponse, TransactionRequest
from anomaly_engine.features.feature_definitions import to_feature_vector
from anomaly_engine.features.schema import FeatureVector, TransactionFeatures
from anomaly_engine.ingestion.history_loader import load_feature_history
from anomaly_engine.ingestion.synthetic import generate_warm_start_vectors
from anomaly_engine.models.errors import NotTrainedError
from anomaly_engine.models.fusion import FusionModel, TrainingSummary


logger = logging.getLogger(__name__)


class ServiceMetrics:
    """
    Tracks API performance metrics across requests.

    Metrics:
    - Total requests, anomalies, errors
    - Latency percentiles (p50, p95, p99)
    - Requests per second
    - Retrain successes and failures
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.total_requests = 0
        self.total_anomalies = 0
        self.error_count = 0
        self.retrain_count = 0
        self.retrain_failures = 0
        self.latencies = deque(maxlen=10000)  # Keep last 10K latencies
        self.start_time = time.time()

    def record_request(self, latency_ms: float, is_anomaly: bool):
        with self._lock:
            self.total_requests += 1
            self.latencies.append(latency_ms)
            if is_anomaly:
                self.total_anomalies += 1

    def record_error(self):
        """Record a failed prediction."""
        with self._lock:
            self.error_count += 1

    def record_retrain(self, succeeded: bool):
        with self._lock:
            if succeeded:
                self.retrain_count += 1
            else:
                self.retrain_failures += 1

    def get_summary(self) -> Dict:
        """Get current metrics summary."""
        with self._lock:
            latencies = np.array(list(self.latencies))
            summary = {
                "total_requests": self.total_requests,
                "total_anomalies": self.total_anomalies,
                "anomaly_rate": self.total_anomalies / max(self.total_requests, 1),
                "error_count": self.error_count,
                "retrain_count": self.retrain_count,
                "retrain_failures": self.retrain_failures,
            }

        if len(latencies) == 0:
            summary.update({
                "avg_latency_ms": 0.0,
                "p50_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "p99_latency_ms": 0.0,
                "requests_per_second": 0.0,
            })
            return summary

        uptime_seconds = time.time() - self.start_time
        summary.update({
            "avg_latency_ms": float(np.mean(latencies)),
            "p50_latency_ms": float(np.percentile(latencies, 50)),
            "p95_latency_ms": float(np.percentile(latencies, 95)),
            "p99_latency_ms": float(np.percentile(latencies, 99)),
            "requests_per_second": float(summary["total_requests"] / max(uptime_seconds, 1)),
        })
        return summary


class AnomalyScoringService:
    """
    Production scoring service for FastAPI.

    Usage:
        service = AnomalyScoringService()            # model built lazily
        response, retrain_due = service.score(txn)
        if retrain_due:
            background_tasks.add_task(service.retrain)

    Args:
        model: Injected FusionModel (tests, custom wiring). Built from
            config on first use when None.
        config: Settings instance (default: module-level settings)
    """

    def __init__(self, model: Optional[FusionModel] = None, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._model = model
        self._model_lock = threading.Lock()

        # Scored transactions not yet fed to train()
        self._pending: List[FeatureVector] = []
        self._pending_lock = threading.Lock()
        self._recorded_count = 0

        self.metrics = ServiceMetrics()

        logger.info("AnomalyScoringService ready")
        logger.info(f"   Warm start: {self.config.WARM_START}")
        logger.info(f"   Retrain after: >{self.config.MIN_HISTORY_FOR_RETRAIN} recorded transactions")

    # ------------------------------------------------------------------
    # Model handle
    # ------------------------------------------------------------------

    def _build_model(self) -> FusionModel:
        return FusionModel(
            final_threshold=self.config.FINAL_THRESHOLD,
            if_threshold=self.config.IF_THRESHOLD,
            n_trees=self.config.N_TREES,
            max_samples=self.config.MAX_SAMPLES,
            max_depth=self.config.MAX_DEPTH,
            contamination=self.config.CONTAMINATION,
            n_clusters=self.config.N_CLUSTERS,
            ahc_anomaly_threshold=self.config.AHC_ANOMALY_THRESHOLD,
            min_candidates=self.config.MIN_CANDIDATES,
            random_state=self.config.RANDOM_STATE,
        )

    def _load_history_vectors(self) -> List[FeatureVector]:
        """Stored feature rows from HISTORY_DB_PATH, empty when unset or unreadable."""
        if not self.config.HISTORY_DB_PATH:
            return []
        try:
            records = load_feature_history(self.config.HISTORY_DB_PATH, table=self.config.HISTORY_TABLE)
        except duckdb.Error as e:
            logger.warning(f"Could not read history from {self.config.HISTORY_DB_PATH}: {e}")
            return []
        return [self.to_vector(record) for record in records]

    @property
    def model(self) -> FusionModel:
        """The shared model, created and trained on first access."""
        model = self._model
        if model is not None:
            return model

        with self._model_lock:
            if self._model is None:
                model = self._build_model()
                history = self._load_history_vectors()
                if history:
                    logger.info(f"No model yet, training on {len(history)} stored transactions")
                    model.train(history)
                elif self.config.WARM_START:
                    logger.info("No model yet, warm-starting on synthetic data")
                    model.train(generate_warm_start_vectors(
                        n_normal=self.config.WARM_START_NORMAL,
                        n_anomalous=self.config.WARM_START_ANOMALOUS,
                        random_state=self.config.RANDOM_STATE,
                    ))
                self._model = model
            return self._model

    def to_vector(self, record: TransactionFeatures) -> FeatureVector:
        return to_feature_vector(
            record,
            high_risk_merchants=self.config.HIGH_RISK_MERCHANTS,
            high_risk_countries=self.config.HIGH_RISK_COUNTRIES,
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score(self, txn: TransactionRequest) -> Tuple[AnomalyScoreResponse, bool]:
        """
        Score a single transaction.

        Pipeline:
        1. Adapt the record into a FeatureVector
        2. FusionModel.predict() -> AnomalyResult
        3. Track metrics
        4. Record the vector for the next retraining

        Returns:
            (response, retrain_due)

        Raises:
            NotTrainedError: no trained model (warm start disabled)
            ValueError: record cannot be adapted
        """
        start_time = time.time()

        try:
            vector = self.to_vector(txn)
            result = self.model.predict(vector)
        except NotTrainedError:
            self.metrics.record_error()
            raise
        except Exception as e:
            self.metrics.record_error()
            logger.error(f"Scoring failed: {e}", exc_info=True)
            raise

        total_latency_ms = (time.time() - start_time) * 1000
        self.metrics.record_request(total_latency_ms, result.is_anomaly)

        retrain_due = self.record_transaction(vector)

        response = AnomalyScoreResponse(
            transaction_id=txn.transaction_id,
            latency_ms=total_latency_ms,
            **result.model_dump()
        )
        return response, retrain_due

    # ------------------------------------------------------------------
    # Retraining
    # ------------------------------------------------------------------

    def record_transaction(self, vector: FeatureVector) -> bool:
        """Queue a scored vector; True once the retrain floor is crossed."""
        with self._pending_lock:
            self._pending.append(vector)
            self._recorded_count += 1
            return self._recorded_count > self.config.MIN_HISTORY_FOR_RETRAIN

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def retrain(self) -> Optional[TrainingSummary]:
        """
        Fire-and-forget retraining on everything recorded since the last run.

        Failures are logged and counted, never raised. The batch goes back to
        the queue so the next run retries it.
        """
        with self._pending_lock:
            batch, self._pending = self._pending, []

        if not batch:
            return None

        try:
            summary = self.model.train(batch)
        except Exception as e:
            logger.error(f"Background retraining failed: {e}", exc_info=True)
            self.metrics.record_retrain(succeeded=False)
            with self._pending_lock:
                self._pending = batch + self._pending
            return None

        self.metrics.record_retrain(succeeded=True)
        return summary

    def train(self, records: Sequence[TransactionFeatures]) -> TrainingSummary:
        """
        Explicit (synchronous) training on a batch of records.

        Raises:
            InvalidInputError: empty or malformed batch
        """
        vectors = [self.to_vector(record) for record in records]
        summary = self.model.train(vectors)
        self.metrics.record_retrain(succeeded=True)
        return summary

    # ------------------------------------------------------------------
    # Health / metrics
    # ------------------------------------------------------------------

    def health_check(self) -> Dict:
        """
        Check if service is healthy.

        Returns:
            Dict with health status and component checks
        """
        model = self._model
        trained = model is not None and model.is_trained
        last_training = model.last_training if trained else None

        if not trained:
            status = "down"
        elif last_training.degraded:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "model_trained": trained,
            "history_size": model.n_history if model is not None else 0,
            "last_training_degraded": last_training.degraded if last_training else None,
            "last_prediction_ms": self.metrics.latencies[-1] if self.metrics.latencies else None
        }

    def get_metrics(self) -> Dict:
        """Get current performance metrics."""
        summary = self.metrics.get_summary()
        model = self._model
        summary["history_size"] = model.n_history if model is not None else 0
        return summary

    def close(self):
        """Cleanup resources on shutdown."""
        logger.info("Closing AnomalyScoringService...")
        logger.info(f"Final stats: {self.metrics.total_requests} requests, "
                    f"{self.metrics.total_anomalies} anomalies, "
                    f"{self.metrics.error_count} errors, "
                    f"{self.metrics.retrain_count} retrains")
