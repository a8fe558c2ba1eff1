"""
Error taxonomy for the anomaly engine.

- InvalidInputError: empty or malformed training data, ragged vectors
- NotTrainedError: any scoring call before a first successful fit/train

Degraded training (too few candidate anomalies for the clustering stage)
is NOT an error. It is reported with logger.warning by the fusion model.
"""


class AnomalyEngineError(Exception):
    """Base class for all engine errors."""


class InvalidInputError(AnomalyEngineError, ValueError):
    """Training or scoring input cannot be turned into a feature matrix."""


class NotTrainedError(AnomalyEngineError, RuntimeError):
    """A scoring method was called before the model was fitted."""
