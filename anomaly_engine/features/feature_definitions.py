"""
Feature Adapter: TransactionFeatures -> FeatureVector -> numeric matrix.

Purpose:
Map the caller's transaction record into the fixed-order numeric vector
consumed by the Isolation Forest and the clustering stage, and turn any
batch of vectors into a 2-D numpy matrix whose column order never changes
for a given model instance.

Derived features:
- merchant_category_risk: 1.0 if merchant category is in the high-risk set
- is_high_risk_country:   taken from the record when set, otherwise 1.0 if
                          the record's country is in the high-risk set

Tolerance:
Mapping keys may be camelCase or snake_case. A mapping missing a numeric
field contributes 0.0 for that column. Only an empty batch, a row of the
wrong width or a non-finite value is rejected.
"""

from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from pydantic import BaseModel
from pydantic.alias_generators import to_camel, to_snake

from anomaly_engine.features.schema import FEATURE_NAMES, FeatureVector, TransactionFeatures
from anomaly_engine.models.errors import InvalidInputError


DEFAULT_HIGH_RISK_MERCHANTS = ("gambling", "cryptocurrency", "adult", "money_transfer")
DEFAULT_HIGH_RISK_COUNTRIES = ("xx", "yy", "zz")

VectorLike = Union[FeatureVector, Mapping[str, Any], Sequence[float], np.ndarray]


# ============================================================================
# DERIVED FEATURES
# ============================================================================

def compute_merchant_category_risk(
    merchant_category: Optional[str],
    high_risk_merchants: Iterable[str] = DEFAULT_HIGH_RISK_MERCHANTS
) -> float:
    """1.0 if the category is in the high-risk set, else 0.0."""
    if not merchant_category:
        return 0.0
    risky = {m.lower() for m in high_risk_merchants}
    return 1.0 if merchant_category.lower() in risky else 0.0


def compute_high_risk_country(
    record: TransactionFeatures,
    high_risk_countries: Iterable[str] = DEFAULT_HIGH_RISK_COUNTRIES
) -> float:
    # An explicit upstream flag wins over the country lookup
    if record.is_high_risk_country is not None:
        return 1.0 if record.is_high_risk_country else 0.0
    if not record.country:
        return 0.0
    risky = {c.lower() for c in high_risk_countries}
    return 1.0 if record.country.lower() in risky else 0.0


def to_feature_vector(
    record: Union[TransactionFeatures, Mapping[str, Any]],
    high_risk_merchants: Iterable[str] = DEFAULT_HIGH_RISK_MERCHANTS,
    high_risk_countries: Iterable[str] = DEFAULT_HIGH_RISK_COUNTRIES
) -> FeatureVector:
    """
    Convert one transaction record into a FeatureVector.

    Args:
        record: TransactionFeatures, or a raw dict validated against it
        high_risk_merchants: Merchant categories treated as risky
        high_risk_countries: Country codes treated as risky

    Returns:
        Frozen FeatureVector with booleans encoded as 0.0/1.0

    Example:
        >>> vec = to_feature_vector({"amount": 120.0, "userId": "u1",
        ...                          "timeOfDay": 14, "dayOfWeek": 2,
        ...                          "merchantCategory": "gambling"})
        >>> vec.merchant_category_risk
        1.0
    """
    if not isinstance(record, TransactionFeatures):
        record = TransactionFeatures(**record)

    return FeatureVector(
        amount=record.amount,
        time_of_day=record.time_of_day,
        day_of_week=record.day_of_week,
        user_transaction_count=record.user_transaction_count,
        user_average_amount=record.user_average_amount,
        transaction_velocity=record.transaction_velocity or 0.0,
        is_new_payment_method=1.0 if record.is_new_payment_method else 0.0,
        is_international=1.0 if record.is_international else 0.0,
        is_high_risk_country=compute_high_risk_country(record, high_risk_countries),
        merchant_category_risk=compute_merchant_category_risk(
            record.merchant_category, high_risk_merchants
        ),
    )


# ============================================================================
# VECTORISATION
# ============================================================================

def resolve_feature_names(first_vector: VectorLike) -> List[str]:
    """
    Decide the column order from the first vector a model ever sees.

    FeatureVector -> canonical FEATURE_NAMES
    Mapping       -> its key order
    Sequence      -> FEATURE_NAMES if the width matches, else feature_0..n
    """
    if isinstance(first_vector, FeatureVector):
        return list(FEATURE_NAMES)
    if isinstance(first_vector, BaseModel):
        return list(first_vector.model_dump().keys())
    if isinstance(first_vector, Mapping):
        if not first_vector:
            raise InvalidInputError("Cannot infer feature names from an empty mapping")
        return list(first_vector.keys())

    width = len(first_vector)
    if width == len(FEATURE_NAMES):
        return list(FEATURE_NAMES)
    return [f"feature_{i}" for i in range(width)]


def lookup_feature(mapping: Mapping[str, Any], name: str):
    """Value for name, accepting its camelCase or snake_case spelling."""
    if name in mapping:
        return mapping[name]
    for alias in (to_camel(name), to_snake(name)):
        if alias in mapping:
            return mapping[alias]
    return None


def vector_to_row(vector: VectorLike, feature_names: Sequence[str]) -> List[float]:
    """
    Project one vector onto feature_names.

    Mapping keys may use either spelling (timeOfDay or time_of_day); keys
    missing under both contribute 0.0.
    """
    if isinstance(vector, BaseModel):
        vector = vector.model_dump()

    if isinstance(vector, Mapping):
        return [float(lookup_feature(vector, name) or 0.0) for name in feature_names]

    row = [float(v) for v in vector]
    if len(row) != len(feature_names):
        raise InvalidInputError(
            f"Vector has {len(row)} values, expected {len(feature_names)} "
            f"({list(feature_names)})"
        )
    return row


def row_to_dict(row: Sequence[float], feature_names: Sequence[str]) -> dict:
    return {name: float(value) for name, value in zip(feature_names, row)}


def vectors_to_matrix(
    vectors: Union[Sequence[VectorLike], np.ndarray],
    feature_names: Optional[Sequence[str]] = None
) -> Tuple[np.ndarray, List[str]]:
    """
    Build a float matrix with one row per vector.

    Args:
        vectors: FeatureVectors, mappings, rows, or an (n, d) array
        feature_names: Fixed column order; inferred from the first vector
            when None

    Returns:
        (matrix of shape (n, d), feature_names actually used)

    Raises:
        InvalidInputError: empty batch, wrong row width or non-finite value
    """
    if vectors is None or len(vectors) == 0:
        raise InvalidInputError("Cannot build a feature matrix from an empty batch")

    if isinstance(vectors, np.ndarray):
        matrix = np.asarray(vectors, dtype=float)
        if matrix.ndim != 2:
            raise InvalidInputError(f"Expected a 2-D array, got shape {matrix.shape}")
        if feature_names is None:
            feature_names = resolve_feature_names(matrix[0])
        if matrix.shape[1] != len(feature_names):
            raise InvalidInputError(
                f"Array has {matrix.shape[1]} columns, expected {len(feature_names)}"
            )
    else:
        if feature_names is None:
            feature_names = resolve_feature_names(vectors[0])
        matrix = np.array([vector_to_row(v, feature_names) for v in vectors], dtype=float)

    if not np.all(np.isfinite(matrix)):
        raise InvalidInputError("Feature matrix contains NaN or infinite values")

    return matrix, list(feature_names)
