"""
Tests for the feature adapter and vectorisation helpers.
"""

import numpy as np
import pytest
from pydantic import ValidationError

from anomaly_engine.features.feature_definitions import (
    compute_merchant_category_risk,
    resolve_feature_names,
    to_feature_vector,
    vector_to_row,
    vectors_to_matrix,
)
from anomaly_engine.features.schema import FEATURE_NAMES, FeatureVector, TransactionFeatures
from anomaly_engine.models.errors import InvalidInputError


@pytest.fixture
def payload():
    """Payment pipeline payload (camelCase keys)."""
    return {
        "amount": 2450.0,
        "userId": 98765,
        "timeOfDay": 3,
        "dayOfWeek": 6,
        "userTransactionCount": 2,
        "userAverageAmount": 80.0,
        "transactionVelocity": 4,
        "isNewPaymentMethod": True,
        "isInternational": True,
        "merchantCategory": " Gambling ",
        "country": "XX",
    }


# ============================================================================
# ADAPTER
# ============================================================================

@pytest.mark.unit
def test_camel_case_payload_maps_to_vector(payload):
    vector = to_feature_vector(payload)

    assert vector.to_list() == [2450.0, 3.0, 6.0, 2.0, 80.0, 4.0, 1.0, 1.0, 1.0, 1.0]


@pytest.mark.unit
def test_snake_case_record_is_accepted():
    record = TransactionFeatures(amount=10.0, user_id="u1", time_of_day=12, day_of_week=1)
    vector = to_feature_vector(record)

    assert vector.amount == 10.0
    assert vector.is_new_payment_method == 0.0
    assert vector.merchant_category_risk == 0.0
    assert vector.is_high_risk_country == 0.0


@pytest.mark.unit
def test_user_id_is_normalised_to_string(payload):
    record = TransactionFeatures(**payload)

    assert record.user_id == "98765"
    assert record.merchant_category == "gambling"
    assert record.country == "xx"


@pytest.mark.unit
def test_explicit_high_risk_flag_wins_over_country(payload):
    vector = to_feature_vector({**payload, "isHighRiskCountry": False})
    assert vector.is_high_risk_country == 0.0

    vector = to_feature_vector({**payload, "country": "de", "isHighRiskCountry": True})
    assert vector.is_high_risk_country == 1.0


@pytest.mark.unit
def test_custom_lookup_sets(payload):
    vector = to_feature_vector(
        payload,
        high_risk_merchants=["electronics"],
        high_risk_countries=["ru"],
    )

    assert vector.merchant_category_risk == 0.0
    assert vector.is_high_risk_country == 0.0


@pytest.mark.unit
def test_merchant_risk_is_case_insensitive():
    assert compute_merchant_category_risk("CryptoCurrency") == 1.0
    assert compute_merchant_category_risk("groceries") == 0.0
    assert compute_merchant_category_risk(None) == 0.0


@pytest.mark.unit
@pytest.mark.parametrize("override", [
    {"amount": 0},
    {"amount": -5.0},
    {"timeOfDay": 24},
    {"dayOfWeek": 7},
    {"userTransactionCount": -1},
])
def test_out_of_range_fields_rejected(payload, override):
    with pytest.raises(ValidationError):
        to_feature_vector({**payload, **override})


@pytest.mark.unit
def test_feature_vector_is_frozen():
    vector = FeatureVector(amount=1.0)
    with pytest.raises(ValidationError):
        vector.amount = 2.0


# ============================================================================
# VECTORISATION
# ============================================================================

@pytest.mark.unit
def test_resolve_feature_names():
    assert resolve_feature_names(FeatureVector()) == FEATURE_NAMES
    assert resolve_feature_names({"b": 1.0, "a": 2.0}) == ["b", "a"]
    assert resolve_feature_names([0.0] * len(FEATURE_NAMES)) == FEATURE_NAMES
    assert resolve_feature_names([0.0, 0.0]) == ["feature_0", "feature_1"]


@pytest.mark.unit
def test_empty_mapping_cannot_name_features():
    with pytest.raises(InvalidInputError):
        resolve_feature_names({})


@pytest.mark.unit
def test_matrix_uses_fixed_column_order():
    vectors = [FeatureVector(amount=5.0, time_of_day=1), {"time_of_day": 2.0, "amount": 7.0}]
    matrix, names = vectors_to_matrix(vectors)

    assert names == FEATURE_NAMES
    assert matrix.shape == (2, len(FEATURE_NAMES))
    assert matrix[:, 0].tolist() == [5.0, 7.0]
    assert matrix[:, 1].tolist() == [1.0, 2.0]


@pytest.mark.unit
def test_missing_mapping_keys_become_zero():
    assert vector_to_row({"a": 3.0}, ["a", "b"]) == [3.0, 0.0]


@pytest.mark.unit
def test_camel_case_mapping_matches_snake_case_mapping():
    snake = {"amount": 250.0, "time_of_day": 14.0, "user_transaction_count": 25.0, "is_international": 1.0}
    camel = {"amount": 250.0, "timeOfDay": 14.0, "userTransactionCount": 25.0, "isInternational": 1.0}

    expected = [250.0, 14.0, 0.0, 25.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0]
    assert vector_to_row(snake, FEATURE_NAMES) == expected
    assert vector_to_row(camel, FEATURE_NAMES) == expected


@pytest.mark.unit
def test_snake_case_mapping_against_camel_case_names():
    names = ["amount", "timeOfDay"]
    assert vector_to_row({"amount": 1.0, "time_of_day": 3.0}, names) == [1.0, 3.0]


@pytest.mark.unit
def test_empty_batch_rejected():
    with pytest.raises(InvalidInputError):
        vectors_to_matrix([])
    with pytest.raises(InvalidInputError):
        vectors_to_matrix(np.empty((0, 3)))


@pytest.mark.unit
def test_wrong_width_rejected():
    with pytest.raises(InvalidInputError):
        vectors_to_matrix([[1.0, 2.0], [1.0, 2.0, 3.0]])
    with pytest.raises(InvalidInputError):
        vectors_to_matrix(np.ones((2, 3)), feature_names=["a", "b"])


@pytest.mark.unit
def test_non_finite_values_rejected():
    with pytest.raises(InvalidInputError):
        vectors_to_matrix([[1.0, float("inf")]])


@pytest.mark.unit
def test_invalid_input_is_a_value_error():
    """Callers that only know about ValueError still catch adapter errors."""
    with pytest.raises(ValueError):
        vectors_to_matrix([])
