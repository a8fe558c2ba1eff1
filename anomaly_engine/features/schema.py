"""
Feature contract for the anomaly engine.

Two records live here:

1. TransactionFeatures (the input):
   What the caller knows about a transaction after its own aggregation
   queries ran (user history count, average amount, velocity in the last
   hour, payment-method novelty, location flags, merchant category).

2. FeatureVector (the output):
   The fixed-order numeric vector consumed by the Isolation Forest and the
   clustering stage. Field order below IS the column order of every matrix
   built from these vectors:

   amount, time_of_day, day_of_week, user_transaction_count,
   user_average_amount, transaction_velocity, is_new_payment_method,
   is_international, is_high_risk_country, merchant_category_risk

Both records accept camelCase keys (userId, timeOfDay, ...) as well as
snake_case, so payloads from the payment pipeline validate unchanged.
"""

from typing import Optional
from pydantic import BaseModel, Field, validator
from pydantic.alias_generators import to_camel


# Canonical column order. Never reorder: index i must mean the same field
# for the whole lifetime of a trained model.
FEATURE_NAMES = [
    'amount',
    'time_of_day',
    'day_of_week',
    'user_transaction_count',
    'user_average_amount',
    'transaction_velocity',
    'is_new_payment_method',
    'is_international',
    'is_high_risk_country',
    'merchant_category_risk',
]


class TransactionFeatures(BaseModel):
    """
    Input: one transaction plus the caller's pre-computed user statistics.

    userId is carried for upstream aggregation only; it never reaches the
    numeric vector.
    """
    # --- Core transaction ---
    amount: float = Field(..., gt=0, description="Transaction amount")
    user_id: str = Field(..., description="Opaque user identifier")
    time_of_day: int = Field(..., ge=0, le=23, description="Hour of day (0-23)")
    day_of_week: int = Field(..., ge=0, le=6, description="Day of week (0-6)")

    # --- User history (computed upstream) ---
    user_transaction_count: int = Field(0, ge=0)
    user_average_amount: float = Field(0.0, ge=0.0)
    transaction_velocity: float = Field(0.0, ge=0.0, description="Transactions in the last hour")

    # --- Flags ---
    is_new_payment_method: bool = False
    is_international: bool = False
    # None means "not decided upstream": derived from country if given
    is_high_risk_country: Optional[bool] = None

    merchant_category: Optional[str] = None
    country: Optional[str] = None

    @validator("user_id", pre=True)
    def force_string_id(cls, v):
        return str(v)

    @validator("merchant_category", "country")
    def normalize_lookup_keys(cls, v):
        if v:
            return v.strip().lower()
        return v

    class Config:
        extra = "allow"
        populate_by_name = True
        alias_generator = to_camel


class FeatureVector(BaseModel):
    """
    Fixed-order numeric vector. Booleans are already encoded as 0.0/1.0.
    """
    amount: float = 0.0
    time_of_day: float = 0.0
    day_of_week: float = 0.0
    user_transaction_count: float = 0.0
    user_average_amount: float = 0.0
    transaction_velocity: float = 0.0
    is_new_payment_method: float = Field(0.0, ge=0.0, le=1.0)
    is_international: float = Field(0.0, ge=0.0, le=1.0)
    is_high_risk_country: float = Field(0.0, ge=0.0, le=1.0)
    merchant_category_risk: float = Field(0.0, ge=0.0, le=1.0)

    def to_list(self):
        return [getattr(self, name) for name in FEATURE_NAMES]

    class Config:
        frozen = True  # Makes instances immutable to prevent accidental modification
        populate_by_name = True
        alias_generator = to_camel
