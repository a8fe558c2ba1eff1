"""
Historical feature records from DuckDB.

The payment pipeline stores the features it computed for every scored
transaction. This module reads them back so the engine can be (re)trained
on real history instead of the synthetic warm-start set.

Expected table columns (snake_case or camelCase):
    amount, user_id, time_of_day, day_of_week, user_transaction_count,
    user_average_amount, transaction_velocity, is_new_payment_method,
    is_international, is_high_risk_country, merchant_category, [country]
"""

import logging
import re
from typing import List, Optional

import duckdb
import numpy as np
import pandas as pd

from anomaly_engine.features.schema import TransactionFeatures


logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def load_history_frame(
    duckdb_path: str,
    table: str = "transaction_features",
    limit: Optional[int] = None
) -> pd.DataFrame:
    """
    Read stored feature rows, oldest first when a created_at column exists.
    """
    if not _IDENTIFIER.match(table):
        raise ValueError(f"Invalid table name: {table!r}")

    con = duckdb.connect(duckdb_path, read_only=True)
    try:
        columns = [row[0] for row in con.execute(f"DESCRIBE {table}").fetchall()]
        query = f"SELECT * FROM {table}"
        if "created_at" in columns:
            query += " ORDER BY created_at"
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        df = con.execute(query).df()
    finally:
        con.close()

    logger.info("Loaded %d feature rows from %s (%s)", len(df), duckdb_path, table)
    return df


def _to_native(value):
    if isinstance(value, np.generic):
        return value.item()
    return value


def validate_history(df: pd.DataFrame) -> List[TransactionFeatures]:
    """
    Run every row through TransactionFeatures. Invalid rows are logged and
    skipped so one bad record never blocks retraining.
    """
    valid = []
    skipped = 0
    for record in df.to_dict(orient="records"):
        # DuckDB NULLs arrive as NaN/None; let the schema defaults apply
        record = {k: _to_native(v) for k, v in record.items() if not pd.isna(v)}
        try:
            valid.append(TransactionFeatures(**record))
        except ValueError as e:
            skipped += 1
            logger.warning("Skipping invalid feature row: %s", e)

    if skipped:
        logger.warning("Skipped %d of %d feature rows", skipped, len(df))
    return valid


def load_feature_history(
    duckdb_path: str,
    table: str = "transaction_features",
    limit: Optional[int] = None
) -> List[TransactionFeatures]:
    """
    Load and validate historical feature records.

    Example:
        >>> records = load_feature_history("data/transactions.duckdb")
        >>> vectors = [to_feature_vector(r) for r in records]
    """
    return validate_history(load_history_frame(duckdb_path, table, limit))
