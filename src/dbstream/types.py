"""
Value handling for raw cursor values.

This module provides:
- is_null: Detect the null-markers a cursor may hand back
- to_python: Convert NumPy, Pandas and PyArrow scalars to native Python values
"""
import datetime
import math
from typing import Any

import numpy as np
import pandas as pd
import pyarrow as pa

NUMPY_FLOAT_TYPES = (np.floating,)
NUMPY_INT_TYPES = (np.integer, np.unsignedinteger)


def _is_arrow_null(value: Any) -> bool:
    """Check whether a PyArrow scalar holds no value."""
    return isinstance(value, pa.Scalar) and not value.is_valid


def is_null(value: Any) -> bool:
    """Check if a raw value is a null-marker.

    Recognizes None, float NaN, NumPy NaN/NaT, pandas NA/NaT and PyArrow
    null scalars. Strings are never null, even when empty.
    """
    if value is None:
        return True

    if isinstance(value, float):
        return math.isnan(value)

    if isinstance(value, (str, bytes, bool, int)):
        return False

    if value is pd.NA or value is pd.NaT:
        return True

    if isinstance(value, NUMPY_FLOAT_TYPES):
        return bool(np.isnan(value))

    if isinstance(value, (np.datetime64, np.timedelta64)):
        return bool(np.isnat(value))

    return _is_arrow_null(value)


def _convert_numpy_value(val: Any) -> float | int | datetime.datetime | None:
    """Convert NumPy value to Python type."""
    if isinstance(val, (*NUMPY_FLOAT_TYPES, *NUMPY_INT_TYPES, np.bool_)):
        return val.item()

    if isinstance(val, np.datetime64):
        return pd.Timestamp(val).to_pydatetime()

    return val


def to_python(value: Any) -> Any:
    """Convert a single raw value to a native Python value.

    Null-markers become None. Anything already native passes through.
    """
    if is_null(value):
        return None

    if isinstance(value, (str, int, float, bytes)):
        return value

    if isinstance(value, (*NUMPY_FLOAT_TYPES, *NUMPY_INT_TYPES, np.bool_, np.datetime64)):
        return _convert_numpy_value(value)

    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()

    if isinstance(value, pa.Scalar):
        return value.as_py()

    return value
