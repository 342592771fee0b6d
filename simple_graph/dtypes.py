"""
Data types understood by the runtime.
These are plain numpy dtypes, only the floating ones can be trained.
"""
from typing import Any

import numpy as np

float16 = np.dtype(np.float16)
float32 = np.dtype(np.float32)
float64 = np.dtype(np.float64)
int32 = np.dtype(np.int32)
int64 = np.dtype(np.int64)
bool_ = np.dtype(np.bool_)

# numpy has no bfloat16, float16 is the half precision type here
FLOATING_TYPES = frozenset({float16, float32, float64})


def as_dtype(value: Any) -> np.dtype:
    """
    Converts `value` (a dtype, a type or a type name) to a numpy dtype.
    """
    try:
        return np.dtype(value)
    except TypeError as e:
        raise TypeError(f"Cannot convert {value!r} to a dtype.") from e


def is_floating(dtype: Any) -> bool:
    return as_dtype(dtype) in FLOATING_TYPES
