"""
Creates the slot variables optimizers keep per trained variable.

A slot is named after its primary variable, "<primary>/<name>", is not
trainable and is a resource variable if the primary is one.
"""
from __future__ import annotations

import numpy as np

from .. import dtypes
from ..variables import ResourceVariable, Variable


def create_slot(primary: Variable, val, name: str) -> Variable:
    """
    Creates a slot for `primary` initialized to `val`.

    :param primary: The variable the slot belongs to.
    :param val: The initial value of the slot, which also gives its dtype.
    :param name: Name of the slot, appended to the name of `primary`.
    """
    graph = primary.graph
    with graph.as_default(), graph.control_dependencies(None), graph.name_scope(None):
        return Variable(
            val,
            trainable=False,
            name=f"{primary.op.name}/{name}",
            use_resource=isinstance(primary, ResourceVariable),
        )


def create_zeros_slot(primary: Variable, name: str, dtype=None) -> Variable:
    """
    Creates a slot for `primary` initialized to zeros of its shape,
    of the dtype of `primary` unless `dtype` is given.
    """
    dtype = primary.dtype if dtype is None else dtypes.as_dtype(dtype)
    return create_slot(primary, lambda: np.zeros(primary.shape, dtype=dtype), name)
