"""
Sparse gradients.
"""
from __future__ import annotations

import collections
from typing import Optional

import numpy as np

from . import graph as graph_module


class IndexedSlices:
    """
    A sparse representation of a dense tensor of shape `dense_shape`:
    only the rows `indices` (along axis 0) are given, by `values`.
    Rows not listed are zero, rows listed multiple times add up.

    This is what the gradient of a gather looks like.
    """

    def __init__(self, values: graph_module.Tensor, indices: graph_module.Tensor,
                 dense_shape: Optional[graph_module.Tensor] = None):
        self._values = values
        self._indices = indices
        self._dense_shape = dense_shape

    @property
    def values(self) -> graph_module.Tensor:
        return self._values

    @property
    def indices(self) -> graph_module.Tensor:
        return self._indices

    @property
    def dense_shape(self) -> Optional[graph_module.Tensor]:
        return self._dense_shape

    @property
    def name(self) -> str:
        return self._values.name

    @property
    def op(self) -> graph_module.Operation:
        return self._values.op

    @property
    def dtype(self) -> np.dtype:
        return self._values.dtype

    @property
    def graph(self) -> graph_module.Graph:
        return self._values.graph

    def __neg__(self) -> IndexedSlices:
        return IndexedSlices(-self._values, self._indices, self._dense_shape)

    def __repr__(self):
        dense_shape = "" if self._dense_shape is None else f", dense_shape={self._dense_shape.name}"
        return f"IndexedSlices(indices={self._indices.name}, values={self._values.name}{dense_shape})"


IndexedSlicesValue = collections.namedtuple("IndexedSlicesValue", ["values", "indices", "dense_shape"])
