"""
Plain gradient descent.
"""
from __future__ import annotations

from .. import math_ops
from .. import training_ops
from ..indexed_slices import IndexedSlices
from .optimizer import Optimizer


class GradientDescentOptimizer(Optimizer):
    """
    Updates every variable by `var -= learning_rate * grad`.
    """

    def __init__(self, learning_rate, use_locking: bool = False, name: str = "GradientDescent"):
        """
        :param learning_rate: A float, a scalar tensor, or a callable returning one.
        :param use_locking: Whether the updates hold the lock of the variable.
        :param name: Name of the operations created when applying gradients.
        """
        super().__init__(use_locking, name)
        self._learning_rate = learning_rate
        self._learning_rate_tensor = None

    def _prepare(self):
        learning_rate = self._call_if_callable(self._learning_rate)
        self._learning_rate_tensor = math_ops.convert_to_tensor(learning_rate, name="learning_rate")

    def _learning_rate_for(self, var):
        return math_ops.cast(self._learning_rate_tensor, var.dtype)

    def _apply_dense(self, grad, var):
        return training_ops.apply_gradient_descent(
            var, self._learning_rate_for(var), grad, use_locking=self._use_locking
        ).op

    def _resource_apply_dense(self, grad, handle):
        return training_ops.resource_apply_gradient_descent(
            handle, self._learning_rate_for(handle), grad, use_locking=self._use_locking
        )

    def _resource_apply_sparse_duplicate_indices(self, grad, handle, indices):
        # scatter-add sums duplicate indices itself
        return training_ops.resource_scatter_add(
            handle, indices, -grad * self._learning_rate_for(handle), use_locking=self._use_locking
        )

    def _apply_sparse_duplicate_indices(self, grad, var):
        delta = IndexedSlices(
            grad.values * self._learning_rate_for(var),
            grad.indices,
            grad.dense_shape,
        )
        return training_ops.scatter_sub(var, delta.indices, delta.values, use_locking=self._use_locking).op
