"""
Gradient descent with momentum.
"""
from __future__ import annotations

from .. import math_ops
from .. import training_ops
from .optimizer import Optimizer


class MomentumOptimizer(Optimizer):
    """
    Keeps a "momentum" slot per variable:

        accumulation = momentum * accumulation + gradient
        variable -= learning_rate * accumulation

    With `use_nesterov=True` the variable is updated by
    `learning_rate * (gradient + momentum * accumulation)` instead.
    """

    def __init__(self, learning_rate, momentum, use_locking: bool = False, name: str = "Momentum",
                 use_nesterov: bool = False):
        super().__init__(use_locking, name)
        self._learning_rate = learning_rate
        self._momentum = momentum
        self._use_nesterov = use_nesterov
        self._learning_rate_tensor = None
        self._momentum_tensor = None

    def _create_slots(self, var_list):
        for v in var_list:
            self._zeros_slot(v, "momentum", self._name)

    def _prepare(self):
        learning_rate = self._call_if_callable(self._learning_rate)
        self._learning_rate_tensor = math_ops.convert_to_tensor(learning_rate, name="learning_rate")
        momentum = self._call_if_callable(self._momentum)
        self._momentum_tensor = math_ops.convert_to_tensor(momentum, name="momentum")

    def _hyper_parameters(self, var):
        return (
            math_ops.cast(self._learning_rate_tensor, var.dtype),
            math_ops.cast(self._momentum_tensor, var.dtype),
        )

    def _apply_dense(self, grad, var):
        mom = self.get_slot(var, "momentum")
        lr, momentum = self._hyper_parameters(var)
        return training_ops.apply_momentum(
            var, mom, lr, grad, momentum,
            use_locking=self._use_locking, use_nesterov=self._use_nesterov,
        ).op

    def _resource_apply_dense(self, grad, handle):
        mom = self.get_slot(handle, "momentum")
        lr, momentum = self._hyper_parameters(handle)
        return training_ops.resource_apply_momentum(
            handle, mom, lr, grad, momentum,
            use_locking=self._use_locking, use_nesterov=self._use_nesterov,
        )

    def _apply_sparse(self, grad, var):
        mom = self.get_slot(var, "momentum")
        lr, momentum = self._hyper_parameters(var)
        return training_ops.sparse_apply_momentum(
            var, mom, lr, grad.values, grad.indices, momentum,
            use_locking=self._use_locking, use_nesterov=self._use_nesterov,
        ).op

    def _resource_apply_sparse(self, grad, handle, indices):
        mom = self.get_slot(handle, "momentum")
        lr, momentum = self._hyper_parameters(handle)
        return training_ops.resource_sparse_apply_momentum(
            handle, mom, lr, grad, indices, momentum,
            use_locking=self._use_locking, use_nesterov=self._use_nesterov,
        )
