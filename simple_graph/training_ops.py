"""
Operations updating variables in place.

Every update kernel takes the variable handle as its first input and
holds the lock of the variable (and of its accumulator) for the whole
read-modify-write if `use_locking` is set.
Kernels without the "Resource" prefix output the updated value, the
"Resource" ones have no output.
"""
from __future__ import annotations

from typing import Optional, Union

import numpy as np

from . import errors
from . import graph as graph_module
from . import math_ops
from . import operations
from .variables import Variable, VariableV2, _locked

VariableLike = Union[Variable, graph_module.Tensor]


def _check_update_shape(op_type: str, variable: Variable, update: np.ndarray, indices=None) -> None:
    if indices is None:
        expected = variable.shape
    else:
        expected = indices.shape + variable.shape[1:]
    if update.shape != expected:
        raise errors.InvalidArgumentError(
            None, f"{op_type}: update of shape {update.shape} does not match the expected shape {expected} "
                  f"for variable {variable.name}"
        )


class _UpdateOperator(operations.Operator):
    def __init__(self, use_locking: bool = False):
        self.use_locking = use_locking

    def output_shapes(self, input_shapes):
        return [input_shapes[0]] * self.num_outputs


class _ResourceUpdate:
    num_outputs = 0

    def output_dtypes(self, input_dtypes):
        return []

    def compute(self, *inputs):
        super().compute(*inputs)
        return None


# -------------------------------------------------------------
# Gradient descent
# -------------------------------------------------------------
class ApplyGradientDescent(_UpdateOperator):
    """
    var -= alpha * delta
    """

    def compute(self, variable: Variable, alpha: np.ndarray, delta: np.ndarray):
        with _locked(variable, self.use_locking):
            storage = variable._storage()
            _check_update_shape(self.type, variable, delta)
            np.subtract(storage, alpha * delta, out=storage, casting="same_kind")
            return storage


class ResourceApplyGradientDescent(_ResourceUpdate, ApplyGradientDescent):
    pass


# -------------------------------------------------------------
# Momentum
# -------------------------------------------------------------
class ApplyMomentum(_UpdateOperator):
    """
    accum = accum * momentum + grad
    var -= lr * accum

    With Nesterov momentum:
    var -= lr * grad + lr * momentum * accum
    """

    def __init__(self, use_locking: bool = False, use_nesterov: bool = False):
        super().__init__(use_locking)
        self.use_nesterov = use_nesterov

    def _update(self, var_rows: np.ndarray, accum_rows: np.ndarray, lr, grad, momentum):
        accum_rows = accum_rows * momentum + grad
        if self.use_nesterov:
            var_rows = var_rows - (grad * lr + accum_rows * momentum * lr)
        else:
            var_rows = var_rows - lr * accum_rows
        return var_rows, accum_rows

    def compute(self, variable: Variable, accum: Variable, lr: np.ndarray,
                grad: np.ndarray, momentum: np.ndarray):
        with _locked(variable, self.use_locking), _locked(accum, self.use_locking):
            storage = variable._storage()
            accum_storage = accum._storage()
            _check_update_shape(self.type, variable, grad)
            new_var, new_accum = self._update(storage, accum_storage, lr, grad, momentum)
            np.copyto(accum_storage, new_accum, casting="same_kind")
            np.copyto(storage, new_var, casting="same_kind")
            return storage


class ResourceApplyMomentum(_ResourceUpdate, ApplyMomentum):
    pass


class SparseApplyMomentum(ApplyMomentum):
    """
    Momentum update of the rows `indices` only.
    Duplicate indices are applied one after another.
    """

    def compute(self, variable: Variable, accum: Variable, lr: np.ndarray,
                grad: np.ndarray, indices: np.ndarray, momentum: np.ndarray):
        with _locked(variable, self.use_locking), _locked(accum, self.use_locking):
            storage = variable._storage()
            accum_storage = accum._storage()
            operations._check_indices(indices, storage.shape[0])
            _check_update_shape(self.type, variable, grad, indices)

            for row, index in zip(grad.reshape((-1,) + storage.shape[1:]), indices.reshape(-1)):
                new_var, new_accum = self._update(storage[index], accum_storage[index], lr, row, momentum)
                accum_storage[index] = new_accum
                storage[index] = new_var
            return storage


class ResourceSparseApplyMomentum(_ResourceUpdate, SparseApplyMomentum):
    pass


# -------------------------------------------------------------
# Scatter
# -------------------------------------------------------------
class ScatterSub(_UpdateOperator):
    """
    var[indices] -= updates, duplicate indices add up.
    """

    def compute(self, variable: Variable, indices: np.ndarray, updates: np.ndarray):
        with _locked(variable, self.use_locking):
            storage = variable._storage()
            operations._check_indices(indices, storage.shape[0])
            _check_update_shape(self.type, variable, updates, indices)
            np.subtract.at(storage, indices, updates.astype(storage.dtype, copy=False))
            return storage


class ResourceScatterAdd(_UpdateOperator):
    """
    var[indices] += updates, duplicate indices add up.
    """

    num_outputs = 0

    def output_dtypes(self, input_dtypes):
        return []

    def compute(self, variable: Variable, indices: np.ndarray, updates: np.ndarray):
        with _locked(variable, self.use_locking):
            storage = variable._storage()
            operations._check_indices(indices, storage.shape[0])
            _check_update_shape(self.type, variable, updates, indices)
            np.add.at(storage, indices, updates.astype(storage.dtype, copy=False))
        return None


# -------------------------------------------------------------
# Builders
# -------------------------------------------------------------
def _as_handle(var: VariableLike) -> tuple[graph_module.Tensor, np.dtype]:
    if isinstance(var, Variable):
        return var.handle, var.dtype
    if isinstance(var, graph_module.Tensor) and isinstance(var.op.kernel, VariableV2):
        return var, var.dtype
    raise TypeError(f"Expected a variable or a variable handle, got {var!r}")


def _create(kernel: operations.Operator, var: VariableLike, *inputs, name: Optional[str] = None,
            extra_vars: tuple = ()):
    handle, dtype = _as_handle(var)
    graph = handle.graph
    tensors = [handle] + [_as_handle(v)[0] for v in extra_vars]
    for value, value_dtype in inputs:
        tensors.append(math_ops.convert_to_tensor(value, dtype=value_dtype, graph=graph))
    return graph.create_op(kernel, tensors, name=name)


def apply_gradient_descent(var: VariableLike, alpha, delta, use_locking: bool = False,
                           name: Optional[str] = None) -> graph_module.Tensor:
    """
    Updates `var` by subtracting `alpha * delta` from it.
    :return: The updated value of `var`.
    """
    dtype = _as_handle(var)[1]
    op = _create(ApplyGradientDescent(use_locking), var, (alpha, dtype), (delta, dtype), name=name)
    return op.outputs[0]


def resource_apply_gradient_descent(var: VariableLike, alpha, delta, use_locking: bool = False,
                                    name: Optional[str] = None) -> graph_module.Operation:
    dtype = _as_handle(var)[1]
    return _create(ResourceApplyGradientDescent(use_locking), var, (alpha, dtype), (delta, dtype), name=name)


def apply_momentum(var: VariableLike, accum: VariableLike, lr, grad, momentum, use_locking: bool = False,
                   use_nesterov: bool = False, name: Optional[str] = None) -> graph_module.Tensor:
    dtype = _as_handle(var)[1]
    op = _create(ApplyMomentum(use_locking, use_nesterov), var, (lr, dtype), (grad, dtype), (momentum, dtype),
                 name=name, extra_vars=(accum,))
    return op.outputs[0]


def resource_apply_momentum(var: VariableLike, accum: VariableLike, lr, grad, momentum,
                            use_locking: bool = False, use_nesterov: bool = False,
                            name: Optional[str] = None) -> graph_module.Operation:
    dtype = _as_handle(var)[1]
    return _create(ResourceApplyMomentum(use_locking, use_nesterov), var, (lr, dtype), (grad, dtype),
                   (momentum, dtype), name=name, extra_vars=(accum,))


def sparse_apply_momentum(var: VariableLike, accum: VariableLike, lr, grad, indices, momentum,
                          use_locking: bool = False, use_nesterov: bool = False,
                          name: Optional[str] = None) -> graph_module.Tensor:
    dtype = _as_handle(var)[1]
    op = _create(SparseApplyMomentum(use_locking, use_nesterov), var, (lr, dtype), (grad, dtype),
                 (indices, None), (momentum, dtype), name=name, extra_vars=(accum,))
    return op.outputs[0]


def resource_sparse_apply_momentum(var: VariableLike, accum: VariableLike, lr, grad, indices, momentum,
                                   use_locking: bool = False, use_nesterov: bool = False,
                                   name: Optional[str] = None) -> graph_module.Operation:
    dtype = _as_handle(var)[1]
    return _create(ResourceSparseApplyMomentum(use_locking, use_nesterov), var, (lr, dtype), (grad, dtype),
                   (indices, None), (momentum, dtype), name=name, extra_vars=(accum,))


def scatter_sub(ref: VariableLike, indices, updates, use_locking: bool = False,
                name: Optional[str] = None) -> graph_module.Tensor:
    """
    Subtracts the rows `updates` from the rows `indices` of `ref`.
    :return: The updated value of `ref`.
    """
    dtype = _as_handle(ref)[1]
    op = _create(ScatterSub(use_locking), ref, (indices, None), (updates, dtype), name=name)
    return op.outputs[0]


def resource_scatter_add(resource: VariableLike, indices, updates, use_locking: bool = False,
                         name: Optional[str] = None) -> graph_module.Operation:
    dtype = _as_handle(resource)[1]
    return _create(ResourceScatterAdd(use_locking), resource, (indices, None), (updates, dtype), name=name)
