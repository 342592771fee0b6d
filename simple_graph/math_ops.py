"""
Functions adding operations to a graph.

Every function takes tensors (or anything `convert_to_tensor` accepts)
and returns the output tensor(s) of the new operation.
"""
from __future__ import annotations

import warnings
from typing import Optional, Sequence

import numpy as np

from . import dtypes
from . import graph as graph_module
from . import indexed_slices
from . import operations


# -------------------------------------------------------------
# Conversion
# -------------------------------------------------------------
def _default_array(value, dtype=None) -> np.ndarray:
    if dtype is not None:
        return np.array(value, dtype=dtypes.as_dtype(dtype))

    array = np.array(value)
    if not isinstance(value, (np.ndarray, np.generic)):
        # python numbers default to 32 bit
        if array.dtype == np.float64:
            array = array.astype(np.float32)
        elif array.dtype == np.int64:
            array = array.astype(np.int32)
    return array


def constant(value, dtype=None, name: str = "Const",
             graph: Optional[graph_module.Graph] = None) -> graph_module.Tensor:
    """
    Creates a constant tensor. The value is copied.
    Python floats become float32 and python ints int32 unless `dtype` is given.
    """
    array = _default_array(value, dtype)
    if array.dtype == object:
        raise TypeError(f"Failed to convert object of type {type(value).__name__} to Tensor.")

    graph = graph if graph is not None else graph_module.get_default_graph()
    return graph.create_op(operations.Const(array), [], name=name).outputs[0]


def placeholder(dtype, shape=None, name: Optional[str] = None) -> graph_module.Tensor:
    """
    A tensor whose value has to be fed when running a session.
    """
    dtype = dtypes.as_dtype(dtype)
    shape = None if shape is None else tuple(shape)
    graph = graph_module.get_default_graph()
    return graph.create_op(operations.Placeholder(dtype, shape), [], name=name or "Placeholder").outputs[0]


def convert_to_tensor(value, dtype=None, name: Optional[str] = None, preferred_dtype=None,
                      graph: Optional[graph_module.Graph] = None) -> graph_module.Tensor:
    """
    Converts `value` to a `Tensor`.

    Tensors are returned as they are, variables as their value.
    Numbers and array-likes become constants (of `dtype` if given, else of
    `preferred_dtype` if they can be cast to it safely).

    :raises ValueError: If `value` is a tensor of a dtype other than `dtype`.
    :raises TypeError: If `value` can not be converted.
    """
    if dtype is not None:
        dtype = dtypes.as_dtype(dtype)

    if isinstance(value, indexed_slices.IndexedSlices):
        warnings.warn(
            "Converting sparse IndexedSlices to a dense Tensor. "
            "This may consume a large amount of memory.",
            UserWarning,
            stacklevel=2,
        )
        value = indexed_slices_to_dense(value)

    if isinstance(value, graph_module._OperatorsMixin):
        tensor = value._as_tensor()
        if dtype is not None and tensor.dtype != dtype:
            raise ValueError(
                f"Tensor conversion requested dtype {dtype.name} for Tensor with dtype "
                f"{tensor.dtype.name}: {tensor!r}"
            )
        if graph is not None and tensor.graph is not graph:
            raise ValueError(f"Tensor {tensor.name} must be from the same graph as the other inputs.")
        return tensor

    if isinstance(value, graph_module.Operation):
        raise TypeError(f"Can not convert an Operation into a Tensor: {value!r}")

    if dtype is None and preferred_dtype is not None:
        preferred_dtype = dtypes.as_dtype(preferred_dtype)
        array = _default_array(value)
        if array.dtype != object and np.can_cast(array.dtype, preferred_dtype, casting="same_kind"):
            dtype = preferred_dtype

    return constant(value, dtype=dtype, name=name or "Const", graph=graph)


def convert_to_tensor_or_indexed_slices(value, dtype=None, name: Optional[str] = None):
    """
    Like `convert_to_tensor`, but keeps `IndexedSlices`.
    """
    if isinstance(value, indexed_slices.IndexedSlices):
        if dtype is not None and value.dtype != dtypes.as_dtype(dtype):
            raise ValueError(
                f"Tensor conversion requested dtype {dtypes.as_dtype(dtype).name} for IndexedSlices "
                f"with dtype {value.dtype.name}: {value!r}"
            )
        return value
    return convert_to_tensor(value, dtype=dtype, name=name)


def _convert_all(values: Sequence, dtype=None):
    """
    Converts all `values`. Non-tensors take the dtype of the first tensor.
    """
    graph = graph_module.get_graph_from_inputs(values)
    if dtype is None:
        for value in values:
            if isinstance(value, graph_module._OperatorsMixin):
                dtype = value._as_tensor().dtype
                break

    return graph, [
        convert_to_tensor(value, graph=graph) if isinstance(value, graph_module._OperatorsMixin)
        else convert_to_tensor(value, dtype=dtype, graph=graph)
        for value in values
    ]


def _unary(kernel: operations.Operator, x, name: Optional[str]) -> graph_module.Tensor:
    graph, (x,) = _convert_all([x])
    return graph.create_op(kernel, [x], name=name).outputs[0]


def _binary(kernel: operations.Operator, x, y, name: Optional[str]) -> graph_module.Tensor:
    graph, (x, y) = _convert_all([x, y])
    return graph.create_op(kernel, [x, y], name=name).outputs[0]


# -------------------------------------------------------------
# Identities
# -------------------------------------------------------------
def identity(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Identity(), x, name)


def stop_gradient(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.StopGradient(), x, name)


# -------------------------------------------------------------
# Arithmetic
# -------------------------------------------------------------
def add(x, y, name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.Add(), x, y, name)


def subtract(x, y, name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.Sub(), x, y, name)


def multiply(x, y, name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.Mul(), x, y, name)


def divide(x, y, name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.RealDiv(), x, y, name)


def pow(x, y, name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.Pow(), x, y, name)


def negative(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Neg(), x, name)


def square(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Square(), x, name)


def sqrt(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Sqrt(), x, name)


def exp(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Exp(), x, name)


def log(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Log(), x, name)


def log_or_zero(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.LogOrZero(), x, name)


# -------------------------------------------------------------
# Activations
# -------------------------------------------------------------
def relu(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Relu(), x, name)


def sigmoid(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Sigmoid(), x, name)


def tanh(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Tanh(), x, name)


def relu_grad(grad, y, name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.ReluGrad(), grad, y, name)


def sigmoid_grad(y, grad, name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.SigmoidGrad(), y, grad, name)


def tanh_grad(y, grad, name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.TanhGrad(), y, grad, name)


# -------------------------------------------------------------
# Matrices and reductions
# -------------------------------------------------------------
def matmul(a, b, transpose_a: bool = False, transpose_b: bool = False,
           name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.MatMul(transpose_a, transpose_b), a, b, name)


def reduce_sum(x, axis=None, keepdims: bool = False, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Sum(axis, keepdims), x, name)


def reduce_mean(x, axis=None, keepdims: bool = False, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Mean(axis, keepdims), x, name)


def broadcast_to_like(grad, like, axis=None, keepdims: bool = False, mean: bool = False,
                      name: Optional[str] = None) -> graph_module.Tensor:
    return _binary(operations.BroadcastToLike(axis, keepdims, mean), grad, like, name)


def unbroadcast_like(grad, like, name: Optional[str] = None) -> graph_module.Tensor:
    """
    Sum-reduces `grad` to the shape of `like`.
    Returns `grad` itself if both shapes are known to be equal already.
    """
    grad = convert_to_tensor(grad)
    like = convert_to_tensor(like)
    if grad.shape is not None and grad.shape == like.shape and None not in grad.shape:
        return grad
    graph = graph_module.get_graph_from_inputs([grad, like])
    return graph.create_op(operations.UnbroadcastTo(), [grad, like], name=name).outputs[0]


# -------------------------------------------------------------
# Sums of many
# -------------------------------------------------------------
def add_n(inputs: Sequence, name: Optional[str] = None) -> graph_module.Tensor:
    """
    Adds all `inputs` element-wise.
    """
    if not inputs:
        raise ValueError("inputs must be a non-empty list of tensors.")
    graph, inputs = _convert_all(list(inputs))
    if len(inputs) == 1 and name is None:
        return inputs[0]
    return graph.create_op(operations.AddN(), inputs, name=name).outputs[0]


def accumulate_n(inputs: Sequence, name: Optional[str] = None) -> graph_module.Tensor:
    """
    Same as `add_n`, but sums into a single buffer.
    """
    if not inputs:
        raise ValueError("inputs must be a non-empty list of tensors.")
    graph, inputs = _convert_all(list(inputs))
    if len(inputs) == 1 and name is None:
        return inputs[0]
    return graph.create_op(operations.AccumulateN(), inputs, name=name).outputs[0]


# -------------------------------------------------------------
# dtypes and shapes
# -------------------------------------------------------------
def cast(x, dtype, name: Optional[str] = None) -> graph_module.Tensor:
    dtype = dtypes.as_dtype(dtype)
    x = convert_to_tensor(x)
    if x.dtype == dtype and name is None:
        return x
    return x.graph.create_op(operations.Cast(dtype), [x], name=name).outputs[0]


def zeros_like(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.ZerosLike(), x, name)


def ones_like(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.OnesLike(), x, name)


def shape(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Shape(), x, name)


def size(x, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Size(), x, name)


def reshape(x, new_shape, name: Optional[str] = None) -> graph_module.Tensor:
    return _unary(operations.Reshape(new_shape), x, name)


def reshape_like(x, like, name: Optional[str] = None) -> graph_module.Tensor:
    graph, (x, like) = _convert_all([x, like])
    return graph.create_op(operations.ReshapeLike(), [x, like], name=name).outputs[0]


# -------------------------------------------------------------
# Gathering and scattering
# -------------------------------------------------------------
def gather(params, indices, name: Optional[str] = None) -> graph_module.Tensor:
    """
    Gathers the rows `indices` of `params`.
    """
    graph = graph_module.get_graph_from_inputs([params, indices])
    params = convert_to_tensor(params, graph=graph)
    indices = convert_to_tensor(indices, graph=graph)
    return graph.create_op(operations.Gather(), [params, indices], name=name).outputs[0]


def flatten_leading_like(x, like, name: Optional[str] = None) -> graph_module.Tensor:
    graph = graph_module.get_graph_from_inputs([x, like])
    x = convert_to_tensor(x, graph=graph)
    like = convert_to_tensor(like, graph=graph)
    return graph.create_op(operations.FlattenLeadingLike(), [x, like], name=name).outputs[0]


def unsorted_segment_sum(data, segment_ids, num_segments, name: Optional[str] = None) -> graph_module.Tensor:
    """
    Sums the rows of `data` with equal `segment_ids` into `num_segments` rows.
    """
    graph = graph_module.get_graph_from_inputs([data, segment_ids, num_segments])
    data = convert_to_tensor(data, graph=graph)
    segment_ids = convert_to_tensor(segment_ids, graph=graph)
    num_segments = convert_to_tensor(num_segments, preferred_dtype=dtypes.int64, graph=graph)
    op = graph.create_op(operations.UnsortedSegmentSum(), [data, segment_ids, num_segments], name=name)
    return op.outputs[0]


def unique(x, name: Optional[str] = None) -> tuple[graph_module.Tensor, graph_module.Tensor]:
    """
    :return: The unique values of the 1D tensor `x` in order of first
        occurrence, and for every element of `x` the index of its value
        within those.
    """
    x = convert_to_tensor(x)
    op = x.graph.create_op(operations.Unique(), [x], name=name)
    return op.outputs[0], op.outputs[1]


def concat(values: Sequence, axis: int = 0, name: str = "concat") -> graph_module.Tensor:
    if not values:
        raise ValueError("values must be a non-empty list of tensors.")
    graph, values = _convert_all(list(values))
    if len(values) == 1:
        return identity(values[0], name=name)
    return graph.create_op(operations.ConcatV2(axis), values, name=name).outputs[0]


def split_like(value, likes: Sequence, axis: int = 0, name: Optional[str] = None) -> list[graph_module.Tensor]:
    """
    Splits `value` along `axis` into one piece per tensor in `likes`,
    each as large as that tensor along `axis`.
    """
    graph, inputs = _convert_all([value, *likes])
    op = graph.create_op(operations.SplitLike(axis, len(likes)), inputs, name=name)
    return list(op.outputs)


def indexed_slices_to_dense(value: indexed_slices.IndexedSlices,
                            name: Optional[str] = None) -> graph_module.Tensor:
    """
    Scatters `value` into a dense tensor, adding up duplicate indices.
    """
    if value.dense_shape is None:
        raise ValueError(f"Tensor conversion requested for IndexedSlices without dense_shape: {value!r}")
    inputs = [value.values, value.indices, value.dense_shape]
    return value.graph.create_op(operations.IndexedSlicesToDense(), inputs, name=name).outputs[0]
