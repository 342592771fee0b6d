"""
Contains the kernels behind the operations of a graph.

A kernel knows
  * the dtypes and static shapes of its outputs,
  * how to compute its outputs from numpy inputs (`compute`),
  * how to build the graph operations computing the gradients of its
    inputs from the gradients of its outputs (`gradient`).
"""
from __future__ import annotations

import abc
import functools
from typing import TYPE_CHECKING, Optional, Sequence, Union

import numpy as np

from . import dtypes
from . import errors
from . import math_ops

if TYPE_CHECKING:
    from .graph import Operation, Tensor
    from .indexed_slices import IndexedSlices

Shape = Optional[tuple]
Axis = Optional[Union[int, tuple]]


class Operator(abc.ABC):
    num_outputs: int = 1

    # whether `gradient` can take an `IndexedSlices` gradient as is
    passes_indexed_slices: bool = False

    @property
    def type(self) -> str:
        return type(self).__name__

    def output_dtypes(self, input_dtypes: list[np.dtype]) -> list[np.dtype]:
        return [input_dtypes[0]] * self.num_outputs

    def output_shapes(self, input_shapes: list[Shape]) -> list[Shape]:
        return [None] * self.num_outputs

    @abc.abstractmethod
    def compute(self, *inputs: np.ndarray):
        """
        Computes the outputs from the input values.
        :return: An array for single output kernels, a tuple of arrays
            for multi output kernels and None for kernels without outputs.
        """
        raise NotImplementedError

    def gradient(self, op: Operation, *out_grads) -> list[Optional[Tensor]]:
        """
        Builds the gradients of the inputs of `op`, given the gradients of
        its outputs (`None` for outputs without gradient).
        :return: One gradient (or None) per input of `op`.
        """
        raise LookupError(f"No gradient defined for operation '{op.name}' (op type: {self.type})")

    def __repr__(self):
        return f"<{self.type}>"


# -------------------------------------------------------------
# Helpers
# -------------------------------------------------------------
def _check_same_dtypes(op_type: str, input_dtypes: Sequence[np.dtype]) -> np.dtype:
    first = input_dtypes[0]
    for i, dtype in enumerate(input_dtypes[1:], start=1):
        if dtype != first:
            raise TypeError(
                f"Input {i} of '{op_type}' Op has type {dtype.name} that does not "
                f"match type {first.name} of input 0."
            )
    return first


def _broadcast_shapes(a: Shape, b: Shape) -> Shape:
    """
    Static version of numpy broadcasting, unknown dims are None.
    """
    if a is None or b is None:
        return None

    result = []
    for i in range(1, max(len(a), len(b)) + 1):
        x = a[-i] if i <= len(a) else 1
        y = b[-i] if i <= len(b) else 1
        if x is None or y is None:
            known = y if x is None else x
            result.append(known if known is not None and known != 1 else None)
        elif x == y or y == 1:
            result.append(x)
        elif x == 1:
            result.append(y)
        else:
            raise ValueError(f"Dimensions must be equal or 1, but are {x} and {y} for shapes {a} and {b}.")

    return tuple(reversed(result))


def _normalize_axis(axis: Axis, ndim: int) -> tuple:
    if axis is None:
        return tuple(range(ndim))

    axes = tuple(int(a) for a in np.atleast_1d(axis))
    for a in axes:
        if not -ndim <= a < ndim:
            raise ValueError(f"Invalid reduction axis {a} for input with {ndim} dimensions.")
    return tuple(a % ndim for a in axes)


def _reduced_shape(shape: Shape, axis: Axis, keepdims: bool) -> Shape:
    if shape is None:
        return None
    axes = set(_normalize_axis(axis, len(shape)))
    if keepdims:
        return tuple(1 if i in axes else dim for i, dim in enumerate(shape))
    return tuple(dim for i, dim in enumerate(shape) if i not in axes)


def _check_indices(indices: np.ndarray, limit: int) -> None:
    if not np.issubdtype(indices.dtype, np.integer):
        raise errors.InvalidArgumentError(None, f"indices must be integers, got {indices.dtype}")
    if indices.size > 0 and (indices.min() < 0 or indices.max() >= limit):
        bad = indices[(indices < 0) | (indices >= limit)].ravel()[0]
        raise errors.InvalidArgumentError(None, f"index {bad} is not in [0, {limit})")


# -------------------------------------------------------------
# Sources
# -------------------------------------------------------------
class Const(Operator):
    def __init__(self, value: np.ndarray):
        self.value = value

    def output_dtypes(self, input_dtypes):
        return [self.value.dtype]

    def output_shapes(self, input_shapes):
        return [self.value.shape]

    def compute(self):
        return self.value


class Placeholder(Operator):
    def __init__(self, dtype: np.dtype, shape: Shape):
        self.dtype = dtype
        self.shape = shape

    def output_dtypes(self, input_dtypes):
        return [self.dtype]

    def output_shapes(self, input_shapes):
        return [self.shape]

    def compute(self):
        raise errors.InvalidArgumentError(
            None, f"You must feed a value for placeholder tensor of dtype {self.dtype.name} and shape {self.shape}"
        )


class NoOp(Operator):
    num_outputs = 0

    def output_dtypes(self, input_dtypes):
        return []

    def output_shapes(self, input_shapes):
        return []

    def compute(self, *inputs):
        return None


# -------------------------------------------------------------
# Identities
# -------------------------------------------------------------
class Identity(Operator):
    passes_indexed_slices = True

    def output_shapes(self, input_shapes):
        return [input_shapes[0]]

    def compute(self, x):
        return x

    def gradient(self, op, grad):
        return [grad]


class StopGradient(Identity):
    def gradient(self, op, grad):
        return [None]


# -------------------------------------------------------------
# Elementwise binary operators
# -------------------------------------------------------------
class BinaryOperator(Operator, abc.ABC):
    fn = None

    def output_dtypes(self, input_dtypes):
        return [_check_same_dtypes(self.type, input_dtypes)]

    def output_shapes(self, input_shapes):
        return [_broadcast_shapes(*input_shapes)]

    def compute(self, x, y):
        return type(self).fn(x, y)


class Add(BinaryOperator):
    fn = np.add

    def gradient(self, op, grad):
        x, y = op.inputs
        return [math_ops.unbroadcast_like(grad, x), math_ops.unbroadcast_like(grad, y)]


class Sub(BinaryOperator):
    fn = np.subtract

    def gradient(self, op, grad):
        x, y = op.inputs
        # note the minus
        return [math_ops.unbroadcast_like(grad, x), math_ops.unbroadcast_like(-grad, y)]


class Mul(BinaryOperator):
    fn = np.multiply

    def gradient(self, op, grad):
        x, y = op.inputs
        return [math_ops.unbroadcast_like(grad * y, x), math_ops.unbroadcast_like(x * grad, y)]


class RealDiv(BinaryOperator):
    fn = np.true_divide

    def gradient(self, op, grad):
        x, y = op.inputs
        # d(x/y)/dy = -x/y^2
        return [
            math_ops.unbroadcast_like(grad / y, x),
            math_ops.unbroadcast_like(-grad * x / (y * y), y),
        ]


class Pow(BinaryOperator):
    fn = np.power

    def gradient(self, op, grad):
        x, y = op.inputs
        z = op.outputs[0]
        return [
            math_ops.unbroadcast_like(grad * y * math_ops.pow(x, y - 1), x),
            math_ops.unbroadcast_like(grad * z * math_ops.log_or_zero(x), y),
        ]


# -------------------------------------------------------------
# Elementwise unary operators
# -------------------------------------------------------------
class UnaryOperator(Operator, abc.ABC):
    fn = None

    def output_shapes(self, input_shapes):
        return [input_shapes[0]]

    def compute(self, x):
        return type(self).fn(x)


class Neg(UnaryOperator):
    fn = np.negative

    def gradient(self, op, grad):
        return [-grad]


class Square(UnaryOperator):
    fn = np.square

    def gradient(self, op, grad):
        x = op.inputs[0]
        return [grad * (2 * x)]


class Sqrt(UnaryOperator):
    fn = np.sqrt

    def gradient(self, op, grad):
        y = op.outputs[0]
        return [grad * 0.5 / y]


class Exp(UnaryOperator):
    fn = np.exp

    def gradient(self, op, grad):
        return [grad * op.outputs[0]]


class Log(UnaryOperator):
    fn = np.log

    def gradient(self, op, grad):
        return [grad / op.inputs[0]]


class LogOrZero(UnaryOperator):
    """
    The log of the positive elements, zero elsewhere.
    """

    def compute(self, x):
        return np.log(x, out=np.zeros_like(x), where=np.greater(x, 0))


class Relu(UnaryOperator):
    def compute(self, x):
        return np.where(np.greater(x, 0), x, 0).astype(x.dtype, copy=False)

    def gradient(self, op, grad):
        return [math_ops.relu_grad(grad, op.outputs[0])]


class Sigmoid(UnaryOperator):
    def compute(self, x):
        exp_m_x = np.exp(np.negative(x))
        return np.reciprocal(1 + exp_m_x)

    def gradient(self, op, grad):
        return [math_ops.sigmoid_grad(op.outputs[0], grad)]


class Tanh(UnaryOperator):
    fn = np.tanh

    def gradient(self, op, grad):
        return [math_ops.tanh_grad(op.outputs[0], grad)]


class ReluGrad(BinaryOperator):
    def compute(self, grad, y):
        return np.where(np.greater(y, 0), grad, 0).astype(grad.dtype, copy=False)


class SigmoidGrad(BinaryOperator):
    def compute(self, y, grad):
        return grad * y * (1 - y)


class TanhGrad(BinaryOperator):
    def compute(self, y, grad):
        return grad * (1 - y * y)


# -------------------------------------------------------------
# Matrices
# -------------------------------------------------------------
class MatMul(Operator):
    def __init__(self, transpose_a: bool = False, transpose_b: bool = False):
        self.transpose_a = transpose_a
        self.transpose_b = transpose_b

    def output_dtypes(self, input_dtypes):
        return [_check_same_dtypes(self.type, input_dtypes)]

    def output_shapes(self, input_shapes):
        a, b = input_shapes
        if a is None or b is None:
            return [None]
        if len(a) != 2 or len(b) != 2:
            raise ValueError(f"MatMul needs 2D inputs, got shapes {a} and {b}.")

        rows, inner_a = (a[1], a[0]) if self.transpose_a else a
        inner_b, cols = (b[1], b[0]) if self.transpose_b else b
        if inner_a is not None and inner_b is not None and inner_a != inner_b:
            raise ValueError(f"Dimensions must be equal, but are {inner_a} and {inner_b} for MatMul with shapes {a} and {b}.")
        return [(rows, cols)]

    def compute(self, a, b):
        if a.ndim != 2 or b.ndim != 2:
            raise errors.InvalidArgumentError(None, f"MatMul needs 2D inputs, got shapes {a.shape} and {b.shape}")
        if self.transpose_a:
            a = a.T
        if self.transpose_b:
            b = b.T
        return np.matmul(a, b)

    def gradient(self, op, grad):
        a, b = op.inputs
        matmul = math_ops.matmul
        if not self.transpose_a and not self.transpose_b:
            return [matmul(grad, b, transpose_b=True), matmul(a, grad, transpose_a=True)]
        elif not self.transpose_a and self.transpose_b:
            return [matmul(grad, b), matmul(grad, a, transpose_a=True)]
        elif self.transpose_a and not self.transpose_b:
            return [matmul(b, grad, transpose_b=True), matmul(a, grad)]
        else:
            return [
                matmul(b, grad, transpose_a=True, transpose_b=True),
                matmul(grad, a, transpose_a=True, transpose_b=True),
            ]


# -------------------------------------------------------------
# Reductions
# -------------------------------------------------------------
class ReductionOperator(Operator, abc.ABC):
    def __init__(self, axis: Axis = None, keepdims: bool = False):
        self.axis = axis
        self.keepdims = keepdims

    def output_shapes(self, input_shapes):
        return [_reduced_shape(input_shapes[0], self.axis, self.keepdims)]

    def __repr__(self):
        if self.axis is not None:
            axis = np.atleast_1d(self.axis)
            return f"{super().__repr__()[:-1]}{''.join(map(str, axis))}>"
        else:
            return super().__repr__()


class Sum(ReductionOperator):
    def compute(self, x):
        axis = _normalize_axis(self.axis, x.ndim)
        return np.asarray(np.sum(x, axis=axis, keepdims=self.keepdims), dtype=x.dtype)

    def gradient(self, op, grad):
        x = op.inputs[0]
        return [math_ops.broadcast_to_like(grad, x, axis=self.axis, keepdims=self.keepdims)]


class Mean(ReductionOperator):
    def compute(self, x):
        axis = _normalize_axis(self.axis, x.ndim)
        return np.asarray(np.mean(x, axis=axis, keepdims=self.keepdims), dtype=x.dtype)

    def gradient(self, op, grad):
        x = op.inputs[0]
        return [math_ops.broadcast_to_like(grad, x, axis=self.axis, keepdims=self.keepdims, mean=True)]


class BroadcastToLike(Operator):
    """
    Spreads the gradient of a reduction over the reduced input `like`,
    dividing by the number of reduced elements for means.
    """

    def __init__(self, axis: Axis, keepdims: bool, mean: bool = False):
        self.axis = axis
        self.keepdims = keepdims
        self.mean = mean

    def output_shapes(self, input_shapes):
        return [input_shapes[1]]

    def compute(self, grad, like):
        axis = _normalize_axis(self.axis, like.ndim)
        if not self.keepdims:
            # replace reduction dims with 1
            shape = tuple(1 if i in axis else dim for i, dim in enumerate(like.shape))
            grad = np.reshape(grad, shape)

        result = np.broadcast_to(grad, like.shape).copy()
        if self.mean:
            count = int(np.prod([like.shape[i] for i in axis]))
            result = result / max(count, 1)
        return result.astype(grad.dtype, copy=False)


class UnbroadcastTo(Operator):
    """
    Sum-reduces a gradient to the shape of `like`, undoing numpy broadcasting.
    """

    def output_shapes(self, input_shapes):
        return [input_shapes[1]]

    def compute(self, grad, like):
        grad = np.asarray(grad)
        shape = like.shape
        if grad.shape == shape:
            return grad

        if grad.ndim < len(shape):
            grad = np.broadcast_to(grad, shape)

        # sum reduce leading dims
        shape_diff = grad.ndim - len(shape)
        if shape_diff > 0:
            grad = grad.sum(axis=tuple(range(shape_diff)))

        # then the dims where `like` was broadcast from 1
        reduce_axis = tuple(
            i for i in range(len(shape))
            if shape[i] == 1 and grad.shape[i] != 1
        )
        if reduce_axis:
            grad = grad.sum(axis=reduce_axis, keepdims=True)

        if grad.shape != shape:
            raise errors.InvalidArgumentError(None, f"Cannot reduce gradient of shape {grad.shape} to shape {shape}")
        return np.array(grad)


# -------------------------------------------------------------
# Sums of many
# -------------------------------------------------------------
class AddN(Operator):
    def output_dtypes(self, input_dtypes):
        return [_check_same_dtypes(self.type, input_dtypes)]

    def output_shapes(self, input_shapes):
        return [functools.reduce(_broadcast_shapes, input_shapes)]

    def compute(self, *inputs):
        return functools.reduce(np.add, inputs)

    def gradient(self, op, grad):
        return [grad] * len(op.inputs)


class AccumulateN(AddN):
    """
    Same result as `AddN`, but accumulates into a single buffer
    instead of creating intermediate sums.
    """

    def compute(self, *inputs):
        shape = np.broadcast_shapes(*(x.shape for x in inputs))
        result = np.zeros(shape, dtype=inputs[0].dtype)
        for x in inputs:
            np.add(result, x, out=result)
        return result


# -------------------------------------------------------------
# dtypes and shapes
# -------------------------------------------------------------
class Cast(Operator):
    def __init__(self, dtype: np.dtype):
        self.dtype = dtype

    def output_dtypes(self, input_dtypes):
        return [self.dtype]

    def output_shapes(self, input_shapes):
        return [input_shapes[0]]

    def compute(self, x):
        return x.astype(self.dtype)

    def gradient(self, op, grad):
        x = op.inputs[0]
        if dtypes.is_floating(x.dtype) and dtypes.is_floating(self.dtype):
            return [math_ops.cast(grad, x.dtype)]
        return [None]


class ZerosLike(UnaryOperator):
    def compute(self, x):
        return np.zeros_like(x)

    def gradient(self, op, grad):
        return [None]


class OnesLike(UnaryOperator):
    def compute(self, x):
        return np.ones_like(x)

    def gradient(self, op, grad):
        return [None]


class Shape(Operator):
    def output_dtypes(self, input_dtypes):
        return [dtypes.int64]

    def output_shapes(self, input_shapes):
        shape = input_shapes[0]
        return [None if shape is None else (len(shape),)]

    def compute(self, x):
        return np.asarray(x.shape, dtype=np.int64)

    def gradient(self, op, grad):
        return [None]


class Size(Operator):
    def output_dtypes(self, input_dtypes):
        return [dtypes.int64]

    def output_shapes(self, input_shapes):
        return [()]

    def compute(self, x):
        return np.asarray(x.size, dtype=np.int64)

    def gradient(self, op, grad):
        return [None]


class Reshape(Operator):
    def __init__(self, shape: tuple):
        self.shape = tuple(shape)

    def output_shapes(self, input_shapes):
        return [tuple(None if dim == -1 else dim for dim in self.shape)]

    def compute(self, x):
        return np.reshape(x, self.shape)

    def gradient(self, op, grad):
        x = op.inputs[0]
        return [math_ops.reshape_like(grad, x)]


class ReshapeLike(Operator):
    def output_shapes(self, input_shapes):
        return [input_shapes[1]]

    def compute(self, x, like):
        return np.reshape(x, like.shape)

    def gradient(self, op, grad):
        x = op.inputs[0]
        return [math_ops.reshape_like(grad, x), None]


# -------------------------------------------------------------
# Gathering and scattering
# -------------------------------------------------------------
class Gather(Operator):
    """
    Gathers rows (slices along axis 0) of `params`.
    The gradient is sparse: an `IndexedSlices` of the gathered rows.
    """

    def output_shapes(self, input_shapes):
        params, indices = input_shapes
        if params is None or indices is None:
            return [None]
        return [tuple(indices) + tuple(params[1:])]

    def compute(self, params, indices):
        _check_indices(indices, params.shape[0])
        return np.take(params, indices, axis=0)

    def gradient(self, op, grad):
        from .indexed_slices import IndexedSlices

        params, indices = op.inputs
        values = math_ops.flatten_leading_like(grad, indices)
        flat_indices = math_ops.reshape(indices, (-1,))
        return [IndexedSlices(values, flat_indices, math_ops.shape(params)), None]


class FlattenLeadingLike(Operator):
    """
    Collapses the leading `like.ndim` dims of `x` into one.
    """

    def compute(self, x, like):
        return np.reshape(x, (like.size,) + x.shape[like.ndim:])


class UnsortedSegmentSum(Operator):
    """
    Sums the rows of `data` that share a segment id.
    """

    def compute(self, data, segment_ids, num_segments):
        num_segments = int(num_segments)
        _check_indices(segment_ids, num_segments)
        result = np.zeros((num_segments,) + data.shape[segment_ids.ndim:], dtype=data.dtype)
        np.add.at(result, segment_ids, data)
        return result

    def gradient(self, op, grad):
        segment_ids = op.inputs[1]
        return [math_ops.gather(grad, segment_ids), None, None]


class Unique(Operator):
    """
    The unique elements of a 1D tensor in order of first occurrence,
    and for every element the position of its value in that list.
    """

    num_outputs = 2

    def output_dtypes(self, input_dtypes):
        return [input_dtypes[0], dtypes.int64]

    def output_shapes(self, input_shapes):
        return [(None,), input_shapes[0]]

    def compute(self, x):
        if x.ndim != 1:
            raise errors.InvalidArgumentError(None, f"unique expects a 1D vector, got shape {x.shape}")

        values, first_index, inverse = np.unique(x, return_index=True, return_inverse=True)
        order = np.argsort(first_index, kind="stable")
        rank = np.empty_like(order)
        rank[order] = np.arange(len(order))
        return values[order], rank[inverse.reshape(-1)].astype(np.int64)

    def gradient(self, op, *grads):
        return [None]


class ConcatV2(Operator):
    def __init__(self, axis: int = 0):
        self.axis = axis

    def output_dtypes(self, input_dtypes):
        return [_check_same_dtypes(self.type, input_dtypes)]

    def compute(self, *inputs):
        return np.concatenate(inputs, axis=self.axis)

    def gradient(self, op, grad):
        return math_ops.split_like(grad, op.inputs, axis=self.axis)


class SplitLike(Operator):
    """
    Splits `grad` along `axis` into pieces as large as the
    remaining inputs, undoing a concatenation of those.
    """

    def __init__(self, axis: int, num_outputs: int):
        self.axis = axis
        self.num_outputs = num_outputs

    def output_shapes(self, input_shapes):
        return list(input_shapes[1:])

    def compute(self, grad, *likes):
        sizes = [like.shape[self.axis] for like in likes]
        return tuple(np.split(grad, np.cumsum(sizes)[:-1], axis=self.axis))


class IndexedSlicesToDense(Operator):
    def output_dtypes(self, input_dtypes):
        return [input_dtypes[0]]

    def compute(self, values, indices, dense_shape):
        result = np.zeros(tuple(int(dim) for dim in dense_shape), dtype=values.dtype)
        _check_indices(indices, result.shape[0])
        # this is all you need to scatter the rows
        np.add.at(result, indices, values)
        return result
