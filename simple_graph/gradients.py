"""
Symbolic reverse mode differentiation.

`gradients` adds the operations computing the gradients to the graph,
walking the operations between `xs` and `ys` in reverse topological order.
"""
from __future__ import annotations

import enum
import graphlib
import logging
from typing import Optional

from . import control_flow
from . import graph as graph_module
from . import math_ops
from .indexed_slices import IndexedSlices

logger = logging.getLogger(__name__)


class AggregationMethod(enum.IntEnum):
    """
    How multiple gradient contributions to the same tensor are summed up.

    ADD_N: All contributions are summed by a single `AddN` operation,
        which needs all of them to be computed first.
    EXPERIMENTAL_TREE: Contributions are summed pairwise.
    EXPERIMENTAL_ACCUMULATE_N: Contributions are accumulated into a
        single buffer.
    """

    ADD_N = 0
    DEFAULT = ADD_N
    EXPERIMENTAL_TREE = 1
    EXPERIMENTAL_ACCUMULATE_N = 2


def _as_list(x) -> list:
    return list(x) if isinstance(x, (list, tuple)) else [x]


def _as_differentiable(x) -> graph_module.Tensor:
    # variables are differentiated through their handle
    handle = getattr(x, "handle", None)
    if isinstance(x, graph_module._OperatorsMixin) and isinstance(handle, graph_module.Tensor):
        return handle
    return math_ops.convert_to_tensor(x)


def _densify(grad):
    if isinstance(grad, IndexedSlices):
        return math_ops.convert_to_tensor(grad)
    return grad


def _aggregate(grads: list, method: AggregationMethod):
    grads = [g for g in grads if g is not None]
    if not grads:
        return None
    if len(grads) == 1:
        return grads[0]

    if all(isinstance(g, IndexedSlices) for g in grads):
        # sparse gradients stay sparse
        values = math_ops.concat([g.values for g in grads])
        indices = math_ops.concat([g.indices for g in grads])
        return IndexedSlices(values, indices, grads[0].dense_shape)

    grads = [_densify(g) for g in grads]
    if method == AggregationMethod.EXPERIMENTAL_TREE:
        result = grads[0]
        for g in grads[1:]:
            result = math_ops.add(result, g)
        return result
    elif method == AggregationMethod.EXPERIMENTAL_ACCUMULATE_N:
        return math_ops.accumulate_n(grads)
    else:
        return math_ops.add_n(grads)


def _reachable_forward(xs: list) -> set:
    reached = set()
    queue = [x.op for x in xs]
    while queue:
        op = queue.pop()
        if op in reached:
            continue
        reached.add(op)
        for t in op.outputs:
            queue.extend(t.consumers())
    return reached


def _between(ys: list, reached: set) -> set:
    """
    The operations reached from `xs` that `ys` depend on.
    """
    between = set()
    queue = [y.op for y in ys]
    while queue:
        op = queue.pop()
        if op not in reached or op in between:
            continue
        between.add(op)
        queue.extend(t.op for t in op.inputs)
    return between


def gradients(ys, xs, grad_ys=None, name: str = "gradients", gate_gradients: bool = False,
              aggregation_method: Optional[AggregationMethod] = None,
              colocate_gradients_with_ops: bool = False, stop_gradients=None) -> list:
    """
    Constructs the symbolic derivatives of the sum of `ys` w.r.t. each of `xs`.

    :param ys: A tensor or list of tensors to be differentiated.
    :param xs: A tensor, variable or list of them, to differentiate against.
    :param grad_ys: The gradients of `ys` (a list of the same length), ones by default.
    :param name: Name scope of the gradient operations.
    :param gate_gradients: Whether to gate together the input gradients of
        every operation, so none of them is used before all are computed.
    :param aggregation_method: An `AggregationMethod`, `ADD_N` by default.
    :param colocate_gradients_with_ops: Ignored, there is no device placement.
    :param stop_gradients: Tensors not to differentiate through.
    :return: A list of the same length as `xs`. Every entry is a `Tensor`,
        an `IndexedSlices` or None if the corresponding x does not affect `ys`.
    """
    ys = [math_ops.convert_to_tensor(y) for y in _as_list(ys)]
    xs = [_as_differentiable(x) for x in _as_list(xs)]
    stop_gradients = [] if stop_gradients is None else _as_list(stop_gradients)

    if grad_ys is None:
        grad_ys = [None] * len(ys)
    else:
        grad_ys = _as_list(grad_ys)
        if len(grad_ys) != len(ys):
            raise ValueError(f"Passed {len(grad_ys)} grad_ys for {len(ys)} ys")

    if aggregation_method is None:
        aggregation_method = AggregationMethod.DEFAULT
    elif aggregation_method not in list(AggregationMethod):
        raise ValueError(f"Invalid aggregation_method specified {aggregation_method}.")
    aggregation_method = AggregationMethod(aggregation_method)

    graph = graph_module.get_graph_from_inputs(ys + xs + [g for g in grad_ys if g is not None])
    stop_ops = {math_ops.convert_to_tensor(t).op for t in stop_gradients}

    with graph.as_default(), graph.name_scope(name):
        between = _between(ys, _reachable_forward(xs))

        pending: dict[graph_module.Tensor, list] = {}
        for i, (y, grad_y) in enumerate(zip(ys, grad_ys)):
            if grad_y is None:
                grad_y = math_ops.ones_like(y, name=f"grad_ys_{i}")
            else:
                grad_y = math_ops.convert_to_tensor_or_indexed_slices(grad_y, dtype=y.dtype)
            pending.setdefault(y, []).append(grad_y)

        sorter = graphlib.TopologicalSorter()
        for op in sorted(between, key=lambda op: op._id):
            sorter.add(op, *(t.op for t in op.inputs if t.op in between))
        order = list(sorter.static_order())

        grads: dict[graph_module.Tensor, object] = {}
        for op in reversed(order):
            out_grads = []
            for t in op.outputs:
                grads[t] = _aggregate(pending.pop(t, []), aggregation_method)
                out_grads.append(grads[t])

            if all(g is None for g in out_grads) or op in stop_ops:
                continue
            if not any(t.op in between for t in op.inputs):
                continue

            if not op.kernel.passes_indexed_slices:
                out_grads = [_densify(g) for g in out_grads]

            with graph.name_scope(f"{op.name}_grad"):
                in_grads = list(op.kernel.gradient(op, *out_grads))
                assert len(in_grads) == len(op.inputs), \
                    f"{op.type} returned {len(in_grads)} gradients for {len(op.inputs)} inputs"

                # gradients of inputs not leading back to any x are never run
                in_grads = [g if t.op in between else None for t, g in zip(op.inputs, in_grads)]
                if gate_gradients and sum(g is not None for g in in_grads) > 1:
                    in_grads = control_flow.gated_tuple(in_grads)

            for t, grad in zip(op.inputs, in_grads):
                if grad is not None:
                    pending.setdefault(t, []).append(grad)

        result = [grads.get(x) for x in xs]

    logger.debug("Built gradients of %d ys w.r.t. %d xs in scope '%s' (%d operations)",
                 len(ys), len(xs), name, len(between))
    return result
