"""
Operations ordering the execution of other operations.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

from . import graph as graph_module
from . import math_ops
from . import operations
from .indexed_slices import IndexedSlices


def no_op(name: Optional[str] = None) -> graph_module.Operation:
    return graph_module.get_default_graph().create_op(operations.NoOp(), [], name=name)


def _flatten(inputs) -> list:
    result = []
    for x in inputs:
        if isinstance(x, (list, tuple)):
            result.extend(_flatten(x))
        elif x is not None:
            result.append(x)
    return result


def group(*inputs, name: Optional[str] = None) -> graph_module.Operation:
    """
    Creates an operation that runs after all of `inputs` (operations,
    tensors or variables, also in nested lists) and has no output.
    """
    inputs = _flatten(inputs)
    graph = graph_module.get_graph_from_inputs(inputs)
    control_inputs = sorted({graph.as_operation(x) for x in inputs}, key=lambda op: op._id)
    return graph.create_op(operations.NoOp(), [], name=name or "group_deps", control_inputs=control_inputs)


def with_dependencies(dependencies: Iterable, output_tensor, name: Optional[str] = None):
    """
    Produces the value of `output_tensor` only after all of `dependencies` ran.
    For `IndexedSlices`, the values get gated.
    """
    dependencies = list(dependencies)
    graph = graph_module.get_graph_from_inputs(dependencies + [output_tensor])
    with graph.name_scope(name or "control_dependency") as scope:
        with graph.control_dependencies(dependencies):
            if isinstance(output_tensor, IndexedSlices):
                values = math_ops.identity(output_tensor.values, name=scope)
                return IndexedSlices(values, output_tensor.indices, output_tensor.dense_shape)
            return math_ops.identity(output_tensor, name=scope)


def gated_tuple(tensors: Sequence, name: Optional[str] = None,
                control_inputs: Optional[Iterable] = None) -> list:
    """
    Groups tensors together: every returned tensor has the value of the
    corresponding one in `tensors`, but is only available after all of
    `tensors` (and `control_inputs`) have been computed.
    `None` entries are returned as they are.

    :raises ValueError: If there is nothing to gate on.
    """
    tensors = list(tensors)
    gating_ops = []
    for t in tensors:
        if t is None:
            continue
        if isinstance(t, IndexedSlices):
            gating_ops.extend([t.values.op, t.indices.op])
        else:
            gating_ops.append(t.op)
    if control_inputs:
        gating_ops.extend(control_inputs)

    if not gating_ops:
        raise ValueError("Must have at least one Tensor: %s" % tensors)

    graph = graph_module.get_graph_from_inputs(gating_ops)
    with graph.name_scope(name or "tuple"):
        gate = group(*gating_ops)
        return [
            None if t is None else with_dependencies([gate], t)
            for t in tensors
        ]
