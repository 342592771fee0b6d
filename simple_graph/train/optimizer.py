"""
Base optimizer class.

`minimize` = `compute_gradients` + `apply_gradients`. Both only add
operations to the graph, nothing is computed until a session runs them.
Subclasses implement the per variable update rules (`_apply_dense`,
`_resource_apply_dense`, `_apply_sparse`, `_resource_apply_sparse`).
"""
from __future__ import annotations

import abc
import enum
import logging
from typing import Optional

from .. import control_flow
from .. import dtypes
from .. import graph as graph_module
from .. import math_ops
from ..gradients import gradients
from ..graph_keys import GraphKeys
from ..indexed_slices import IndexedSlices
from ..variables import ResourceVariable, Variable
from . import slot_creator

logger = logging.getLogger(__name__)


class GateGradients(enum.IntEnum):
    """
    How much parallelism is allowed while computing gradients.

    GATE_NONE: Gradients are used as soon as they are computed. Most
        parallelism, but results may not be reproducible.
    GATE_OP: For every operation, all gradients of its inputs are computed
        before any of them is used. Prevents race conditions for operations
        producing gradients for several inputs.
    GATE_GRAPH: All gradients are computed before any of them is used.
        Least parallelism.
    """

    GATE_NONE = 0
    GATE_OP = 1
    GATE_GRAPH = 2


def _deduplicate_indexed_slices(values, indices):
    """
    Sums up the values of duplicate indices.

    :return: The summed values and the unique indices.
    """
    unique_indices, new_index_positions = math_ops.unique(indices)
    summed_values = math_ops.unsorted_segment_sum(values, new_index_positions, math_ops.size(unique_indices))
    return summed_values, unique_indices


def _var_key(var) -> tuple:
    return var.graph, var.op.name


class _OptimizableVariable(abc.ABC):
    """
    Knows how to update one kind of variable.
    """

    def __init__(self, v):
        self._v = v

    def target(self):
        return self._v

    @abc.abstractmethod
    def update_op(self, optimizer: Optimizer, g):
        raise NotImplementedError


class _RefVariableProcessor(_OptimizableVariable):
    def update_op(self, optimizer, g):
        if isinstance(g, graph_module.Tensor):
            return optimizer._apply_dense(g, self._v)
        assert isinstance(g, IndexedSlices), f"Gradient {g!r} is neither a Tensor nor IndexedSlices."
        return optimizer._apply_sparse_duplicate_indices(g, self._v)


class _DenseResourceVariableProcessor(_OptimizableVariable):
    def update_op(self, optimizer, g):
        if isinstance(g, IndexedSlices):
            return optimizer._resource_apply_sparse_duplicate_indices(g.values, self._v, g.indices)
        return optimizer._resource_apply_dense(g, self._v)


class _StreamingModelPortProcessor(_OptimizableVariable):
    """
    Streaming model ports are not updated, their gradient is the result.
    """

    def update_op(self, optimizer, g):
        return g


def _get_processor(v) -> _OptimizableVariable:
    if isinstance(v, ResourceVariable):
        return _DenseResourceVariableProcessor(v)
    if isinstance(v, Variable):
        return _RefVariableProcessor(v)
    raise TypeError(f"Trying to optimize unsupported type {v!r}, expected a Variable.")


class Optimizer(abc.ABC):
    """
    Base class for optimizers. Never used directly, but through one of
    its subclasses like `GradientDescentOptimizer`.
    """

    GATE_NONE = GateGradients.GATE_NONE
    GATE_OP = GateGradients.GATE_OP
    GATE_GRAPH = GateGradients.GATE_GRAPH

    def __init__(self, use_locking: bool, name: str):
        """
        :param use_locking: Whether updates hold the lock of the variable.
        :param name: Name of the operations created by `apply_gradients`.
        """
        if not name:
            raise ValueError("Must specify the optimizer name")

        self._use_locking = use_locking
        self._name = name
        # slot name -> variable key -> slot variable
        self._slots: dict[str, dict[tuple, Variable]] = {}

    def get_name(self) -> str:
        return self._name

    # -------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------
    def minimize(self, loss, global_step: Optional[Variable] = None, var_list=None,
                 gate_gradients=GATE_OP, aggregation_method=None,
                 colocate_gradients_with_ops: bool = False, name: Optional[str] = None,
                 grad_loss=None) -> graph_module.Operation:
        """
        Adds operations to minimize `loss` by updating `var_list`.

        :return: The operation applying the updates (and incrementing
            `global_step` if given).
        :raises ValueError: If no variable has a gradient.
        """
        grads_and_vars = self.compute_gradients(
            loss, var_list=var_list, gate_gradients=gate_gradients,
            aggregation_method=aggregation_method,
            colocate_gradients_with_ops=colocate_gradients_with_ops,
            grad_loss=grad_loss,
        )

        vars_with_grad = [v for g, v in grads_and_vars if g is not None]
        if not vars_with_grad:
            raise ValueError(
                f"No gradients provided for any variable, check your graph for ops that do not support "
                f"gradients, between variables {[str(v) for _, v in grads_and_vars]} and loss {loss!r}."
            )

        return self.apply_gradients(grads_and_vars, global_step=global_step, name=name)

    def compute_gradients(self, loss, var_list=None, gate_gradients=GATE_OP, aggregation_method=None,
                          colocate_gradients_with_ops: bool = False, grad_loss=None) -> list[tuple]:
        """
        Computes the gradients of `loss` for the variables in `var_list`.

        :param loss: The tensor to minimize.
        :param var_list: Variables to differentiate against. Defaults to the
            TRAINABLE_VARIABLES (and TRAINABLE_RESOURCE_VARIABLES) collection.
        :param gate_gradients: One of GATE_NONE, GATE_OP or GATE_GRAPH.
        :param aggregation_method: An `AggregationMethod`.
        :param colocate_gradients_with_ops: Ignored.
        :param grad_loss: The gradient of `loss`, ones by default.
        :return: A list of (gradient, variable) pairs. The gradient may be
            a Tensor, an IndexedSlices or None.
        """
        if gate_gradients not in (Optimizer.GATE_NONE, Optimizer.GATE_OP, Optimizer.GATE_GRAPH):
            raise ValueError(
                "gate_gradients must be one of: Optimizer.GATE_NONE, Optimizer.GATE_OP, "
                f"Optimizer.GATE_GRAPH. Not {gate_gradients}"
            )

        loss = math_ops.convert_to_tensor(loss)
        self._assert_valid_dtypes([loss])
        if grad_loss is not None:
            grad_loss = math_ops.convert_to_tensor(grad_loss)
            self._assert_valid_dtypes([grad_loss])

        graph = loss.graph
        if var_list is None:
            var_list = (graph.get_collection(GraphKeys.TRAINABLE_VARIABLES)
                        + graph.get_collection(GraphKeys.TRAINABLE_RESOURCE_VARIABLES))
        else:
            var_list = list(var_list)
        # unique, keeping the order
        var_list = list(dict.fromkeys(var_list))

        processors = [_get_processor(v) for v in var_list]
        for port in graph.get_collection(GraphKeys._STREAMING_MODEL_PORTS):
            var_list.append(port)
            processors.append(_StreamingModelPortProcessor(port))

        if not var_list:
            raise ValueError("No variables to optimize.")

        grads = gradients(
            loss, [p.target() for p in processors], grad_ys=grad_loss,
            gate_gradients=(gate_gradients == Optimizer.GATE_OP),
            aggregation_method=aggregation_method,
            colocate_gradients_with_ops=colocate_gradients_with_ops,
        )
        if gate_gradients == Optimizer.GATE_GRAPH and any(g is not None for g in grads):
            grads = control_flow.gated_tuple(grads)

        grads_and_vars = list(zip(grads, var_list))
        self._assert_valid_dtypes([v for g, v in grads_and_vars if g is not None])
        return grads_and_vars

    def apply_gradients(self, grads_and_vars, global_step: Optional[Variable] = None,
                        name: Optional[str] = None) -> graph_module.Operation:
        """
        Adds the operations updating every variable by its gradient.

        :param grads_and_vars: (gradient, variable) pairs, as returned by `compute_gradients`.
        :param global_step: A variable incremented by one after the updates.
        :param name: Name of the returned operation, the optimizer name by default.
        :return: The operation applying all updates.
        :raises TypeError: If a gradient is not convertible to a Tensor or IndexedSlices.
        :raises ValueError: If `grads_and_vars` is empty or has no gradient at all.
        """
        grads_and_vars = tuple(grads_and_vars)
        if not grads_and_vars:
            raise ValueError("No variables provided.")

        converted = []
        for g, v in grads_and_vars:
            if g is not None:
                try:
                    g = math_ops.convert_to_tensor_or_indexed_slices(g)
                except TypeError:
                    raise TypeError(f"Gradient must be convertible to a Tensor or IndexedSlices, or None: {g!r}") from None
            if isinstance(v, graph_module.Tensor):
                processor = _StreamingModelPortProcessor(v)
            else:
                processor = _get_processor(v)
            converted.append((g, v, processor))

        var_list = [v for g, v, _ in converted if g is not None]
        if not var_list:
            raise ValueError(f"No gradients provided for any variable: {[str(v) for _, v, _ in converted]}.")

        graph = graph_module.get_graph_from_inputs(var_list)
        with graph.as_default(), graph.control_dependencies(None):
            self._create_slots([v for v in var_list if isinstance(v, Variable)])

        update_ops = []
        with graph.as_default(), graph.name_scope(name or self._name) as scope:
            self._prepare()
            for grad, var, processor in converted:
                if grad is None:
                    logger.info("%s: no gradient for %s, not updating it", self._name, var.name)
                    continue
                with graph.name_scope(f"update_{var.op.name}"):
                    update_ops.append(processor.update_op(self, grad))
                logger.debug("%s: added update of %s", self._name, var.name)

            if global_step is None:
                apply_updates = self._finish(update_ops, scope)
            else:
                with graph.control_dependencies([self._finish(update_ops, "update")]):
                    apply_updates = global_step.assign_add(1, name=scope, read_value=False)

        apply_updates = graph.as_operation(apply_updates)
        train_op = graph.get_collection_ref(GraphKeys.TRAIN_OP)
        if apply_updates not in train_op:
            train_op.append(apply_updates)
        return apply_updates

    def get_slot(self, var: Variable, name: str) -> Optional[Variable]:
        """
        :return: The slot `name` created for `var`, None if there is none.
        """
        named_slots = self._slots.get(name)
        if not named_slots:
            return None
        return named_slots.get(_var_key(var))

    def get_slot_names(self) -> list[str]:
        return sorted(self._slots.keys())

    def variables(self) -> list[Variable]:
        """
        All variables created by this optimizer, sorted by name.
        """
        slot_vars = [v for named_slots in self._slots.values() for v in named_slots.values()]
        return sorted(slot_vars, key=lambda v: v.name)

    # -------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------
    def _assert_valid_dtypes(self, tensors) -> None:
        valid_dtypes = self._valid_dtypes()
        for t in tensors:
            dtype = t.dtype
            if dtype not in valid_dtypes:
                raise ValueError(
                    f"Invalid type {dtype.name} for {t.name}, expected: "
                    f"{sorted(d.name for d in valid_dtypes)}."
                )

    def _valid_dtypes(self) -> frozenset:
        return dtypes.FLOATING_TYPES

    @staticmethod
    def _call_if_callable(param):
        return param() if callable(param) else param

    # -------------------------------------------------------------
    # Hooks for subclasses
    # -------------------------------------------------------------
    def _create_slots(self, var_list: list[Variable]) -> None:
        """
        Creates the slots of all variables in `var_list`.
        """
        pass

    def _prepare(self) -> None:
        """
        Creates the tensors shared by all updates, e.g. the learning rate.
        """
        pass

    def _apply_dense(self, grad: graph_module.Tensor, var: Variable):
        raise NotImplementedError()

    def _resource_apply_dense(self, grad: graph_module.Tensor, handle: Variable):
        raise NotImplementedError()

    def _resource_apply_sparse_duplicate_indices(self, grad, handle: Variable, indices):
        """
        Sums up the gradients of duplicate indices and calls `_resource_apply_sparse`.
        Override if duplicate indices can be handled directly.
        """
        summed_grad, unique_indices = _deduplicate_indexed_slices(values=grad, indices=indices)
        return self._resource_apply_sparse(summed_grad, handle, unique_indices)

    def _resource_apply_sparse(self, grad, handle: Variable, indices):
        """
        Applies the sparse gradient `grad` (rows `indices`, which are unique).
        """
        raise NotImplementedError()

    def _apply_sparse_duplicate_indices(self, grad: IndexedSlices, var: Variable):
        """
        Sums up the gradients of duplicate indices and calls `_apply_sparse`.
        Override if duplicate indices can be handled directly.
        """
        summed_values, unique_indices = _deduplicate_indexed_slices(values=grad.values, indices=grad.indices)
        gradient_no_duplicate_indices = IndexedSlices(
            indices=unique_indices,
            values=summed_values,
            dense_shape=grad.dense_shape,
        )
        return self._apply_sparse(gradient_no_duplicate_indices, var)

    def _apply_sparse(self, grad: IndexedSlices, var: Variable):
        raise NotImplementedError()

    def _finish(self, update_ops: list, name_scope: str) -> graph_module.Operation:
        """
        Groups `update_ops` into the operation returned by `apply_gradients`.
        """
        return control_flow.group(*update_ops, name=name_scope)

    # -------------------------------------------------------------
    # Slots
    # -------------------------------------------------------------
    def _slot_dict(self, slot_name: str) -> dict:
        return self._slots.setdefault(slot_name, {})

    def _get_or_make_slot(self, var: Variable, val, slot_name: str, op_name: str) -> Variable:
        named_slots = self._slot_dict(slot_name)
        if _var_key(var) not in named_slots:
            named_slots[_var_key(var)] = slot_creator.create_slot(var, val, op_name)
        return named_slots[_var_key(var)]

    def _zeros_slot(self, var: Variable, slot_name: str, op_name: str) -> Variable:
        named_slots = self._slot_dict(slot_name)
        if _var_key(var) not in named_slots:
            named_slots[_var_key(var)] = slot_creator.create_zeros_slot(var, op_name)
        return named_slots[_var_key(var)]
