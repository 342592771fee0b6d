"""
Contains the Variable class.

A variable owns a numpy array that survives across `Session.run` calls.
Its handle operation outputs the variable object itself, which the read
and update kernels use to get at the storage.
Reads return the storage array without copying, so updates applied in
place later in the same run are visible to everything that read it.
"""
from __future__ import annotations

import contextlib
import logging
import threading
from typing import Optional

import numpy as np

from . import control_flow
from . import errors
from . import graph as graph_module
from . import math_ops
from . import operations
from .graph_keys import GraphKeys

logger = logging.getLogger(__name__)


def _locked(variable: Variable, use_locking: bool):
    return variable._lock if use_locking else contextlib.nullcontext()


def _check_same_shape(op_type: str, variable: Variable, value: np.ndarray) -> None:
    if value.shape != variable.shape:
        raise errors.InvalidArgumentError(
            None, f"{op_type}: shapes of the variable {variable.name} {variable.shape} "
                  f"and the value {value.shape} must match"
        )


# -------------------------------------------------------------
# Kernels
# -------------------------------------------------------------
class VariableV2(operations.Operator):
    def __init__(self, variable: Variable):
        self.variable = variable

    def output_dtypes(self, input_dtypes):
        return [self.variable.dtype]

    def output_shapes(self, input_shapes):
        return [self.variable.shape]

    def compute(self):
        return self.variable


class VarHandleOp(VariableV2):
    pass


class ReadVariableOp(operations.Operator):
    passes_indexed_slices = True

    def output_shapes(self, input_shapes):
        return [input_shapes[0]]

    def compute(self, variable: Variable):
        return variable._storage()

    def gradient(self, op, grad):
        return [grad]


class IsVariableInitialized(operations.Operator):
    def output_dtypes(self, input_dtypes):
        return [np.dtype(np.bool_)]

    def output_shapes(self, input_shapes):
        return [()]

    def compute(self, variable: Variable):
        return np.asarray(variable._value is not None)


class Assign(operations.Operator):
    """
    Sets the value of a variable, initializing it if necessary.
    Outputs the new value.
    """

    def __init__(self, use_locking: bool = True):
        self.use_locking = use_locking

    def output_shapes(self, input_shapes):
        return [input_shapes[0]]

    def compute(self, variable: Variable, value: np.ndarray):
        _check_same_shape(self.type, variable, value)
        with _locked(variable, self.use_locking):
            if variable._value is None:
                variable._value = np.array(value, dtype=variable.dtype)
            else:
                np.copyto(variable._value, value, casting="same_kind")
            return variable._value


class AssignAdd(Assign):
    def compute(self, variable: Variable, value: np.ndarray):
        with _locked(variable, self.use_locking):
            storage = variable._storage()
            _check_same_shape(self.type, variable, value)
            np.add(storage, value, out=storage, casting="same_kind")
            return storage


class AssignSub(Assign):
    def compute(self, variable: Variable, value: np.ndarray):
        with _locked(variable, self.use_locking):
            storage = variable._storage()
            _check_same_shape(self.type, variable, value)
            np.subtract(storage, value, out=storage, casting="same_kind")
            return storage


class _NoOutput:
    num_outputs = 0

    def output_dtypes(self, input_dtypes):
        return []

    def output_shapes(self, input_shapes):
        return []

    def compute(self, *inputs):
        super().compute(*inputs)
        return None


class AssignVariableOp(_NoOutput, Assign):
    pass


class AssignAddVariableOp(_NoOutput, AssignAdd):
    pass


class AssignSubVariableOp(_NoOutput, AssignSub):
    pass


# -------------------------------------------------------------
# Variables
# -------------------------------------------------------------
class Variable(graph_module._OperatorsMixin):
    """
    A variable of the graph, can be used like a tensor of its value.
    Passing `use_resource=True` creates a `ResourceVariable`.
    """

    _handle_kernel = VariableV2
    _assign_kernels = {"assign": Assign, "assign_add": AssignAdd, "assign_sub": AssignSub}

    def __new__(cls, *args, **kwargs):
        use_resource = kwargs.get("use_resource", args[5] if len(args) > 5 else False)
        if cls is Variable and use_resource:
            cls = ResourceVariable
        return super().__new__(cls)

    def __init__(self, initial_value=None, trainable: bool = True, collections=None,
                 name: Optional[str] = None, dtype=None, use_resource: bool = False):
        """
        :param initial_value: A number, array, tensor, or a callable returning one.
            A callable is called within the name scope of the variable.
        :param trainable: If True, the variable is added to TRAINABLE_VARIABLES
            (which the optimizers use by default).
        :param collections: Collections to add the variable to, GLOBAL_VARIABLES by default.
        :param name: Name of the variable, "Variable" by default.
        :param dtype: The dtype, inferred from `initial_value` by default.
        :param use_resource: Whether to create a `ResourceVariable`.
        """
        if initial_value is None:
            raise ValueError("initial_value must be specified.")

        if collections is None:
            collections = [GraphKeys.GLOBAL_VARIABLES]
        if not isinstance(collections, (list, tuple, set)):
            raise ValueError(f"collections argument to Variable constructor must be a list, tuple, or set. Got {collections}")
        collections = list(collections)
        if trainable and GraphKeys.TRAINABLE_VARIABLES not in collections:
            collections.append(GraphKeys.TRAINABLE_VARIABLES)

        init_from_fn = callable(initial_value)
        if init_from_fn:
            graph = graph_module.get_default_graph()
        else:
            graph = graph_module.get_graph_from_inputs([initial_value])

        self._trainable = trainable
        self._value: Optional[np.ndarray] = None
        self._lock = threading.Lock()

        with graph.control_dependencies(None), graph.name_scope(name or "Variable") as scope:
            if init_from_fn:
                initial_value = initial_value()
            self._initial_value = math_ops.convert_to_tensor(
                initial_value, dtype=dtype, name="initial_value", graph=graph
            )

            shape = self._initial_value.shape
            if shape is None or None in shape:
                raise ValueError(f"initial_value must have a fully defined shape, got {shape}")
            self._dtype = self._initial_value.dtype
            self._shape = shape

            self._handle = graph.create_op(self._handle_kernel(self), [], name=scope).outputs[0]
            self._initializer_op = graph.create_op(
                self._assign_kernels["assign"](), [self._handle, self._initial_value], name="Assign"
            )
            self._snapshot = self._read("read")

        graph.add_to_collections(collections, self)
        logger.debug("Created %s %s with shape %s and dtype %s",
                     type(self).__name__, self.name, self._shape, self._dtype.name)

    def _read(self, name: str) -> graph_module.Tensor:
        return self.graph.create_op(ReadVariableOp(), [self._handle], name=name).outputs[0]

    def _storage(self) -> np.ndarray:
        value = self._value
        if value is None:
            raise errors.FailedPreconditionError(None, f"Attempting to use uninitialized value {self.op.name}")
        return value

    # -------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------
    @property
    def name(self) -> str:
        return self._handle.name

    @property
    def op(self) -> graph_module.Operation:
        return self._handle.op

    @property
    def handle(self) -> graph_module.Tensor:
        return self._handle

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def shape(self) -> tuple:
        return self._shape

    def get_shape(self) -> tuple:
        return self._shape

    @property
    def graph(self) -> graph_module.Graph:
        return self._handle.graph

    @property
    def initializer(self) -> graph_module.Operation:
        return self._initializer_op

    @property
    def initial_value(self) -> graph_module.Tensor:
        return self._initial_value

    @property
    def trainable(self) -> bool:
        return self._trainable

    # -------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------
    def value(self) -> graph_module.Tensor:
        """
        The tensor reading this variable, the same on every call.
        """
        return self._snapshot

    def read_value(self) -> graph_module.Tensor:
        """
        Adds a new operation reading this variable, which will honor
        the control dependencies it was created under.
        """
        with self.graph.name_scope(f"{self.op.name}/"):
            return self._read("Read")

    def _as_tensor(self) -> graph_module.Tensor:
        return self._snapshot

    def eval(self, session=None) -> np.ndarray:
        return self._snapshot.eval(session=session)

    # -------------------------------------------------------------
    # Updating
    # -------------------------------------------------------------
    def _assign_op(self, kind: str, value, use_locking: Optional[bool], name: Optional[str], read_value: bool):
        value = math_ops.convert_to_tensor(value, dtype=self._dtype, graph=self.graph)
        kernel = self._assign_kernels[kind](True if use_locking is None else use_locking)
        op = self.graph.create_op(kernel, [self._handle, value], name=name)
        if not read_value:
            return op
        if op.outputs:
            return op.outputs[0]
        with self.graph.control_dependencies([op]):
            return self.read_value()

    def assign(self, value, use_locking: Optional[bool] = None, name: Optional[str] = None,
               read_value: bool = True):
        """
        Assigns a new value to the variable.

        :return: The new value if `read_value` is True, else the assign operation.
        """
        return self._assign_op("assign", value, use_locking, name, read_value)

    def assign_add(self, delta, use_locking: Optional[bool] = None, name: Optional[str] = None,
                   read_value: bool = True):
        return self._assign_op("assign_add", delta, use_locking, name, read_value)

    def assign_sub(self, delta, use_locking: Optional[bool] = None, name: Optional[str] = None,
                   read_value: bool = True):
        return self._assign_op("assign_sub", delta, use_locking, name, read_value)

    def __repr__(self):
        return f"<{type(self).__name__} '{self.name}' shape={self._shape} dtype={self._dtype.name}>"


class ResourceVariable(Variable):
    """
    A variable accessed through its handle. Its update operations
    have no outputs.
    """

    _handle_kernel = VarHandleOp
    _assign_kernels = {
        "assign": AssignVariableOp,
        "assign_add": AssignAddVariableOp,
        "assign_sub": AssignSubVariableOp,
    }


# -------------------------------------------------------------
# Collections and initialization
# -------------------------------------------------------------
def global_variables(scope: Optional[str] = None) -> list[Variable]:
    return graph_module.get_collection(GraphKeys.GLOBAL_VARIABLES, scope)


def trainable_variables(scope: Optional[str] = None) -> list[Variable]:
    return graph_module.get_collection(GraphKeys.TRAINABLE_VARIABLES, scope)


def local_variables(scope: Optional[str] = None) -> list[Variable]:
    return graph_module.get_collection(GraphKeys.LOCAL_VARIABLES, scope)


def variables_initializer(var_list, name: str = "init") -> graph_module.Operation:
    """
    An operation running the initializers of all variables in `var_list`.
    """
    var_list = list(var_list)
    if var_list:
        return control_flow.group(*[v.initializer for v in var_list], name=name)
    return control_flow.no_op(name=name)


def global_variables_initializer() -> graph_module.Operation:
    return variables_initializer(global_variables(), name="init")


def local_variables_initializer() -> graph_module.Operation:
    return variables_initializer(local_variables(), name="init_local")


def is_variable_initialized(variable: Variable) -> graph_module.Tensor:
    return variable.graph.create_op(IsVariableInitialized(), [variable.handle]).outputs[0]
