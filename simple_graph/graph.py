"""
Contains the computation graph.

A `Graph` holds `Operation`s, which consume and produce `Tensor`s.
Building a graph never computes anything: the tensors are symbolic handles
and a `session.Session` runs the operations needed for a fetch.
"""
from __future__ import annotations

import contextlib
import itertools
import re
import threading
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Optional, Sequence

import numpy as np

from . import math_ops
from .graph_keys import GraphKeys

if TYPE_CHECKING:
    from . import operations
    from .session import Session

_VALID_OP_NAME_REGEX = re.compile(r"^[A-Za-z0-9.][A-Za-z0-9_.\-/>]*$")
_VALID_SCOPE_NAME_REGEX = re.compile(r"^[A-Za-z0-9_.\-/>]*$")


class _OperatorsMixin:
    """
    Python operators for everything that can stand in for a `Tensor`.
    Each operator adds an operation to the graph.
    """

    # make numpy defer to the reflected operators below
    __array_ufunc__ = None
    __array_priority__ = 100

    def _as_tensor(self) -> Tensor:
        raise NotImplementedError

    def __pos__(self) -> Tensor:
        return self._as_tensor()

    def __neg__(self) -> Tensor:
        return math_ops.negative(self._as_tensor())

    def __add__(self, other) -> Tensor:
        return math_ops.add(self._as_tensor(), other)

    def __radd__(self, other) -> Tensor:
        return math_ops.add(other, self._as_tensor())

    def __sub__(self, other) -> Tensor:
        return math_ops.subtract(self._as_tensor(), other)

    def __rsub__(self, other) -> Tensor:
        return math_ops.subtract(other, self._as_tensor())

    def __mul__(self, other) -> Tensor:
        return math_ops.multiply(self._as_tensor(), other)

    def __rmul__(self, other) -> Tensor:
        return math_ops.multiply(other, self._as_tensor())

    def __truediv__(self, other) -> Tensor:
        return math_ops.divide(self._as_tensor(), other)

    def __rtruediv__(self, other) -> Tensor:
        return math_ops.divide(other, self._as_tensor())

    def __pow__(self, other) -> Tensor:
        return math_ops.pow(self._as_tensor(), other)

    def __rpow__(self, other) -> Tensor:
        return math_ops.pow(other, self._as_tensor())

    def __matmul__(self, other) -> Tensor:
        return math_ops.matmul(self._as_tensor(), other)

    def __rmatmul__(self, other) -> Tensor:
        return math_ops.matmul(other, self._as_tensor())


class Tensor(_OperatorsMixin):
    """
    A symbolic handle to one of the outputs of an `Operation`.
    """

    def __init__(self, op: Operation, value_index: int, dtype: np.dtype,
                 shape: Optional[Sequence[Optional[int]]]):
        self._op = op
        self._value_index = value_index
        self._dtype = np.dtype(dtype)
        self._shape = None if shape is None else tuple(shape)
        self._consumers: list[Operation] = []

    @property
    def op(self) -> Operation:
        return self._op

    @property
    def value_index(self) -> int:
        return self._value_index

    @property
    def graph(self) -> Graph:
        return self._op.graph

    @property
    def name(self) -> str:
        return f"{self._op.name}:{self._value_index}"

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def shape(self) -> Optional[tuple]:
        """
        The static shape. `None` if unknown, single dims may be `None` too.
        """
        return self._shape

    def get_shape(self) -> Optional[tuple]:
        return self._shape

    def consumers(self) -> list[Operation]:
        return list(self._consumers)

    def eval(self, feed_dict=None, session: Optional[Session] = None) -> np.ndarray:
        """
        Evaluates this tensor in `session` or the default session.
        """
        return _run_using_default_session(self, feed_dict, self.graph, session)

    def _as_tensor(self) -> Tensor:
        return self

    def __bool__(self):
        raise TypeError(
            "Using a `Tensor` as a Python `bool` is not allowed. "
            "Use `if t is not None:` to test if a tensor is defined."
        )

    def __iter__(self):
        raise TypeError("'Tensor' object is not iterable.")

    def __repr__(self):
        return f"<Tensor '{self.name}' shape={self._shape} dtype={self._dtype.name}>"


class Operation:
    """
    A node in a `Graph`: a kernel applied to input tensors.

    Control inputs are operations that have to run before this one even
    though no data flows between them.
    """

    def __init__(self, graph: Graph, kernel: operations.Operator, name: str,
                 inputs: Sequence[Tensor], control_inputs: Sequence[Operation],
                 output_dtypes: Sequence[np.dtype],
                 output_shapes: Sequence[Optional[tuple]]):
        self._graph = graph
        self._kernel = kernel
        self._name = name
        self._inputs = tuple(inputs)
        self._control_inputs = list(control_inputs)
        self._outputs = [
            Tensor(self, i, dtype, shape)
            for i, (dtype, shape) in enumerate(zip(output_dtypes, output_shapes))
        ]
        self._id = graph._next_id()

    @property
    def name(self) -> str:
        return self._name

    @property
    def type(self) -> str:
        return self._kernel.type

    @property
    def graph(self) -> Graph:
        return self._graph

    @property
    def kernel(self) -> operations.Operator:
        return self._kernel

    @property
    def inputs(self) -> tuple[Tensor, ...]:
        return self._inputs

    @property
    def control_inputs(self) -> list[Operation]:
        return list(self._control_inputs)

    @property
    def outputs(self) -> list[Tensor]:
        return list(self._outputs)

    def values(self) -> tuple[Tensor, ...]:
        return tuple(self._outputs)

    def _add_control_input(self, op: Operation) -> None:
        if op.graph is not self._graph:
            raise ValueError(f"Control input {op.name} must be from the same graph as {self.name}.")
        if op not in self._control_inputs:
            self._control_inputs.append(op)

    def run(self, feed_dict=None, session: Optional[Session] = None) -> None:
        """
        Runs this operation in `session` or the default session.
        """
        _run_using_default_session(self, feed_dict, self.graph, session)

    def __repr__(self):
        return f"<Operation '{self._name}' type={self.type}>"


class Graph:
    """
    A container of operations and named collections.

    Creating operations is thread-safe. The name scope and control
    dependency stacks are kept per thread.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._nodes_by_name: dict[str, Operation] = {}
        self._nodes_in_order: list[Operation] = []
        self._names_in_use: dict[str, int] = {}
        self._collections: dict[str, list] = {}
        self._finalized = False
        self._id_counter = itertools.count()
        self._thread_local = threading.local()

    def _next_id(self) -> int:
        return next(self._id_counter)

    # -------------------------------------------------------------
    # Defaults and scopes
    # -------------------------------------------------------------
    @contextlib.contextmanager
    def as_default(self) -> Iterator[Graph]:
        """
        Makes this graph the default graph of the current thread.
        """
        _default_graph_stack.stack.append(self)
        try:
            yield self
        finally:
            popped = _default_graph_stack.stack.pop()
            assert popped is self, "default graph stack was corrupted!"

    @property
    def _name_stack(self) -> str:
        return getattr(self._thread_local, "name_stack", "")

    @_name_stack.setter
    def _name_stack(self, value: str) -> None:
        self._thread_local.name_stack = value

    @property
    def _control_dependencies_stack(self) -> list[list[Operation]]:
        if not hasattr(self._thread_local, "control_dependencies"):
            self._thread_local.control_dependencies = []
        return self._thread_local.control_dependencies

    @_control_dependencies_stack.setter
    def _control_dependencies_stack(self, value: list[list[Operation]]) -> None:
        self._thread_local.control_dependencies = value

    def unique_name(self, name: str, mark_as_used: bool = True) -> str:
        """
        Returns `name` prefixed by the current name scope and made unique
        by appending `_1`, `_2`, ... if it was used before.
        Names are compared case-insensitively.
        """
        if self._name_stack:
            name = f"{self._name_stack}/{name}"

        with self._lock:
            key = name.lower()
            count = self._names_in_use.get(key, 0)
            if mark_as_used:
                self._names_in_use[key] = count + 1
            if count > 0:
                base_key = key
                while f"{key}_{count}" in self._names_in_use:
                    count += 1
                if mark_as_used:
                    self._names_in_use[f"{base_key}_{count}"] = 1
                name = f"{name}_{count}"

        return name

    @contextlib.contextmanager
    def name_scope(self, name: Optional[str]) -> Iterator[str]:
        """
        Opens a name scope and yields it (with a trailing slash).

        A `name` ending in "/" re-enters that exact scope, `None` or "" go
        back to the top level. Otherwise a new unique scope is opened
        within the current one.
        """
        if name and not _VALID_SCOPE_NAME_REGEX.match(name):
            raise ValueError(f"'{name}' is not a valid scope name")

        old_stack = self._name_stack
        if not name:
            new_stack = ""
        elif name.endswith("/"):
            new_stack = name[:-1]
        else:
            new_stack = self.unique_name(name)

        self._name_stack = new_stack
        try:
            yield f"{new_stack}/" if new_stack else ""
        finally:
            self._name_stack = old_stack

    @contextlib.contextmanager
    def control_dependencies(self, control_inputs: Optional[Iterable[Any]]) -> Iterator[None]:
        """
        Operations created inside run only after all of `control_inputs`.
        `None` clears all control dependencies of enclosing blocks.
        """
        if control_inputs is None:
            old_stack = self._control_dependencies_stack
            self._control_dependencies_stack = []
            try:
                yield
            finally:
                self._control_dependencies_stack = old_stack
            return

        ops = [self.as_operation(c) for c in control_inputs]
        self._control_dependencies_stack.append(ops)
        try:
            yield
        finally:
            self._control_dependencies_stack.pop()

    def _current_control_dependencies(self) -> list[Operation]:
        result = []
        for ops in self._control_dependencies_stack:
            for op in ops:
                if op not in result:
                    result.append(op)
        return result

    # -------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------
    def as_operation(self, obj: Any) -> Operation:
        """
        Returns the operation behind `obj` (an operation, a tensor or a variable).
        """
        if isinstance(obj, Operation):
            op = obj
        elif isinstance(obj, Tensor):
            op = obj.op
        elif isinstance(getattr(obj, "op", None), Operation):
            op = obj.op
        else:
            raise TypeError(f"Can not convert {obj!r} to an Operation.")

        if op.graph is not self:
            raise ValueError(f"Operation {op.name} is not an element of this graph.")
        return op

    def create_op(self, kernel: operations.Operator, inputs: Sequence[Tensor] = (),
                  name: Optional[str] = None,
                  control_inputs: Optional[Iterable[Any]] = None) -> Operation:
        """
        Adds an operation running `kernel` on `inputs` to the graph.

        :param kernel: The kernel of the operation.
        :type kernel: operations.Operator
        :param inputs: The input tensors, must be of this graph.
        :type inputs: Sequence[Tensor]
        :param name: Name of the op, made unique within the current scope.
            A name ending in "/" is used as is (without the slash).
        :type name: Optional[str]
        :param control_inputs: Extra control dependencies.
        :return: The created operation.
        :rtype: Operation
        """
        inputs = list(inputs)
        for t in inputs:
            if not isinstance(t, Tensor):
                raise TypeError(f"Inputs of an operation must be Tensors, got {t!r}.")
            if t.graph is not self:
                raise ValueError(f"Tensor {t.name} must be from the same graph as the new operation.")

        with self._lock:
            if self._finalized:
                raise RuntimeError("Graph is finalized and cannot be modified.")

            if name is None:
                name = self.unique_name(kernel.type)
            elif name.endswith("/"):
                name = name[:-1]
                if name in self._nodes_by_name:
                    raise ValueError(f"Duplicate operation name '{name}'.")
            else:
                if not _VALID_OP_NAME_REGEX.match(name):
                    raise ValueError(f"'{name}' is not a valid operation name")
                name = self.unique_name(name)

            control = self._current_control_dependencies()
            for c in control_inputs or ():
                c = self.as_operation(c)
                if c not in control:
                    control.append(c)

            in_dtypes = [t.dtype for t in inputs]
            in_shapes = [t.shape for t in inputs]
            op = Operation(
                self, kernel, name, inputs, control,
                output_dtypes=kernel.output_dtypes(in_dtypes),
                output_shapes=kernel.output_shapes(in_shapes),
            )

            for t in inputs:
                t._consumers.append(op)
            self._nodes_by_name[name] = op
            self._nodes_in_order.append(op)

        return op

    def get_operations(self) -> list[Operation]:
        with self._lock:
            return list(self._nodes_in_order)

    def get_operation_by_name(self, name: str) -> Operation:
        with self._lock:
            try:
                return self._nodes_by_name[name]
            except KeyError:
                raise KeyError(f"The name '{name}' refers to an Operation not in the graph.") from None

    def get_tensor_by_name(self, name: str) -> Tensor:
        op_name, sep, index = name.rpartition(":")
        if not sep or not index.isdigit():
            raise ValueError(f"The name '{name}' looks like an Operation name, not a Tensor name (should be 'op:<index>').")

        op = self.get_operation_by_name(op_name)
        index = int(index)
        if index >= len(op.outputs):
            raise KeyError(f"The name '{name}' refers to a Tensor which does not exist. "
                           f"The operation '{op_name}' has {len(op.outputs)} outputs.")
        return op.outputs[index]

    def finalize(self) -> None:
        """
        No operations can be added to the graph afterwards.
        """
        self._finalized = True

    @property
    def finalized(self) -> bool:
        return self._finalized

    # -------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------
    def add_to_collection(self, name: str, value: Any) -> None:
        with self._lock:
            self._collections.setdefault(name, []).append(value)

    def add_to_collections(self, names, value: Any) -> None:
        names = (names,) if isinstance(names, str) else set(names)
        for name in names:
            self.add_to_collection(name, value)

    def get_collection_ref(self, name: str) -> list:
        """
        Returns the collection list itself, modifications are kept.
        """
        with self._lock:
            return self._collections.setdefault(name, [])

    def get_collection(self, name: str, scope: Optional[str] = None) -> list:
        """
        Returns a copy of the collection `name`.
        With `scope`, only items whose `name` matches the `scope` regex
        (anchored at the start) are returned.
        """
        with self._lock:
            collection = list(self._collections.get(name, []))

        if scope is None:
            return collection

        regex = re.compile(scope)
        return [
            item for item in collection
            if isinstance(getattr(item, "name", None), str) and regex.match(item.name)
        ]

    def get_all_collection_keys(self) -> list[str]:
        with self._lock:
            return [key for key, value in self._collections.items() if value]

    def clear_collection(self, name: str) -> None:
        with self._lock:
            self._collections.pop(name, None)

    def trainable_variables(self) -> list:
        return self.get_collection(GraphKeys.TRAINABLE_VARIABLES)

    def global_variables(self) -> list:
        return self.get_collection(GraphKeys.GLOBAL_VARIABLES)


# -------------------------------------------------------------
# Default graph and default session
# -------------------------------------------------------------
class _DefaultStack(threading.local):
    def __init__(self):
        super().__init__()
        self.stack = []


_default_graph_stack = _DefaultStack()
_default_session_stack = _DefaultStack()
_global_default_graph: Optional[Graph] = None
_global_default_graph_lock = threading.Lock()


def get_default_graph() -> Graph:
    """
    Returns the innermost graph entered with `Graph.as_default()`,
    or the global default graph.
    """
    global _global_default_graph

    if _default_graph_stack.stack:
        return _default_graph_stack.stack[-1]

    with _global_default_graph_lock:
        if _global_default_graph is None:
            _global_default_graph = Graph()
        return _global_default_graph


def reset_default_graph() -> None:
    """
    Throws away the global default graph. Must not be called while a graph
    is entered via `as_default()`.
    """
    global _global_default_graph

    if _default_graph_stack.stack:
        raise AssertionError("Do not use reset_default_graph() inside a `with graph.as_default():` block.")
    with _global_default_graph_lock:
        _global_default_graph = None


def get_default_session() -> Optional[Session]:
    if _default_session_stack.stack:
        return _default_session_stack.stack[-1]
    return None


@contextlib.contextmanager
def default_session(session: Session) -> Iterator[Session]:
    _default_session_stack.stack.append(session)
    try:
        yield session
    finally:
        popped = _default_session_stack.stack.pop()
        assert popped is session, "default session stack was corrupted!"


def _run_using_default_session(fetch, feed_dict, graph: Graph, session: Optional[Session]):
    if session is None:
        session = get_default_session()
        if session is None:
            raise ValueError(
                "Cannot evaluate without a session. Pass one explicitly or "
                "register a default session with `with sess.as_default():`."
            )
    if session.graph is not graph:
        raise ValueError("Cannot use the given session: its graph is not the graph of the fetch.")
    return session.run(fetch, feed_dict)


def get_graph_from_inputs(inputs: Iterable[Any]) -> Graph:
    """
    Returns the graph the graph elements in `inputs` belong to, or the
    default graph if there are none. Raises if they come from different graphs.
    """
    found = None
    for value in inputs:
        graph = getattr(value, "graph", None)
        if not isinstance(graph, Graph):
            continue
        if found is None:
            found = graph
        elif graph is not found:
            raise ValueError(f"{value!r} must be from the same graph as the other inputs.")
    return found if found is not None else get_default_graph()


# -------------------------------------------------------------
# Shortcuts on the default graph
# -------------------------------------------------------------
def name_scope(name: Optional[str]):
    return get_default_graph().name_scope(name)


def control_dependencies(control_inputs):
    return get_default_graph().control_dependencies(control_inputs)


def add_to_collection(name: str, value: Any) -> None:
    get_default_graph().add_to_collection(name, value)


def get_collection(name: str, scope: Optional[str] = None) -> list:
    return get_default_graph().get_collection(name, scope)


def get_collection_ref(name: str) -> list:
    return get_default_graph().get_collection_ref(name)
