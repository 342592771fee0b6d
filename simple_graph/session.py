"""
Contains the Session, which runs the operations of a graph.
"""
from __future__ import annotations

import collections
import concurrent.futures
import contextlib
import dataclasses
import graphlib
import logging
import time
from typing import Any, Callable, Optional

import numpy as np

from . import errors
from . import graph as graph_module
from .indexed_slices import IndexedSlices, IndexedSlicesValue

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class SessionConfig:
    """
    :param inter_op_parallelism_threads: Number of threads independent
        operations run on. With 1, operations run one after another in
        the calling thread.
    :param log_op_execution: Log every executed operation at DEBUG level.
    """

    inter_op_parallelism_threads: int = 1
    log_op_execution: bool = False

    def __post_init__(self):
        if not isinstance(self.inter_op_parallelism_threads, int) or self.inter_op_parallelism_threads < 1:
            raise ValueError(
                f"inter_op_parallelism_threads must be a positive integer, got {self.inter_op_parallelism_threads!r}"
            )


def _is_compatible(static_shape: Optional[tuple], shape: tuple) -> bool:
    if static_shape is None:
        return True
    if len(static_shape) != len(shape):
        return False
    return all(s is None or s == dim for s, dim in zip(static_shape, shape))


class Session:
    """
    Runs operations of a graph.

    Variables keep their values across `run` calls. Using the session
    as a context manager makes it (and its graph) the default and closes
    it on exit.
    """

    def __init__(self, graph: Optional[graph_module.Graph] = None, config: Optional[SessionConfig] = None):
        self._graph = graph if graph is not None else graph_module.get_default_graph()
        self._config = config if config is not None else SessionConfig()
        self._closed = False
        self._exit_stack: Optional[contextlib.ExitStack] = None

        threads = self._config.inter_op_parallelism_threads
        if threads > 1:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=threads, thread_name_prefix="simple_graph_session"
            )
        else:
            self._executor = None

    @property
    def graph(self) -> graph_module.Graph:
        return self._graph

    @property
    def config(self) -> SessionConfig:
        return self._config

    # -------------------------------------------------------------
    # Lifetime
    # -------------------------------------------------------------
    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        logger.debug("Closed session")

    def as_default(self):
        """
        Makes this session the default session, without closing it afterwards.
        """
        return graph_module.default_session(self)

    def __enter__(self) -> Session:
        self._exit_stack = contextlib.ExitStack()
        self._exit_stack.enter_context(self._graph.as_default())
        self._exit_stack.enter_context(graph_module.default_session(self))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._exit_stack.close()
        self._exit_stack = None
        self.close()

    # -------------------------------------------------------------
    # Fetches and feeds
    # -------------------------------------------------------------
    def _as_graph_element(self, fetch):
        if isinstance(fetch, str):
            if ":" in fetch:
                return self._graph.get_tensor_by_name(fetch)
            return self._graph.get_operation_by_name(fetch)

        if isinstance(fetch, graph_module._OperatorsMixin):
            element = fetch._as_tensor()
        elif isinstance(fetch, graph_module.Operation):
            element = fetch
        else:
            raise TypeError(
                f"Fetch argument {fetch!r} has invalid type {type(fetch).__name__}, must be a "
                f"string, Tensor, Operation, Variable or IndexedSlices."
            )

        if element.graph is not self._graph:
            raise ValueError(f"Fetch argument {fetch!r} is not an element of this graph.")
        return element

    def _map_fetches(self, fetch, elements: list) -> Callable[[list], Any]:
        """
        Appends the graph elements of `fetch` to `elements` and returns
        a function building the result structure from their values.
        """
        if fetch is None:
            raise TypeError("Fetch argument None has invalid type NoneType.")

        if isinstance(fetch, (list, tuple)):
            builders = [self._map_fetches(f, elements) for f in fetch]
            if hasattr(fetch, "_fields"):  # namedtuple
                return lambda values: type(fetch)(*(b(values) for b in builders))
            return lambda values: type(fetch)(b(values) for b in builders)

        if isinstance(fetch, dict):
            builders = {key: self._map_fetches(f, elements) for key, f in fetch.items()}

            def build_dict(values):
                if isinstance(fetch, collections.defaultdict):
                    result = type(fetch)(fetch.default_factory)
                else:
                    result = type(fetch)()
                result.update((key, b(values)) for key, b in builders.items())
                return result
            return build_dict

        if isinstance(fetch, IndexedSlices):
            components = [fetch.values, fetch.indices]
            if fetch.dense_shape is not None:
                components.append(fetch.dense_shape)
            builders = [self._map_fetches(c, elements) for c in components]
            return lambda values: IndexedSlicesValue(*(b(values) for b in builders), *([None] * (3 - len(builders))))

        element = self._as_graph_element(fetch)
        index = len(elements)
        elements.append(element)
        if isinstance(element, graph_module.Operation):
            return lambda values: None
        return lambda values: values[index]

    def _process_feeds(self, feed_dict) -> dict:
        feeds = {}
        for key, value in (feed_dict or {}).items():
            tensor = self._graph.get_tensor_by_name(key) if isinstance(key, str) else key
            if isinstance(tensor, graph_module._OperatorsMixin):
                tensor = tensor._as_tensor()
            if not isinstance(tensor, graph_module.Tensor):
                raise TypeError(f"The key of a feed must be a Tensor or a tensor name, got {key!r}.")
            if tensor.graph is not self._graph:
                raise ValueError(f"Cannot feed {tensor.name}: it is not an element of this graph.")

            array = np.asarray(value)
            if not np.can_cast(array.dtype, tensor.dtype, casting="same_kind"):
                raise ValueError(f"Cannot feed value of dtype {array.dtype.name} for Tensor "
                                 f"'{tensor.name}', which has dtype {tensor.dtype.name}")
            if not _is_compatible(tensor.shape, array.shape):
                raise ValueError(f"Cannot feed value of shape {array.shape} for Tensor "
                                 f"'{tensor.name}', which has shape {tensor.shape}")
            feeds[tensor] = array.astype(tensor.dtype, copy=False)
        return feeds

    # -------------------------------------------------------------
    # Running
    # -------------------------------------------------------------
    def _needed_ops(self, elements: list, feeds: dict) -> set:
        needed = set()
        queue = []
        for element in elements:
            if isinstance(element, graph_module.Operation):
                queue.append(element)
            elif element not in feeds:
                queue.append(element.op)

        while queue:
            op = queue.pop()
            if op in needed:
                continue
            needed.add(op)
            queue.extend(t.op for t in op.inputs if t not in feeds)
            queue.extend(op.control_inputs)
        return needed

    def _run_op(self, op: graph_module.Operation, values: dict) -> list:
        inputs = [values[t] for t in op.inputs]
        if self._config.log_op_execution:
            logger.debug("Executing %s (%s)", op.name, op.type)

        try:
            result = op.kernel.compute(*inputs)
        except errors.OpError as e:
            if e.op is None:
                raise type(e)(op, e.message) from e
            raise
        except (ValueError, TypeError, IndexError) as e:
            raise errors.InvalidArgumentError(op, str(e)) from e

        n = len(op.outputs)
        if n == 0:
            return []
        elif n == 1:
            return [result]
        else:
            assert len(result) == n, f"{op.type} computed {len(result)} outputs instead of {n}"
            return list(result)

    def _execute(self, needed: set, values: dict) -> None:
        sorter = graphlib.TopologicalSorter()
        for op in needed:
            sorter.add(op, *(t.op for t in op.inputs if t not in values), *op.control_inputs)
        sorter.prepare()

        def store(op, outputs):
            for t, value in zip(op.outputs, outputs):
                if t not in values:  # fed tensors keep their value
                    values[t] = value
            sorter.done(op)

        if self._executor is None:
            while sorter.is_active():
                for op in sorted(sorter.get_ready(), key=lambda op: op._id):
                    store(op, self._run_op(op, values))
            return

        running: dict[concurrent.futures.Future, graph_module.Operation] = {}
        try:
            while sorter.is_active():
                for op in sorted(sorter.get_ready(), key=lambda op: op._id):
                    running[self._executor.submit(self._run_op, op, values)] = op
                done, _ = concurrent.futures.wait(running, return_when=concurrent.futures.FIRST_COMPLETED)
                for future in done:
                    store(running.pop(future), future.result())
        finally:
            for future in running:
                future.cancel()

    def run(self, fetches, feed_dict=None):
        """
        Runs the operations needed to compute `fetches`.

        :param fetches: A Tensor, Operation, Variable, IndexedSlices, name of
            a tensor or operation, or a (nested) list, tuple or dict of them.
        :param feed_dict: Maps tensors (or their names) to values replacing them.
        :return: `fetches` with every tensor replaced by its value (a numpy
            array, `IndexedSlicesValue` for IndexedSlices) and every
            operation by None.
        """
        if self._closed:
            raise RuntimeError("Attempted to use a closed Session.")

        elements = []
        build = self._map_fetches(fetches, elements)
        feeds = self._process_feeds(feed_dict)

        start = time.perf_counter()
        needed = self._needed_ops(elements, feeds)
        values = dict(feeds)
        self._execute(needed, values)

        results = []
        for element in elements:
            if isinstance(element, graph_module.Operation):
                results.append(None)
                continue
            value = values[element]
            results.append(np.array(value) if isinstance(value, np.ndarray) else value)

        logger.debug("Ran %d operations for %d fetches in %.2f ms",
                     len(needed), len(elements), 1000 * (time.perf_counter() - start))
        return build(results)
