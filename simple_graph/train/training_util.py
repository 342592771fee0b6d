"""
The global step: a counter of the training steps taken.
"""
from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .. import dtypes
from .. import graph as graph_module
from ..graph_keys import GraphKeys
from ..variables import Variable

logger = logging.getLogger(__name__)


def get_global_step(graph: Optional[graph_module.Graph] = None) -> Optional[Variable]:
    """
    :return: The global step variable of `graph` (the default graph),
        None if there is none.
    """
    graph = graph if graph is not None else graph_module.get_default_graph()
    global_step_vars = graph.get_collection(GraphKeys.GLOBAL_STEP)
    if len(global_step_vars) == 1:
        return global_step_vars[0]
    elif len(global_step_vars) > 1:
        logger.error("Multiple variables in the global_step collection.")
    return None


def create_global_step(graph: Optional[graph_module.Graph] = None) -> Variable:
    """
    Creates the global step variable: an int64 scalar starting at 0.

    :raises ValueError: If there already is one.
    """
    graph = graph if graph is not None else graph_module.get_default_graph()
    if get_global_step(graph) is not None:
        raise ValueError("'global_step' already exists.")

    with graph.as_default(), graph.control_dependencies(None), graph.name_scope(None):
        return Variable(
            np.zeros((), dtype=dtypes.int64),
            trainable=False,
            collections=[GraphKeys.GLOBAL_VARIABLES, GraphKeys.GLOBAL_STEP],
            name="global_step",
        )


def get_or_create_global_step(graph: Optional[graph_module.Graph] = None) -> Variable:
    global_step = get_global_step(graph)
    if global_step is None:
        global_step = create_global_step(graph)
    return global_step


def assert_global_step(global_step: Variable) -> None:
    """
    :raises TypeError: If `global_step` is not an integer scalar variable.
    """
    if not isinstance(global_step, Variable):
        raise TypeError(f"Existing 'global_step' must be a Variable: {global_step!r}")
    if not np.issubdtype(global_step.dtype, np.integer):
        raise TypeError(f"Existing 'global_step' does not have integer type: {global_step.dtype.name}")
    if global_step.shape != ():
        raise TypeError(f"Existing 'global_step' is not a scalar: {global_step.shape}")
