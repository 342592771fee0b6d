"""
A minimal stochastic gradient descent driver.

Unlike `GradientDescentOptimizer` it has no hooks or slots: it takes the
trainable variables of the graph, asks for the gradients of the loss and
emits one in-place update per variable.
"""
from __future__ import annotations

import logging
from typing import Optional

from .. import graph as graph_module
from .. import math_ops
from .. import training_ops
from ..gradients import gradients
from ..graph_keys import GraphKeys

logger = logging.getLogger(__name__)


class SGD:
    def __init__(self, learning_rate: float = 0.001, use_locking: bool = False):
        """
        :param learning_rate: Fixed learning rate.
        :param use_locking: Whether updates hold the lock of their variable,
            serializing concurrent updates of the same variable.
        """
        self.learning_rate = learning_rate
        self.use_locking = use_locking

    def minimize(self, loss, graph: Optional[graph_module.Graph] = None) -> list[graph_module.Operation]:
        """
        Adds the operations updating all trainable variables of `graph`
        (the graph of `loss` by default) against the gradient of `loss`.

        :return: One update operation per variable that has a gradient.
        :raises RuntimeError: If the number of gradients does not match
            the number of variables.
        """
        loss = math_ops.convert_to_tensor(loss)
        graph = graph if graph is not None else loss.graph

        variables = graph.get_collection(GraphKeys.TRAINABLE_VARIABLES)
        handles = [v.handle for v in variables]
        grads = gradients([loss], handles)
        if len(grads) != len(variables):
            raise RuntimeError(
                f"Got {len(grads)} gradients for {len(variables)} trainable variables."
            )

        update_ops = []
        with graph.as_default(), graph.name_scope("SGD"):
            for var, handle, grad in zip(variables, handles, grads):
                if grad is None:
                    logger.info("No gradient for variable %s, not updating it", var.name)
                    continue

                learning_rate = math_ops.constant(self.learning_rate, dtype=var.dtype, graph=graph)
                update_ops.append(training_ops.resource_apply_gradient_descent(
                    handle, learning_rate, math_ops.convert_to_tensor(grad), use_locking=self.use_locking
                ))

        logger.debug("SGD: %d updates for %d trainable variables", len(update_ops), len(variables))
        return update_ops
