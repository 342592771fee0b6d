"""
Errors raised while a session executes operations.

Mistakes made while *building* a graph are reported right away with the
usual `TypeError` / `ValueError`. The exceptions in this module are raised
by kernels when a `Session` runs them, and always carry the operation that
failed so that the message can point at the node in the graph.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .graph import Operation


class OpError(RuntimeError):
    """
    Base class for errors raised while running an operation.

    Attributes
    ----------
    op : Optional[Operation]
        The operation that failed, if known.
    message : str
        The error message, without the op name.
    """

    def __init__(self, op: Optional[Operation], message: str) -> None:
        self.op = op
        self.message = message
        if op is not None:
            super().__init__(f"{message}\n\t [[node {op.name} ({op.type})]]")
        else:
            super().__init__(message)


class InvalidArgumentError(OpError):
    """
    Raised when a kernel receives arguments it cannot work with, e.g.
    incompatible shapes, out of range indices or a placeholder that was
    not fed.
    """


class FailedPreconditionError(OpError):
    """
    Raised when an operation touches a variable that was not initialized.
    """
