import logging

from simple_graph import dtypes
from simple_graph.errors import FailedPreconditionError, InvalidArgumentError, OpError
from simple_graph.graph import (
    Graph,
    Operation,
    Tensor,
    add_to_collection,
    control_dependencies,
    get_collection,
    get_collection_ref,
    get_default_graph,
    get_default_session,
    name_scope,
    reset_default_graph,
)
from simple_graph.graph_keys import GraphKeys
from simple_graph.indexed_slices import IndexedSlices, IndexedSlicesValue
from simple_graph.math_ops import (
    accumulate_n,
    add,
    add_n,
    cast,
    concat,
    constant,
    convert_to_tensor,
    convert_to_tensor_or_indexed_slices,
    divide,
    exp,
    gather,
    identity,
    log,
    matmul,
    multiply,
    negative,
    ones_like,
    placeholder,
    pow,
    reduce_mean,
    reduce_sum,
    relu,
    reshape,
    shape,
    sigmoid,
    size,
    sqrt,
    square,
    stop_gradient,
    subtract,
    tanh,
    unique,
    unsorted_segment_sum,
    zeros_like,
)
from simple_graph.control_flow import gated_tuple, group, no_op, with_dependencies
from simple_graph.gradients import AggregationMethod, gradients
from simple_graph.variables import (
    ResourceVariable,
    Variable,
    global_variables,
    global_variables_initializer,
    is_variable_initialized,
    local_variables,
    local_variables_initializer,
    trainable_variables,
    variables_initializer,
)
from simple_graph.session import Session, SessionConfig
import simple_graph.training_ops as training_ops
import simple_graph.train as train

logging.getLogger(__name__).addHandler(logging.NullHandler())
