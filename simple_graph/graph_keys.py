"""
Standard names to use for graph collections.

The runtime and the training library use these well known names to collect
and retrieve values associated with a graph. For example, the optimizers
default to optimizing the variables collected under
`GraphKeys.TRAINABLE_VARIABLES` if no explicit list of variables is given.

The following standard keys are populated automatically:

* `GLOBAL_VARIABLES`: the default collection of `Variable` objects. All
  `TRAINABLE_VARIABLES` and all `MODEL_VARIABLES` are in here too.
* `LOCAL_VARIABLES`: variables local to one process, e.g. counters.
* `TRAINABLE_VARIABLES`: the variables an optimizer will train.
* `GLOBAL_STEP`: the global step counter, see `train.get_or_create_global_step`.
* `TRAIN_OP`: the operations returned by `Optimizer.apply_gradients`.

The following keys are *defined* but nothing populates them for you:
`WEIGHTS`, `BIASES`, `ACTIVATIONS`, `LOSSES`, `REGULARIZATION_LOSSES`, ...
"""
import warnings


class _DeprecatedKey:
    """
    A class level alias for another key, warning on every access.
    """

    def __init__(self, old_name: str, new_name: str):
        self.old_name = old_name
        self.new_name = new_name

    def __get__(self, instance, owner):
        warnings.warn(
            f"{self.old_name} collection name is deprecated, please use "
            f"{self.new_name} instead.",
            DeprecationWarning,
            stacklevel=2,
        )
        return getattr(owner, self.new_name)


class GraphKeys:
    # Variable objects that are global (shared across processes).
    # Default collection for all variables, except local ones.
    GLOBAL_VARIABLES = "variables"
    # Variables local to the process, not saved or restored.
    LOCAL_VARIABLES = "local_variables"
    # Variables defined by model layers.
    MODEL_VARIABLES = "model_variables"
    # Variables trained by the optimizers.
    TRAINABLE_VARIABLES = "trainable_variables"
    SUMMARIES = "summaries"
    QUEUE_RUNNERS = "queue_runners"
    TABLE_INITIALIZERS = "table_initializer"
    # An asset is an external resource like a vocabulary file.
    ASSET_FILEPATHS = "asset_filepaths"
    # Variables that keep moving averages.
    MOVING_AVERAGE_VARIABLES = "moving_average_variables"
    REGULARIZATION_LOSSES = "regularization_losses"
    CONCATENATED_VARIABLES = "concatenated_variables"
    SAVERS = "savers"
    WEIGHTS = "weights"
    BIASES = "biases"
    ACTIVATIONS = "activations"
    UPDATE_OPS = "update_ops"
    LOSSES = "losses"
    SAVEABLE_OBJECTS = "saveable_objects"
    # Shared resources to be initialized once per cluster.
    RESOURCES = "resources"
    # Shared resources to be initialized once per session.
    LOCAL_RESOURCES = "local_resources"
    # Trainable resource-style objects that are not `Variable`s.
    TRAINABLE_RESOURCE_VARIABLES = "trainable_resource_variables"

    INIT_OP = "init_op"
    LOCAL_INIT_OP = "local_init_op"
    READY_OP = "ready_op"
    READY_FOR_LOCAL_INIT_OP = "ready_for_local_init_op"
    SUMMARY_OP = "summary_op"
    GLOBAL_STEP = "global_step"

    # Counts the evaluations performed during a single evaluation run.
    EVAL_STEP = "eval_step"
    TRAIN_OP = "train_op"

    COND_CONTEXT = "cond_context"
    WHILE_CONTEXT = "while_context"

    # internal, experimental
    _STREAMING_MODEL_PORTS = "streaming_model_ports"

    # collections that only ever hold variables
    _VARIABLE_COLLECTIONS = [
        GLOBAL_VARIABLES,
        LOCAL_VARIABLES,
        MODEL_VARIABLES,
        MOVING_AVERAGE_VARIABLES,
        CONCATENATED_VARIABLES,
        TRAINABLE_VARIABLES,
        TRAINABLE_RESOURCE_VARIABLES,
    ]

    VARIABLES = _DeprecatedKey("VARIABLES", "GLOBAL_VARIABLES")
