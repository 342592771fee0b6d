from simple_graph.train.optimizer import GateGradients, Optimizer
from simple_graph.train.gradient_descent import GradientDescentOptimizer
from simple_graph.train.momentum import MomentumOptimizer
from simple_graph.train.sgd import SGD
from simple_graph.train.slot_creator import create_slot, create_zeros_slot
from simple_graph.train.training_util import (
    assert_global_step,
    create_global_step,
    get_global_step,
    get_or_create_global_step,
)
