"""
Simple training script.
"""
import argparse
import logging

import numpy as np
from tqdm import tqdm

import simple_graph as sg
from simple_graph import train

# (!) local import
import models

GATES = {
    "none": train.GateGradients.GATE_NONE,
    "op": train.GateGradients.GATE_OP,
    "graph": train.GateGradients.GATE_GRAPH,
}

AGGREGATION_METHODS = {
    "add_n": sg.AggregationMethod.ADD_N,
    "tree": sg.AggregationMethod.EXPERIMENTAL_TREE,
    "accumulate_n": sg.AggregationMethod.EXPERIMENTAL_ACCUMULATE_N,
}


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument("--model", default="mlp", choices=["mlp", "embedding"], help="What model to use.")
    parser.add_argument("--hidden_sizes", type=int, nargs="*", default=[32, 32], help="For MLP: hidden layer sizes")
    parser.add_argument("--num_embeddings", type=int, default=100, help="For embedding: size of the table")

    parser.add_argument("--lr", type=float, default=0.05, help="lr to use")
    parser.add_argument("--steps", type=int, default=500, help="number of steps to train for")
    parser.add_argument("--batch_size", type=int, default=32, help="the batch size to use")
    parser.add_argument("--num_samples", type=int, default=1024, help="size of the generated dataset")
    parser.add_argument("--seed", type=int, default=0, help="random seed")

    parser.add_argument("--optimizer", type=str, default="gd", choices=["gd", "momentum", "sgd"],
                        help="optimizer, `sgd` is the minimal driver without global step or gating")
    parser.add_argument("--momentum", type=float, default=0.9, help="For momentum: momentum value to use")
    parser.add_argument("--nesterov", action="store_true", default=False, help="For momentum: use Nesterov momentum")
    parser.add_argument("--gate", default="op", choices=list(GATES), help="How to gate gradients")
    parser.add_argument("--aggregation", default="add_n", choices=list(AGGREGATION_METHODS),
                        help="How to add up gradients")
    parser.add_argument("--use_resource", action="store_true", default=False, help="Use resource variables")
    parser.add_argument("--use_locking", action="store_true", default=False, help="Lock variables while updating")
    parser.add_argument("--threads", type=int, default=1, help="number of threads running operations")

    parser.add_argument("--verbose", action="store_true", default=False, help="print more information")

    return parser


def start_training(args):
    graph = sg.Graph()
    with graph.as_default():
        model = get_model(args)
        targets = sg.placeholder(np.float32, shape=model.outputs.shape, name="targets")
        loss = models.mse_loss(model.outputs, targets)
        train_op, global_step = get_train_op(args, loss)
        init = sg.global_variables_initializer()

    if args.verbose:
        for v in graph.trainable_variables():
            print(v)
        print(f"#Params = {sum(int(np.prod(v.shape)) for v in graph.trainable_variables()):,}")

    inputs, labels = model.make_data(args.num_samples, seed=args.seed)
    rng = np.random.RandomState(args.seed)

    config = sg.SessionConfig(inter_op_parallelism_threads=args.threads, log_op_execution=args.verbose)
    with sg.Session(graph=graph, config=config) as sess:
        sess.run(init)

        print("Starting training")
        for _ in (pbar := tqdm(range(args.steps), desc="Training")):
            batch = rng.randint(0, args.num_samples, size=args.batch_size)
            feed_dict = {model.inputs: inputs[batch], targets: labels[batch]}
            loss_value, _ = sess.run([loss, train_op], feed_dict)
            pbar.set_postfix({"loss": f"{loss_value.item():.04f}"})

        final_loss = sess.run(loss, {model.inputs: inputs, targets: labels})
        if global_step is not None:
            print(f"Took {sess.run(global_step)} steps.")

    print(f"Final loss on all samples is {final_loss.item():.04f}")
    print("Done with training. Woohoo!")


def get_model(args):
    if args.model == "mlp":
        return models.MLP(sizes=[8, *args.hidden_sizes, 1], use_resource=args.use_resource, seed=args.seed)
    if args.model == "embedding":
        return models.EmbeddingRegression(args.num_embeddings, embedding_dim=4,
                                          use_resource=args.use_resource, seed=args.seed)
    raise ValueError(f"Unknown model name: '{args.model}'")


def get_train_op(args, loss):
    """
    :return: The training operation and the global step (None for the `sgd` driver).
    """
    if args.optimizer == "sgd":
        update_ops = train.SGD(learning_rate=args.lr, use_locking=args.use_locking).minimize(loss)
        return sg.group(update_ops, name="train"), None

    if args.optimizer == "gd":
        opt = train.GradientDescentOptimizer(args.lr, use_locking=args.use_locking)
    elif args.optimizer == "momentum":
        opt = train.MomentumOptimizer(args.lr, args.momentum, use_locking=args.use_locking,
                                      use_nesterov=args.nesterov)
    else:
        raise ValueError(f"Unknown optimizer: '{args.optimizer}'")

    global_step = train.get_or_create_global_step()
    train_op = opt.minimize(
        loss,
        global_step=global_step,
        gate_gradients=GATES[args.gate],
        aggregation_method=AGGREGATION_METHODS[args.aggregation],
    )
    return train_op, global_step


if __name__ == "__main__":
    parser = get_parser()
    args = parser.parse_args()
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)
    start_training(args)
