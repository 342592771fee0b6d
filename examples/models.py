"""
Implements small regression models as `simple_graph` graphs.
"""
import numpy as np

import simple_graph as sg


__all__ = ["MLP", "EmbeddingRegression", "mse_loss"]


def dense(x, in_size: int, out_size: int, rng: np.random.RandomState, use_resource: bool = False,
          activation=None, name: str = "dense"):
    """
    A fully connected layer with He initialized weights.
    """
    with sg.name_scope(name):
        weight = sg.Variable(
            (rng.randn(in_size, out_size) * np.sqrt(2.0 / in_size)).astype(np.float32),
            name="weight", use_resource=use_resource,
        )
        bias = sg.Variable(np.zeros(out_size, dtype=np.float32), name="bias", use_resource=use_resource)
        out = sg.matmul(x, weight) + bias
        if activation is not None:
            out = activation(out)
    return out


class MLP:
    """
    A multi-layer perceptron with relu activations.
    """
    def __init__(self, sizes, use_resource=False, seed=0):
        assert len(sizes) >= 2, "Expected at least an input and an output size!"
        rng = np.random.RandomState(seed)

        self.inputs = sg.placeholder(np.float32, shape=(None, sizes[0]), name="inputs")

        x = self.inputs
        for i, (in_size, out_size) in enumerate(zip(sizes[:-1], sizes[1:])):
            last = i == len(sizes) - 2
            x = dense(x, in_size, out_size, rng, use_resource,
                      activation=None if last else sg.relu, name=f"layer{i}")
        self.outputs = x

    def make_data(self, num_samples: int, seed: int = 0):
        """
        Random inputs with a smooth target function to fit.
        """
        rng = np.random.RandomState(seed)
        in_size = self.inputs.shape[1]
        out_size = self.outputs.shape[1]
        x = rng.randn(num_samples, in_size).astype(np.float32)
        projection = rng.randn(in_size, out_size).astype(np.float32)
        y = np.sin(x @ projection)
        return x, y


class EmbeddingRegression:
    """
    Looks up one embedding per id and maps it linearly to the target.
    The embedding table gets sparse gradients.
    """
    def __init__(self, num_embeddings, embedding_dim, use_resource=False, seed=0):
        rng = np.random.RandomState(seed)
        self.num_embeddings = num_embeddings

        self.inputs = sg.placeholder(np.int32, shape=(None,), name="ids")

        with sg.name_scope("embedding"):
            self.table = sg.Variable(
                (rng.randn(num_embeddings, embedding_dim) * 0.1).astype(np.float32),
                name="table", use_resource=use_resource,
            )
            embedded = sg.gather(self.table, self.inputs)
        self.outputs = dense(embedded, embedding_dim, 1, rng, use_resource, name="head")

    def make_data(self, num_samples: int, seed: int = 0):
        rng = np.random.RandomState(seed)
        ids = rng.randint(0, self.num_embeddings, size=num_samples).astype(np.int32)
        values = rng.randn(self.num_embeddings, 1).astype(np.float32)
        return ids, values[ids]


def mse_loss(outputs, targets, name="loss"):
    with sg.name_scope(name):
        return sg.reduce_mean(sg.square(outputs - targets))
