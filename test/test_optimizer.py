"""
Tests for the optimizers, comparing the trained variables to torch.
"""
import logging

import numpy as np
import pytest
import torch

import simple_graph as sg
from simple_graph import train

OPTIMIZERS = {
    "gd": (
        lambda: train.GradientDescentOptimizer(0.1),
        lambda params: torch.optim.SGD(params, lr=0.1),
    ),
    "momentum": (
        lambda: train.MomentumOptimizer(0.1, 0.9),
        lambda params: torch.optim.SGD(params, lr=0.1, momentum=0.9),
    ),
    "nesterov": (
        lambda: train.MomentumOptimizer(0.1, 0.9, use_nesterov=True),
        lambda params: torch.optim.SGD(params, lr=0.1, momentum=0.9, nesterov=True),
    ),
}

STEPS = 5


@pytest.fixture
def graph():
    g = sg.Graph()
    with g.as_default():
        yield g


@pytest.fixture(params=[False, True], ids=["ref", "resource"])
def use_resource(request):
    return request.param


def assert_close(actual, expected):
    np.testing.assert_allclose(actual, expected, rtol=1e-6, atol=1e-8)


class Regression:
    """
    A one layer tanh regression, built both as a graph and in torch.
    """

    def __init__(self, use_resource=False, seed=0):
        rng = np.random.RandomState(seed)
        self.x = rng.randn(8, 3)
        self.y = rng.randn(8, 2)
        self.w0 = rng.randn(3, 2)
        self.b0 = rng.randn(2)

        self.w = sg.Variable(self.w0, name="w", use_resource=use_resource)
        self.b = sg.Variable(self.b0, name="b", use_resource=use_resource)
        self.loss = sg.reduce_mean(sg.square(sg.tanh(sg.matmul(self.x, self.w) + self.b) - self.y))

    def train(self, train_op, steps=STEPS, feed_dict=None):
        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            for _ in range(steps):
                sess.run(train_op, feed_dict)
            return sess.run([self.w, self.b])

    def train_torch(self, make_optimizer, steps=STEPS):
        x, y = torch.tensor(self.x), torch.tensor(self.y)
        w = torch.tensor(self.w0, requires_grad=True)
        b = torch.tensor(self.b0, requires_grad=True)
        optimizer = make_optimizer([w, b])
        for _ in range(steps):
            optimizer.zero_grad()
            loss = ((torch.tanh(x @ w + b) - y) ** 2).mean()
            loss.backward()
            optimizer.step()
        return w.detach().numpy(), b.detach().numpy()


class Embedding:
    """
    Looks up rows of a table with duplicate ids, the gradient of the
    table is sparse.
    """

    ids = [0, 2, 0, 4]

    def __init__(self, use_resource=False, seed=0):
        rng = np.random.RandomState(seed)
        self.table0 = rng.randn(5, 3)
        self.target = rng.randn(len(self.ids), 3)

        self.table = sg.Variable(self.table0, name="table", use_resource=use_resource)
        self.loss = sg.reduce_sum(sg.square(sg.gather(self.table, self.ids) - self.target))

    def train(self, train_op, steps=STEPS):
        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            for _ in range(steps):
                sess.run(train_op)
            return sess.run(self.table)

    def train_torch(self, make_optimizer, steps=STEPS):
        table = torch.tensor(self.table0, requires_grad=True)
        target = torch.tensor(self.target)
        optimizer = make_optimizer([table])
        for _ in range(steps):
            optimizer.zero_grad()
            loss = ((table[self.ids] - target) ** 2).sum()
            loss.backward()
            optimizer.step()
        return table.detach().numpy()


class TestDense:
    @pytest.mark.parametrize("optimizer", OPTIMIZERS.keys())
    def test_against_torch(self, graph, optimizer, use_resource):
        make_optimizer, make_torch_optimizer = OPTIMIZERS[optimizer]
        model = Regression(use_resource)

        w, b = model.train(make_optimizer().minimize(model.loss))
        w_torch, b_torch = model.train_torch(make_torch_optimizer)

        assert_close(w, w_torch)
        assert_close(b, b_torch)

    @pytest.mark.parametrize("gate", list(train.GateGradients))
    def test_gate_gradients(self, graph, gate):
        model = Regression()
        train_op = train.GradientDescentOptimizer(0.1).minimize(model.loss, gate_gradients=gate)

        w, b = model.train(train_op)
        w_torch, b_torch = model.train_torch(OPTIMIZERS["gd"][1])

        assert_close(w, w_torch)
        assert_close(b, b_torch)

    @pytest.mark.parametrize("aggregation_method", list(sg.AggregationMethod))
    def test_aggregation_method(self, graph, aggregation_method):
        model = Regression()
        loss = model.loss + sg.reduce_sum(model.b * 0.0)
        train_op = train.GradientDescentOptimizer(0.1).minimize(loss, aggregation_method=aggregation_method)

        w, b = model.train(train_op)
        w_torch, b_torch = model.train_torch(OPTIMIZERS["gd"][1])

        assert_close(w, w_torch)
        assert_close(b, b_torch)

    def test_learning_rate_placeholder(self, graph):
        model = Regression()
        learning_rate = sg.placeholder(np.float64, shape=())
        train_op = train.GradientDescentOptimizer(learning_rate).minimize(model.loss)

        w, b = model.train(train_op, feed_dict={learning_rate: 0.1})
        w_torch, b_torch = model.train_torch(OPTIMIZERS["gd"][1])

        assert_close(w, w_torch)
        assert_close(b, b_torch)

    def test_callable_learning_rate(self, graph):
        model = Regression()
        calls = []

        def learning_rate():
            calls.append(1)
            return 0.1

        train_op = train.GradientDescentOptimizer(learning_rate).minimize(model.loss)
        w, _ = model.train(train_op)

        assert calls == [1]
        assert_close(w, model.train_torch(OPTIMIZERS["gd"][1])[0])

    def test_var_list(self, graph):
        model = Regression()
        train_op = train.GradientDescentOptimizer(0.1).minimize(model.loss, var_list=[model.w])

        w, b = model.train(train_op)

        assert not np.allclose(w, model.w0)
        np.testing.assert_array_equal(b, model.b0)

    def test_untrainable_variables_are_left_alone(self, graph):
        scale = sg.Variable(2.0, dtype=np.float64, trainable=False)
        w = sg.Variable(np.ones(3))
        train_op = train.GradientDescentOptimizer(0.5).minimize(sg.reduce_sum(w * scale))

        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            sess.run(train_op)
            np.testing.assert_array_equal(sess.run(w), [0.0, 0.0, 0.0])
            assert sess.run(scale) == 2.0

    def test_locking_with_threads(self, graph, use_resource):
        w = sg.Variable(np.zeros(4), use_resource=use_resource)
        losses = [sg.reduce_sum(w * -1.0) for _ in range(16)]
        optimizers = [train.GradientDescentOptimizer(1.0, use_locking=True) for _ in losses]
        train_op = sg.group(*[opt.minimize(loss) for opt, loss in zip(optimizers, losses)])

        config = sg.SessionConfig(inter_op_parallelism_threads=4)
        with sg.Session(config=config) as sess:
            sess.run(w.initializer)
            sess.run(train_op)
            np.testing.assert_array_equal(sess.run(w), np.full(4, 16.0))


class TestSparse:
    def test_gradient_is_sparse(self, graph, use_resource):
        model = Embedding(use_resource)
        ((grad, var),) = train.GradientDescentOptimizer(0.1).compute_gradients(model.loss)

        assert var is model.table
        assert isinstance(grad, sg.IndexedSlices)
        with sg.Session() as sess:
            sess.run(model.table.initializer)
            value = sess.run(grad)
        np.testing.assert_array_equal(value.indices, model.ids)

    @pytest.mark.parametrize("optimizer", OPTIMIZERS.keys())
    def test_against_torch(self, graph, optimizer, use_resource):
        make_optimizer, make_torch_optimizer = OPTIMIZERS[optimizer]
        model = Embedding(use_resource)

        table = model.train(make_optimizer().minimize(model.loss))
        table_torch = model.train_torch(make_torch_optimizer)

        assert_close(table, table_torch)

    def test_rows_without_ids_are_left_alone(self, graph, use_resource):
        model = Embedding(use_resource)
        table = model.train(train.MomentumOptimizer(0.1, 0.9).minimize(model.loss))

        np.testing.assert_array_equal(table[[1, 3]], model.table0[[1, 3]])

    def test_deduplicate_indexed_slices(self, graph):
        values = sg.constant(np.array([[1.0, 1.0], [2.0, 2.0], [3.0, 3.0]]))
        indices = sg.constant([4, 1, 4])

        summed, unique = train.optimizer._deduplicate_indexed_slices(values, indices)
        with sg.Session() as sess:
            summed, unique = sess.run([summed, unique])

        np.testing.assert_array_equal(unique, [4, 1])
        np.testing.assert_array_equal(summed, [[4.0, 4.0], [2.0, 2.0]])


class TestSlots:
    def test_momentum_slots(self, graph, use_resource):
        model = Regression(use_resource)
        optimizer = train.MomentumOptimizer(0.1, 0.9)
        optimizer.minimize(model.loss)

        assert optimizer.get_slot_names() == ["momentum"]
        slot = optimizer.get_slot(model.w, "momentum")
        assert slot.name == "w/Momentum:0"
        assert slot.shape == model.w.shape
        assert slot.dtype == model.w.dtype
        assert slot.trainable is False
        assert isinstance(slot, sg.ResourceVariable) == use_resource
        assert optimizer.variables() == [optimizer.get_slot(model.b, "momentum"), slot]
        assert slot in sg.global_variables()
        assert slot not in sg.trainable_variables()

    def test_missing_slots(self, graph):
        model = Regression()
        optimizer = train.GradientDescentOptimizer(0.1)
        optimizer.minimize(model.loss)

        assert optimizer.get_slot_names() == []
        assert optimizer.get_slot(model.w, "momentum") is None
        assert optimizer.variables() == []

    def test_slots_are_reused(self, graph):
        model = Regression()
        optimizer = train.MomentumOptimizer(0.1, 0.9)
        optimizer.minimize(model.loss)
        slot = optimizer.get_slot(model.w, "momentum")
        optimizer.minimize(model.loss * 2.0)

        assert optimizer.get_slot(model.w, "momentum") is slot
        assert len(optimizer.variables()) == 2

    def test_slot_holds_accumulation(self, graph):
        w = sg.Variable(np.array([1.0, 2.0]))
        optimizer = train.MomentumOptimizer(0.5, 0.9)
        train_op = optimizer.minimize(sg.reduce_sum(w * np.array([1.0, -2.0])))
        slot = optimizer.get_slot(w, "momentum")

        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            sess.run(train_op)
            assert_close(sess.run(slot), [1.0, -2.0])
            sess.run(train_op)
            assert_close(sess.run(slot), [1.9, -3.8])

    def test_slots_ignore_name_scopes(self, graph):
        with sg.name_scope("model"):
            w = sg.Variable(np.ones(2), name="w")
        with sg.name_scope("training"):
            optimizer = train.MomentumOptimizer(0.1, 0.9)
            optimizer.minimize(sg.reduce_sum(w))

        assert optimizer.get_slot(w, "momentum").name == "model/w/Momentum:0"

    def test_create_slot(self, graph):
        w = sg.Variable(np.ones((2, 2), dtype=np.float32), name="w")
        slot = train.create_slot(w, np.full((2, 2), 3.0, dtype=np.float32), "extra")
        zeros = train.create_zeros_slot(w, "zeros", dtype=np.float64)

        assert slot.name == "w/extra:0"
        assert slot.dtype == np.float32
        assert zeros.dtype == np.float64
        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            np.testing.assert_array_equal(sess.run(slot), np.full((2, 2), 3.0))
            np.testing.assert_array_equal(sess.run(zeros), np.zeros((2, 2)))


class TestApplyGradients:
    def test_train_op(self, graph):
        model = Regression()
        train_op = train.GradientDescentOptimizer(0.1).minimize(model.loss)

        assert isinstance(train_op, sg.Operation)
        assert train_op.name == "GradientDescent"
        assert sg.get_collection(sg.GraphKeys.TRAIN_OP) == [train_op]

    def test_names(self, graph):
        model = Regression()
        first = train.GradientDescentOptimizer(0.1).minimize(model.loss)
        second = train.MomentumOptimizer(0.1, 0.9).minimize(model.loss, name="train")
        third = train.GradientDescentOptimizer(0.1, name="sgd").minimize(model.loss)

        assert first.name == "GradientDescent"
        assert second.name == "train"
        assert third.name == "sgd"
        assert sg.get_collection(sg.GraphKeys.TRAIN_OP) == [first, second, third]

    def test_global_step(self, graph):
        model = Regression()
        global_step = train.get_or_create_global_step()
        train_op = train.GradientDescentOptimizer(0.1).minimize(model.loss, global_step=global_step)

        assert train_op.name == "GradientDescent"
        w, b = model.train(train_op)
        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            for _ in range(3):
                sess.run(train_op)
            assert sess.run(global_step) == 3

        assert_close(w, model.train_torch(OPTIMIZERS["gd"][1])[0])

    def test_handmade_gradients(self, graph, use_resource):
        w = sg.Variable(np.array([1.0, 2.0]), use_resource=use_resource)
        optimizer = train.GradientDescentOptimizer(0.5)
        train_op = optimizer.apply_gradients([(np.array([2.0, -2.0]), w)])

        with sg.Session() as sess:
            sess.run(w.initializer)
            sess.run(train_op)
            np.testing.assert_array_equal(sess.run(w), [0.0, 3.0])

    def test_handmade_sparse_gradients(self, graph, use_resource):
        w = sg.Variable(np.zeros((3, 2)), use_resource=use_resource)
        grad = sg.IndexedSlices(
            sg.constant(np.ones((3, 2))),
            sg.constant([2, 0, 2]),
            sg.constant(np.array([3, 2], dtype=np.int64)),
        )
        train_op = train.GradientDescentOptimizer(1.0).apply_gradients([(grad, w)])

        with sg.Session() as sess:
            sess.run(w.initializer)
            sess.run(train_op)
            np.testing.assert_array_equal(sess.run(w), [[-1, -1], [0, 0], [-2, -2]])

    def test_none_gradients_are_skipped(self, graph):
        a = sg.Variable(np.ones(2))
        b = sg.Variable(np.ones(2))
        train_op = train.GradientDescentOptimizer(1.0).minimize(sg.reduce_sum(a))

        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            sess.run(train_op)
            np.testing.assert_array_equal(sess.run(a), [0.0, 0.0])
            np.testing.assert_array_equal(sess.run(b), [1.0, 1.0])

    def test_compute_gradients(self, graph):
        model = Regression()
        grads_and_vars = train.GradientDescentOptimizer(0.1).compute_gradients(model.loss)

        assert [v for _, v in grads_and_vars] == [model.w, model.b]
        x, y = torch.tensor(model.x), torch.tensor(model.y)
        w = torch.tensor(model.w0, requires_grad=True)
        b = torch.tensor(model.b0, requires_grad=True)
        ((torch.tanh(x @ w + b) - y) ** 2).mean().backward()

        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            grad_w, grad_b = sess.run([g for g, _ in grads_and_vars])
        assert_close(grad_w, w.grad.numpy())
        assert_close(grad_b, b.grad.numpy())

    def test_grad_loss(self, graph):
        w = sg.Variable(np.ones(2))
        ((grad, _),) = train.GradientDescentOptimizer(0.1).compute_gradients(
            sg.reduce_sum(w * 3.0), grad_loss=np.float64(2.0)
        )
        with sg.Session() as sess:
            sess.run(w.initializer)
            np.testing.assert_array_equal(sess.run(grad), [6.0, 6.0])

    def test_streaming_model_ports(self, graph):
        w = sg.Variable(np.ones(2))
        port = w * 2.0
        sg.add_to_collection(sg.GraphKeys._STREAMING_MODEL_PORTS, port)
        optimizer = train.GradientDescentOptimizer(1.0)
        grads_and_vars = optimizer.compute_gradients(sg.reduce_sum(port * 3.0))

        assert [v for _, v in grads_and_vars] == [w, port]
        with sg.Session() as sess:
            sess.run(w.initializer)
            np.testing.assert_array_equal(sess.run(grads_and_vars[1][0]), [3.0, 3.0])
            sess.run(optimizer.apply_gradients(grads_and_vars))
            np.testing.assert_array_equal(sess.run(w), [-5.0, -5.0])


class TestErrors:
    def test_empty_name(self):
        with pytest.raises(ValueError, match="optimizer name"):
            train.GradientDescentOptimizer(0.1, name="")

    def test_invalid_gate(self, graph):
        model = Regression()
        with pytest.raises(ValueError):
            train.GradientDescentOptimizer(0.1).minimize(model.loss, gate_gradients=3)

    def test_integer_loss(self, graph):
        sg.Variable(np.ones(2))
        with pytest.raises(ValueError, match="Invalid type"):
            train.GradientDescentOptimizer(0.1).minimize(sg.constant(1))

    def test_integer_variable(self, graph):
        w = sg.Variable(np.ones(2, dtype=np.int32))
        loss = sg.reduce_sum(sg.cast(w, np.float32))
        with pytest.raises(ValueError):
            train.GradientDescentOptimizer(0.1).minimize(loss, var_list=[w])

    def test_no_variables(self, graph):
        with pytest.raises(ValueError, match="No variables"):
            train.GradientDescentOptimizer(0.1).minimize(sg.constant(1.0))

    def test_tensor_in_var_list(self, graph):
        model = Regression()
        with pytest.raises(TypeError):
            train.GradientDescentOptimizer(0.1).minimize(model.loss, var_list=[model.loss])

    def test_no_gradients(self, graph):
        sg.Variable(np.ones(2))
        with pytest.raises(ValueError, match="No gradients"):
            train.GradientDescentOptimizer(0.1).minimize(sg.constant(1.0))

    def test_apply_nothing(self, graph):
        w = sg.Variable(np.ones(2))
        optimizer = train.GradientDescentOptimizer(0.1)
        with pytest.raises(ValueError):
            optimizer.apply_gradients([])
        with pytest.raises(ValueError):
            optimizer.apply_gradients([(None, w)])

    def test_invalid_gradient(self, graph):
        w = sg.Variable(np.ones(2))
        with pytest.raises(TypeError):
            train.GradientDescentOptimizer(0.1).apply_gradients([(object(), w)])

    def test_not_implemented(self, graph):
        class Incomplete(train.Optimizer):
            def __init__(self):
                super().__init__(False, "Incomplete")

        w = sg.Variable(np.ones(2))
        with pytest.raises(NotImplementedError):
            Incomplete().minimize(sg.reduce_sum(w))


class TestGlobalStep:
    def test_create(self, graph):
        assert train.get_global_step() is None

        global_step = train.create_global_step()

        assert global_step.name == "global_step:0"
        assert global_step.dtype == np.int64
        assert global_step.shape == ()
        assert global_step.trainable is False
        assert train.get_global_step() is global_step
        assert train.get_or_create_global_step() is global_step
        assert sg.get_collection(sg.GraphKeys.GLOBAL_STEP) == [global_step]
        assert global_step in sg.global_variables()

        with pytest.raises(ValueError):
            train.create_global_step()

    def test_other_graph(self, graph):
        other = sg.Graph()
        global_step = train.get_or_create_global_step(other)

        assert global_step.graph is other
        assert train.get_global_step() is None
        assert train.get_global_step(other) is global_step

    def test_ignores_scopes(self, graph):
        with sg.name_scope("outer"), sg.control_dependencies([sg.no_op()]):
            global_step = train.create_global_step()

        assert global_step.op.name == "global_step"
        assert global_step.initializer.control_inputs == []

    def test_duplicates(self, graph, caplog):
        sg.add_to_collection(sg.GraphKeys.GLOBAL_STEP, sg.Variable(0))
        sg.add_to_collection(sg.GraphKeys.GLOBAL_STEP, sg.Variable(0))

        with caplog.at_level(logging.ERROR):
            assert train.get_global_step() is None
        assert "Multiple variables" in caplog.text

    def test_assert_global_step(self, graph):
        train.assert_global_step(train.create_global_step())

        with pytest.raises(TypeError):
            train.assert_global_step(sg.constant(np.int64(0)))
        with pytest.raises(TypeError):
            train.assert_global_step(sg.Variable(0.0))
        with pytest.raises(TypeError):
            train.assert_global_step(sg.Variable(np.zeros(2, dtype=np.int64)))
