"""
Tests for variables and the operations updating them.
"""
import numpy as np
import pytest

import simple_graph as sg
from simple_graph import training_ops


@pytest.fixture
def graph():
    g = sg.Graph()
    with g.as_default():
        yield g


@pytest.fixture(params=[False, True], ids=["ref", "resource"])
def use_resource(request):
    return request.param


class TestBasic:
    def test_defaults(self, graph):
        v = sg.Variable(np.zeros((2, 3)))

        assert type(v) is sg.Variable
        assert v.name == "Variable:0"
        assert v.op.name == "Variable"
        assert v.op.type == "VariableV2"
        assert v.dtype == np.float64
        assert v.shape == (2, 3)
        assert v.get_shape() == (2, 3)
        assert v.trainable is True
        assert v.graph is graph
        assert v.initializer.name == "Variable/Assign"
        assert v.value().op.name == "Variable/read"
        assert v.value() is v.value()

    def test_use_resource(self, graph):
        v = sg.Variable(1.0, use_resource=True)

        assert isinstance(v, sg.ResourceVariable)
        assert v.op.type == "VarHandleOp"
        assert v.initializer.type == "AssignVariableOp"
        assert v.initializer.outputs == []

    def test_unique_names(self, graph):
        a = sg.Variable(1.0, name="w")
        b = sg.Variable(1.0, name="w")
        with sg.name_scope("layer"):
            c = sg.Variable(1.0, name="w")

        assert a.name == "w:0"
        assert b.name == "w_1:0"
        assert c.name == "layer/w:0"

    def test_dtype(self, graph):
        assert sg.Variable(1.0).dtype == np.float32
        assert sg.Variable(1.0, dtype=np.float64).dtype == np.float64
        assert sg.Variable(np.int64(3)).dtype == np.int64

    def test_initial_value_required(self, graph):
        with pytest.raises(ValueError):
            sg.Variable()

    def test_initial_value_needs_a_shape(self, graph):
        with pytest.raises(ValueError):
            sg.Variable(sg.placeholder(np.float32))

    def test_callable_initial_value(self, graph):
        scopes = []

        def init():
            scopes.append(sg.constant(0.0).op.name)
            return np.full(3, 2.0)

        v = sg.Variable(init, name="v")

        assert scopes == ["v/Const"]
        with sg.Session() as sess:
            sess.run(v.initializer)
            np.testing.assert_array_equal(sess.run(v), [2.0, 2.0, 2.0])

    def test_initial_value_is_not_aliased(self, graph):
        data = np.zeros(2)
        v = sg.Variable(data)
        with sg.Session() as sess:
            sess.run(v.initializer)
            sess.run(v.assign_add(np.ones(2)))
            sess.run(v.initial_value)

        np.testing.assert_array_equal(data, [0.0, 0.0])

    def test_ignores_control_dependencies(self, graph):
        a = sg.constant(1.0)
        with sg.control_dependencies([a]):
            v = sg.Variable(1.0)

        assert v.initializer.control_inputs == []


class TestCollections:
    def test_default(self, graph):
        a = sg.Variable(1.0)
        b = sg.Variable(1.0, trainable=False)

        assert sg.global_variables() == [a, b]
        assert sg.trainable_variables() == [a]
        assert graph.trainable_variables() == [a]
        assert graph.global_variables() == [a, b]

    def test_explicit_collections(self, graph):
        a = sg.Variable(1.0, collections=[sg.GraphKeys.LOCAL_VARIABLES], trainable=False)
        b = sg.Variable(1.0, collections=[sg.GraphKeys.LOCAL_VARIABLES])

        assert sg.global_variables() == []
        assert sg.local_variables() == [a, b]
        assert sg.trainable_variables() == [b]

        with pytest.raises(ValueError):
            sg.Variable(1.0, collections="not a list")

    def test_scope(self, graph):
        with sg.name_scope("first"):
            a = sg.Variable(1.0)
        with sg.name_scope("second"):
            b = sg.Variable(1.0)

        assert sg.trainable_variables("first") == [a]
        assert sg.global_variables("second") == [b]

    def test_arithmetic(self, graph):
        v = sg.Variable(np.array([1.0, 2.0]))
        with sg.Session() as sess:
            sess.run(v.initializer)
            np.testing.assert_array_equal(sess.run(v * 2.0 + v), [3.0, 6.0])
            np.testing.assert_array_equal(sess.run(-v), [-1.0, -2.0])


class TestInitialization:
    def test_uninitialized(self, graph, use_resource):
        v = sg.Variable(1.0, use_resource=use_resource)
        with sg.Session() as sess:
            with pytest.raises(sg.FailedPreconditionError) as e:
                sess.run(v)
            assert e.value.op is v.value().op

            with pytest.raises(sg.FailedPreconditionError):
                sess.run(v.assign_add(1.0))

    def test_is_variable_initialized(self, graph, use_resource):
        v = sg.Variable(1.0, use_resource=use_resource)
        initialized = sg.is_variable_initialized(v)
        with sg.Session() as sess:
            assert not sess.run(initialized)
            sess.run(v.initializer)
            assert sess.run(initialized)

    def test_global_variables_initializer(self, graph):
        a = sg.Variable(1.0)
        b = sg.Variable(2.0, trainable=False)
        c = sg.Variable(3.0, collections=[sg.GraphKeys.LOCAL_VARIABLES])
        init = sg.global_variables_initializer()

        assert init.name == "init"
        with sg.Session() as sess:
            sess.run(init)
            assert sess.run([a, b]) == [1.0, 2.0]
            with pytest.raises(sg.FailedPreconditionError):
                sess.run(c)
            sess.run(sg.local_variables_initializer())
            assert sess.run(c) == 3.0

    def test_empty_initializer(self, graph):
        init = sg.variables_initializer([])
        assert init.type == "NoOp"
        with sg.Session() as sess:
            assert sess.run(init) is None

    def test_values_survive_runs(self, graph):
        v = sg.Variable(0.0)
        increment = v.assign_add(1.0)
        with sg.Session() as sess:
            sess.run(v.initializer)
            for _ in range(3):
                sess.run(increment)
            assert sess.run(v) == 3.0


class TestAssign:
    def test_assign(self, graph, use_resource):
        v = sg.Variable(np.zeros(2), use_resource=use_resource)
        with sg.Session() as sess:
            sess.run(v.initializer)
            np.testing.assert_array_equal(sess.run(v.assign([1.0, 2.0])), [1.0, 2.0])
            np.testing.assert_array_equal(sess.run(v.assign_add([1.0, 1.0])), [2.0, 3.0])
            np.testing.assert_array_equal(sess.run(v.assign_sub([0.5, 0.5])), [1.5, 2.5])
            np.testing.assert_array_equal(sess.run(v), [1.5, 2.5])

    def test_no_read_value(self, graph, use_resource):
        v = sg.Variable(np.zeros(2), use_resource=use_resource)
        op = v.assign([1.0, 1.0], read_value=False)

        assert isinstance(op, sg.Operation)
        with sg.Session() as sess:
            sess.run(v.initializer)
            assert sess.run(op) is None
            np.testing.assert_array_equal(sess.run(v), [1.0, 1.0])

    def test_resource_updates_have_no_outputs(self, graph):
        v = sg.Variable(np.zeros(2), use_resource=True)
        op = v.assign_add([1.0, 1.0], read_value=False)

        assert op.type == "AssignAddVariableOp"
        assert op.outputs == []

    def test_shape_mismatch(self, graph, use_resource):
        v = sg.Variable(np.zeros(2), use_resource=use_resource)
        x = sg.placeholder(np.float64)
        assign = v.assign(x)
        with sg.Session() as sess:
            with pytest.raises(sg.InvalidArgumentError):
                sess.run(assign, {x: np.zeros(3)})

    def test_dtype_mismatch(self, graph):
        v = sg.Variable(np.zeros(2))
        with pytest.raises(ValueError):
            v.assign(sg.constant(np.zeros(2, dtype=np.float32)))

    def test_reads_see_updates(self, graph, use_resource):
        v = sg.Variable(np.zeros(2), use_resource=use_resource)
        with sg.Session() as sess:
            sess.run(v.initializer)
            read = v.value()
            before = sess.run(read)
            sess.run(v.assign_add([1.0, 1.0]))
            after = sess.run(read)

        np.testing.assert_array_equal(before, [0.0, 0.0])
        np.testing.assert_array_equal(after, [1.0, 1.0])


class TestTrainingOps:
    def test_apply_gradient_descent(self, graph):
        v = sg.Variable(np.array([1.0, 2.0]))
        updated = training_ops.apply_gradient_descent(v, 0.5, np.array([2.0, 2.0]))
        with sg.Session() as sess:
            sess.run(v.initializer)
            np.testing.assert_array_equal(sess.run(updated), [0.0, 1.0])
            np.testing.assert_array_equal(sess.run(v), [0.0, 1.0])

    def test_resource_apply_gradient_descent(self, graph):
        v = sg.Variable(np.array([1.0, 2.0]), use_resource=True)
        op = training_ops.resource_apply_gradient_descent(v.handle, 0.5, np.array([2.0, 2.0]))

        assert isinstance(op, sg.Operation)
        assert op.outputs == []
        with sg.Session() as sess:
            sess.run(v.initializer)
            sess.run(op)
            np.testing.assert_array_equal(sess.run(v), [0.0, 1.0])

    def test_gradient_shape_mismatch(self, graph):
        v = sg.Variable(np.zeros(2))
        delta = sg.placeholder(np.float64)
        update = training_ops.apply_gradient_descent(v, 0.5, delta)
        with sg.Session() as sess:
            sess.run(v.initializer)
            with pytest.raises(sg.InvalidArgumentError):
                sess.run(update, {delta: np.zeros(3)})

    def test_not_a_variable(self, graph):
        with pytest.raises(TypeError):
            training_ops.apply_gradient_descent(sg.constant(np.zeros(2)), 0.5, np.zeros(2))

    @pytest.mark.parametrize("use_nesterov", [False, True])
    def test_apply_momentum(self, graph, use_nesterov):
        v = sg.Variable(np.array([1.0, 2.0]))
        accum = sg.Variable(np.array([1.0, 1.0]), trainable=False)
        update = training_ops.apply_momentum(v, accum, 0.1, np.array([1.0, -1.0]), 0.9,
                                             use_nesterov=use_nesterov)
        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            sess.run(update)
            accum_value, v_value = sess.run([accum, v])

        np.testing.assert_allclose(accum_value, [1.9, -0.1])
        if use_nesterov:
            np.testing.assert_allclose(v_value, [1.0 - 0.1 - 0.1 * 0.9 * 1.9, 2.0 + 0.1 + 0.1 * 0.9 * 0.1])
        else:
            np.testing.assert_allclose(v_value, [1.0 - 0.19, 2.0 + 0.01])

    def test_sparse_apply_momentum(self, graph, use_resource):
        v = sg.Variable(np.ones((4, 2)), use_resource=use_resource)
        accum = sg.Variable(np.zeros((4, 2)), trainable=False, use_resource=use_resource)
        grad = np.array([[1.0, 1.0], [2.0, 2.0]])
        apply = (training_ops.resource_sparse_apply_momentum if use_resource
                 else training_ops.sparse_apply_momentum)
        update = apply(v, accum, 0.5, grad, [3, 1], 0.9)

        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            sess.run(update)
            v_value, accum_value = sess.run([v, accum])

        np.testing.assert_allclose(v_value, [[1, 1], [0, 0], [1, 1], [0.5, 0.5]])
        np.testing.assert_allclose(accum_value, [[0, 0], [2, 2], [0, 0], [1, 1]])

    def test_scatter(self, graph):
        ref = sg.Variable(np.zeros((3, 2)))
        res = sg.Variable(np.zeros((3, 2)), use_resource=True)
        updates = np.ones((3, 2))
        sub = training_ops.scatter_sub(ref, [0, 2, 0], updates)
        add = training_ops.resource_scatter_add(res, [0, 2, 0], updates)

        with sg.Session() as sess:
            sess.run(sg.global_variables_initializer())
            np.testing.assert_array_equal(sess.run(sub), [[-2, -2], [0, 0], [-1, -1]])
            sess.run(add)
            np.testing.assert_array_equal(sess.run(res), [[2, 2], [0, 0], [1, 1]])

    def test_scatter_out_of_range(self, graph):
        ref = sg.Variable(np.zeros((3, 2)))
        sub = training_ops.scatter_sub(ref, [3], np.ones((1, 2)))
        with sg.Session() as sess:
            sess.run(ref.initializer)
            with pytest.raises(sg.InvalidArgumentError) as e:
                sess.run(sub)

        assert e.value.op is sub.op

    @pytest.mark.parametrize("use_locking", [False, True])
    def test_locking_with_threads(self, graph, use_resource, use_locking):
        v = sg.Variable(np.zeros(16), use_resource=use_resource)
        updates = [
            training_ops.apply_gradient_descent(v, 1.0, -np.ones(16), use_locking=use_locking)
            for _ in range(64)
        ]
        config = sg.SessionConfig(inter_op_parallelism_threads=8)
        with sg.Session(config=config) as sess:
            sess.run(v.initializer)
            sess.run(sg.group(*updates))
            result = sess.run(v)

        if use_locking:
            np.testing.assert_array_equal(result, np.full(16, 64.0))
        else:
            # without locks concurrent updates may get lost
            assert np.all(result <= 64.0)
