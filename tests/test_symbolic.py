"""Tests for symbolic layers, networks and their derivatives."""

import numpy as np
import pytest
import sympy as sp

from kinann.calibration import compile_training
from kinann.errors import ShapeError
from kinann.expression import parse
from kinann.optimizer import Optimizer
from kinann.symbolic import (
    Layer,
    MapLayer,
    Network,
    Sequential,
    Weight,
    activation_from_name,
    formula,
)


def _symbol(name):
    return sp.Symbol(name, real=True)


class TestLayer:
    """Tests for Layer and MapLayer."""

    def test_weight_names_and_identity_start(self):
        network = Sequential(2, [Layer(2)])
        assert [w.name for w in network.weights] == [
            "w0r0c0",
            "w0r0c1",
            "w0r1c0",
            "w0r1c1",
            "w0b0",
            "w0b1",
        ]
        assert network.weight_values() == {
            "w0r0c0": 1.0,
            "w0r0c1": 0.0,
            "w0r1c0": 0.0,
            "w0r1c1": 1.0,
            "w0b0": 0.0,
            "w0b1": 0.0,
        }

    def test_affine_expressions(self):
        network = Sequential(2, [Layer(1)])
        x0, x1 = network.input_symbols
        expected = _symbol("w0r0c0") * x0 + _symbol("w0r0c1") * x1 + _symbol("w0b0")
        assert network.expressions() == (expected,)

    def test_activation_wraps_affine_output(self):
        network = Sequential(1, [Layer(1, activation="tanh")])
        (x0,) = network.input_symbols
        assert network.expressions() == (sp.tanh(_symbol("w0r0c0") * x0 + _symbol("w0b0")),)

    def test_relu_activation(self):
        network = Sequential(1, [Layer(1, activation="relu")])
        (x0,) = network.input_symbols
        assert network.expressions() == (sp.Max(0, _symbol("w0r0c0") * x0 + _symbol("w0b0")),)
        assert network.predict([-2.0]) == [0.0]
        assert network.predict([3.0]) == [3.0]

    def test_random_initializer_is_seeded(self):
        first = Sequential(3, [Layer(2, initializer="random", seed=7)]).weight_values()
        second = Sequential(3, [Layer(2, initializer="random", seed=7)]).weight_values()
        assert first == second
        assert first["w0b0"] == 0.0
        assert len(set(first.values())) > 2

    def test_invalid_layer_configuration(self):
        with pytest.raises(ValueError):
            Layer(0)
        with pytest.raises(ValueError):
            Layer(2, activation="swish")
        with pytest.raises(ValueError):
            Layer(2, initializer="zeros")
        with pytest.raises(ValueError):
            activation_from_name("softmax")

    def test_layer_belongs_to_one_network(self):
        layer = Layer(2)
        Sequential(2, [layer])
        with pytest.raises(ValueError):
            Sequential(2, [layer])

    def test_layer_input_arity(self):
        layer = Sequential(2, [Layer(2)]).layers[0]
        with pytest.raises(ShapeError):
            layer.expressions([_symbol("x0")])

    def test_map_layer(self):
        network = Sequential(2, [MapLayer(["x0*x1", "x0 + x1", lambda x: x[0] - x[1]])])
        assert network.n_out == 3
        assert network.weights == []
        np.testing.assert_allclose(network.predict([2.0, 3.0]), [6.0, 5.0, -1.0])


class TestNetwork:
    """Tests for Network/Sequential composition, loss and gradients."""

    def test_layers_are_threaded_in_order(self):
        network = Sequential(2, [Layer(3), Layer(1)])
        assert network.n_out == 1
        assert network.layers[1].n_in == 3
        assert [w.name for w in network.weights][-4:] == ["w1r0c0", "w1r0c1", "w1r0c2", "w1b0"]

    def test_expressions_for_other_inputs(self):
        network = Sequential(1, [Layer(1)])
        u = sp.Symbol("u")
        assert network.expressions([u]) == (_symbol("w0r0c0") * u + _symbol("w0b0"),)
        with pytest.raises(ShapeError):
            network.expressions([u, u])

    def test_base_network_has_no_expressions(self):
        with pytest.raises(NotImplementedError):
            Network(2).expressions()

    def test_loss_is_mean_squared_error(self):
        network = Sequential(2, [Layer(2)])
        p0, p1 = network.prediction()
        y0, y1 = network.target_symbols
        assert sp.simplify(network.loss_expression() - ((p0 - y0) ** 2 + (p1 - y1) ** 2) / 2) == 0

    def test_add_invalidates_expressions(self):
        network = Sequential(2, [Layer(2)])
        assert len(network.prediction()) == 2
        network.add(Layer(1))
        assert len(network.prediction()) == 1
        assert len(network.gradient_expressions()) == len(network.weights)

    def test_expressions_are_reproducible(self):
        first = Sequential(2, [Layer(2, activation="sigmoid"), Layer(2)])
        second = Sequential(2, [Layer(2, activation="sigmoid"), Layer(2)])
        texts = [formula(expr) for expr in first.gradient_expressions().values()]
        assert texts == [formula(expr) for expr in second.gradient_expressions().values()]

        opt = Optimizer()
        names = opt.optimize(texts)
        size = len(opt)
        assert opt.optimize([formula(expr) for expr in second.gradient_expressions().values()]) == names
        assert len(opt) == size

    def test_gradients_share_residual_subexpressions(self):
        network = Sequential(2, [Layer(2)])
        opt = Optimizer()
        gradients = network.gradient_expressions()
        names = opt.optimize(
            [formula(network.loss_expression())] + [formula(expr) for expr in gradients.values()]
        )
        bias0, bias1 = names[5], names[6]
        assert bias0 != bias1
        assert f"({bias0})" in opt.memo[names[0]]
        assert f"({bias1})" in opt.memo[names[0]]

    def test_gradients_match_finite_differences(self):
        network = Sequential(2, [Layer(2, activation="tanh", initializer="random", seed=3), Layer(1)])
        evaluator, names = compile_training(network)
        base = {"x0": 0.4, "x1": -0.9, "yt0": 0.25}

        def loss_at(values):
            scope = dict(base, **values)
            return float(evaluator(scope)[0])

        values = network.weight_values()
        scope = dict(base, **values)
        gradient = evaluator(scope)[1:]
        h = 1e-6
        for name, analytic in zip(names, gradient):
            plus = dict(values, **{name: values[name] + h})
            minus = dict(values, **{name: values[name] - h})
            numeric = (loss_at(plus) - loss_at(minus)) / (2 * h)
            assert analytic == pytest.approx(numeric, rel=1e-5, abs=1e-8)

    def test_piecewise_gradients_are_formulas(self):
        network = Sequential(
            2,
            [
                Layer(2, initializer="random", seed=5),
                MapLayer(["Abs(x0) + floor(x1)", "Min(x0, x1) + sign(x0)*ceil(x1) + Max(x0, 0)"]),
            ],
        )
        evaluator, names = compile_training(network)
        for expr in network.gradient_expressions().values():
            text = formula(expr)
            assert "DiracDelta" not in text
            assert "Derivative" not in text
            assert "Subs" not in text
            parse(text)
        scope = dict(network.weight_values(), x0=0.3, x1=-1.4, yt0=0.5, yt1=-0.5)
        assert all(np.isfinite(value) for value in evaluator(scope))

    def test_predict(self):
        network = Sequential(2, [Layer(2)])
        assert network.predict([1.5, -2.0]) == [1.5, -2.0]
        network.set_weights({"w0b1": 0.5, "w0r0c0": 2.0})
        assert network.predict([1.5, -2.0]) == [3.0, -1.5]
        with pytest.raises(ShapeError):
            network.predict([1.0])
        with pytest.raises(ValueError):
            network.set_weights({"w9b0": 1.0})

    def test_weight_lookup(self):
        network = Sequential(1, [Layer(1)])
        assert network.weight("w0b0") == Weight("w0b0", 0.0)
        with pytest.raises(KeyError):
            network.weight("nope")


class TestSerialization:
    """Tests for network dict/JSON round trips."""

    def test_json_round_trip_preserves_weights_and_predictions(self):
        network = Sequential(
            3,
            [Layer(4, activation="soft_relu", initializer="random", seed=11), MapLayer(["x0 - x3", "x1*x2", "x2", "x3/2"]), Layer(2)],
        )
        network.set_weights({"w2b1": 0.125})
        restored = Network.from_json(network.to_json())
        assert isinstance(restored, Sequential)
        assert restored.weight_values() == network.weight_values()
        inputs = [0.3, -1.2, 2.5]
        assert restored.predict(inputs) == network.predict(inputs)

    def test_callable_map_layer_cannot_be_serialized(self):
        network = Sequential(1, [MapLayer([lambda x: 2 * x[0]])])
        with pytest.raises(ValueError):
            network.to_dict()

    def test_unknown_types(self):
        with pytest.raises(ValueError):
            Network.from_dict({"type": "Recurrent", "n_in": 1, "layers": []})
        with pytest.raises(ValueError):
            Network.from_dict({"type": "Sequential", "n_in": 1, "layers": [{"type": "Conv"}]})

    def test_unknown_weight_names_are_rejected(self):
        with pytest.raises(ValueError):
            Sequential(1, [Layer(1, weights={"w0r5c0": 1.0})])
