"""Symbolic network layers whose loss gradients drive calibration.

Layers map a vector of sympy input expressions to a vector of output
expressions.  A :class:`Sequential` network threads its input symbols through
its layers, builds a mean-squared-error loss against target symbols and
differentiates that loss with respect to every weight.  Numeric weight values
live on :class:`Weight` objects; everything else is derived expressions.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence, Tuple, Union

import numpy as np
import sympy as sp

from .errors import ShapeError
from .optimizer import Evaluator, Optimizer

logger = logging.getLogger(__name__)

Expr = sp.Expr
Activation = Callable[[Expr], Expr]
MapFunction = Union[str, Callable[[Sequence[Expr]], Expr]]

_STEP_FUNCTIONS = (sp.floor, sp.ceiling, sp.sign)
# formula names sympify would not resolve
_MAP_LOCALS = {"ceil": sp.ceiling, "abs": sp.Abs}


def identity(z: Expr) -> Expr:
    return z


def soft_relu(z: Expr) -> Expr:
    return sp.log(1 + sp.exp(z))


def relu(z: Expr) -> Expr:
    return sp.Max(0, z)


def tanh(z: Expr) -> Expr:
    return sp.tanh(z)


def sigmoid(z: Expr) -> Expr:
    return 1 / (1 + sp.exp(-z))


ACTIVATIONS: Dict[str, Activation] = {
    "identity": identity,
    "soft_relu": soft_relu,
    "relu": relu,
    "tanh": tanh,
    "sigmoid": sigmoid,
}


def activation_from_name(name: str) -> Activation:
    try:
        return ACTIVATIONS[name]
    except KeyError as exc:
        raise ValueError(f"Unsupported activation '{name}'.") from exc


def formula(expr: Expr) -> str:
    """Formula text for the optimizer."""
    return sp.sstr(expr)


def _is_step_slope(expr: Expr) -> bool:
    return isinstance(expr, sp.Derivative) and isinstance(expr.expr, _STEP_FUNCTIONS)


def _drop_singular(expr: Expr) -> Expr:
    """Zero out impulses and step-function slopes, which vanish almost everywhere."""
    expr = expr.replace(sp.DiracDelta, lambda *args: sp.S.Zero)
    # slopes with a compound argument arrive wrapped as Subs(Derivative(f(xi), xi), xi, arg)
    expr = expr.replace(
        lambda e: isinstance(e, sp.Subs) and _is_step_slope(e.expr),
        lambda e: sp.S.Zero,
    )
    return expr.replace(_is_step_slope, lambda e: sp.S.Zero)


def _make_symbols(prefix: str, count: int, *, start: int = 0) -> Tuple[sp.Symbol, ...]:
    return tuple(sp.Symbol(f"{prefix}{i}", real=True) for i in range(start, start + count))


@dataclass
class Weight:
    """Trainable scalar owned by one layer."""

    name: str
    value: float = 0.0

    @property
    def symbol(self) -> sp.Symbol:
        return sp.Symbol(self.name, real=True)


class Layer:
    """Fully connected layer ``activation(W x + b)``.

    Parameters
    ----------
    n_out:
        Number of outputs.
    activation:
        Name of the nonlinearity applied to every affine output.
    initializer:
        ``"identity"`` starts with an identity-like matrix and zero bias so an
        untrained layer passes its inputs through; ``"random"`` draws the
        matrix from a normal distribution scaled by ``1/sqrt(n_in)``.
    seed:
        Seed for ``initializer="random"``.
    weights:
        Explicit ``{name: value}`` for restoring a trained layer.
    """

    type = "Layer"

    def __init__(
        self,
        n_out: int,
        activation: str = "identity",
        initializer: str = "identity",
        seed: int | None = None,
        weights: Dict[str, float] | None = None,
    ):
        if n_out < 1:
            raise ValueError("n_out must be a positive integer")
        if initializer not in ("identity", "random"):
            raise ValueError(f"Unsupported initializer '{initializer}'.")
        self.n_out = n_out
        self.activation = activation
        self._activation = activation_from_name(activation)
        self.initializer = initializer
        self.seed = seed
        self.index: int | None = None
        self.n_in: int | None = None
        self.weights: List[Weight] = []
        self._initial = dict(weights or {})

    def connect(self, index: int, n_in: int) -> None:
        """Bind the layer to its position and input width, creating its weights."""
        if self.index is not None:
            raise ValueError("layer already belongs to a network")
        if n_in < 1:
            raise ValueError("n_in must be a positive integer")
        rng = np.random.default_rng(self.seed)
        weights = []
        for row in range(self.n_out):
            for col in range(n_in):
                if self.initializer == "random":
                    value = float(rng.normal(scale=1 / np.sqrt(n_in)))
                else:
                    value = 1.0 if row == col else 0.0
                weights.append(Weight(f"w{index}r{row}c{col}", value))
        weights.extend(Weight(f"w{index}b{row}", 0.0) for row in range(self.n_out))

        names = {weight.name for weight in weights}
        unknown = sorted(set(self._initial) - names)
        if unknown:
            raise ValueError(f"unknown weight(s) for layer {index}: {', '.join(unknown)}")
        for weight in weights:
            if weight.name in self._initial:
                weight.value = float(self._initial[weight.name])

        self.index, self.n_in, self.weights = index, n_in, weights

    def matrix(self) -> List[List[Weight]]:
        n_in = self._require_connected()
        return [self.weights[row * n_in : (row + 1) * n_in] for row in range(self.n_out)]

    def bias(self) -> List[Weight]:
        n_in = self._require_connected()
        return self.weights[self.n_out * n_in :]

    def expressions(self, inputs: Sequence[Expr]) -> Tuple[Expr, ...]:
        n_in = self._require_connected()
        if len(inputs) != n_in:
            raise ShapeError(f"layer {self.index} expects {n_in} inputs, got {len(inputs)}")
        return tuple(
            self._activation(
                sum(weight.symbol * inputs[col] for col, weight in enumerate(row)) + bias.symbol
            )
            for row, bias in zip(self.matrix(), self.bias())
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "n_out": self.n_out,
            "activation": self.activation,
            "initializer": self.initializer,
            "weights": {weight.name: weight.value for weight in self.weights},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Layer":
        return cls(
            data["n_out"],
            activation=data.get("activation", "identity"),
            initializer=data.get("initializer", "identity"),
            weights=data.get("weights"),
        )

    def _require_connected(self) -> int:
        if self.n_in is None:
            raise ValueError("layer is not connected to a network")
        return self.n_in


class MapLayer:
    """Weightless layer computing one fixed expression per output.

    Each entry of ``fmap`` is either formula text over the layer inputs
    ``x0, x1, ...`` (e.g. ``"x0*x1"``) or a callable receiving the whole input
    vector.  Only formula text can be serialized.
    """

    type = "MapLayer"

    def __init__(self, fmap: Sequence[MapFunction]):
        if not fmap:
            raise ValueError("fmap must not be empty")
        self.fmap = list(fmap)
        self.n_out = len(self.fmap)
        self.index: int | None = None
        self.n_in: int | None = None
        self.weights: List[Weight] = []

    def connect(self, index: int, n_in: int) -> None:
        if self.index is not None:
            raise ValueError("layer already belongs to a network")
        self.index, self.n_in = index, n_in

    def expressions(self, inputs: Sequence[Expr]) -> Tuple[Expr, ...]:
        if self.n_in is not None and len(inputs) != self.n_in:
            raise ShapeError(f"layer {self.index} expects {self.n_in} inputs, got {len(inputs)}")
        names = dict(_MAP_LOCALS)
        names.update((f"x{i}", value) for i, value in enumerate(inputs))
        return tuple(
            sp.sympify(fn, locals=names) if isinstance(fn, str) else fn(inputs)
            for fn in self.fmap
        )

    def to_dict(self) -> Dict[str, Any]:
        if not all(isinstance(fn, str) for fn in self.fmap):
            raise ValueError("only MapLayer formulas given as text can be serialized")
        return {"type": self.type, "fmap": list(self.fmap)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MapLayer":
        return cls(data["fmap"])


_LAYER_TYPES = {"Layer": Layer, "MapLayer": MapLayer}


class Network:
    """Ordered layers plus the loss and gradient expressions built from them."""

    type = "Network"

    def __init__(self, n_in: int):
        if n_in < 1:
            raise ValueError("n_in must be a positive integer")
        self.n_in = n_in
        self.layers: List[Union[Layer, MapLayer]] = []
        self.input_symbols = _make_symbols("x", n_in)
        self._cache: Dict[str, Any] = {}

    def add(self, layer: Union[Layer, MapLayer]) -> Union[Layer, MapLayer]:
        layer.connect(len(self.layers), self.n_out)
        self.layers.append(layer)
        self._cache.clear()
        return layer

    @property
    def n_out(self) -> int:
        return self.layers[-1].n_out if self.layers else self.n_in

    @property
    def target_symbols(self) -> Tuple[sp.Symbol, ...]:
        return _make_symbols("yt", self.n_out)

    @property
    def weights(self) -> List[Weight]:
        return [weight for layer in self.layers for weight in layer.weights]

    def weight(self, name: str) -> Weight:
        for weight in self.weights:
            if weight.name == name:
                return weight
        raise KeyError(name)

    def weight_values(self) -> Dict[str, float]:
        return {weight.name: weight.value for weight in self.weights}

    def set_weights(self, values: Dict[str, float]) -> None:
        weights = {weight.name: weight for weight in self.weights}
        unknown = sorted(set(values) - set(weights))
        if unknown:
            raise ValueError(f"unknown weight(s): {', '.join(unknown)}")
        for name, value in values.items():
            weights[name].value = float(value)

    def expressions(self, inputs: Sequence[Expr] | None = None) -> Tuple[Expr, ...]:
        raise NotImplementedError

    def prediction(self) -> Tuple[Expr, ...]:
        return self._cached("prediction", lambda: self.expressions())

    def loss_expression(self) -> Expr:
        """Mean over outputs of ``(prediction_i - yt_i)**2``."""

        def build() -> Expr:
            prediction = self.prediction()
            targets = self.target_symbols
            if len(prediction) != len(targets):
                raise ShapeError(f"prediction has {len(prediction)} outputs, targets have {len(targets)}")
            return sum((p - t) ** 2 for p, t in zip(prediction, targets)) / sp.Integer(len(targets))

        return self._cached("loss", build)

    def gradient_expressions(self) -> Dict[str, Expr]:
        """Exact partial derivative of the loss for every weight, in weight order.

        Slopes of step functions (``floor``, ``ceiling``, ``sign``) and impulse
        terms are zero almost everywhere and are dropped, so every gradient
        renders as formula text the optimizer accepts.
        """

        def build() -> Dict[str, Expr]:
            loss = self.loss_expression()
            return {
                weight.name: _drop_singular(sp.diff(loss, weight.symbol))
                for weight in self.weights
            }

        return self._cached("gradients", build)

    def forward_evaluator(self) -> Evaluator:
        """Compiled evaluator returning the prediction vector."""

        def build() -> Evaluator:
            optimizer = Optimizer()
            names = optimizer.optimize([formula(expr) for expr in self.prediction()])
            return optimizer.compile(names)

        return self._cached("forward", build)

    def predict(self, inputs: Sequence[float]) -> List[float]:
        if len(inputs) != self.n_in:
            raise ShapeError(f"expected {self.n_in} inputs, got {len(inputs)}")
        scope: Dict[str, Any] = self.weight_values()
        scope.update((str(symbol), value) for symbol, value in zip(self.input_symbols, inputs))
        return [float(value) for value in self.forward_evaluator()(scope)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "n_in": self.n_in,
            "layers": [layer.to_dict() for layer in self.layers],
        }

    def to_json(self, **kwargs: Any) -> str:
        return json.dumps(self.to_dict(), **kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Network":
        network_type = _NETWORK_TYPES.get(data.get("type", "Sequential"))
        if network_type is None:
            raise ValueError(f"Unsupported network type '{data.get('type')}'.")
        layers = []
        for layer_data in data.get("layers", []):
            layer_type = _LAYER_TYPES.get(layer_data.get("type"))
            if layer_type is None:
                raise ValueError(f"Unsupported layer type '{layer_data.get('type')}'.")
            layers.append(layer_type.from_dict(layer_data))
        return network_type(data["n_in"], layers)

    @classmethod
    def from_json(cls, text: str) -> "Network":
        return cls.from_dict(json.loads(text))

    def _cached(self, key: str, build: Callable[[], Any]) -> Any:
        if key not in self._cache:
            self._cache[key] = build()
            logger.debug("built %s for %s with %d weights", key, self.type, len(self.weights))
        return self._cache[key]


class Sequential(Network):
    """Layers applied one after another; the last layer's outputs are the prediction."""

    type = "Sequential"

    def __init__(self, n_in: int, layers: Sequence[Union[Layer, MapLayer]] = ()):
        super().__init__(n_in)
        for layer in layers:
            self.add(layer)

    def expressions(self, inputs: Sequence[Expr] | None = None) -> Tuple[Expr, ...]:
        values: Tuple[Expr, ...] = tuple(self.input_symbols if inputs is None else inputs)
        if len(values) != self.n_in:
            raise ShapeError(f"expected {self.n_in} inputs, got {len(values)}")
        for layer in self.layers:
            values = tuple(layer.expressions(values))
        return values


_NETWORK_TYPES = {"Sequential": Sequential}


__all__ = [
    "Expr",
    "Activation",
    "MapFunction",
    "identity",
    "soft_relu",
    "relu",
    "tanh",
    "sigmoid",
    "ACTIVATIONS",
    "activation_from_name",
    "formula",
    "Weight",
    "Layer",
    "MapLayer",
    "Network",
    "Sequential",
]
