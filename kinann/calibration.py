"""Gradient-descent calibration of symbolic networks.

:func:`calibrate` builds a network's loss and gradient expressions, runs them
through a single :class:`~kinann.optimizer.Optimizer`, compiles one evaluator
and then repeatedly evaluates it against the training examples, updating the
network weights in place.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Sequence, Tuple, Union

import numpy as np

from .errors import InvalidInputError, ShapeError, TrainingDivergedError
from .optimizer import Evaluator, Optimizer
from .symbolic import Layer, Network, Sequential, formula

logger = logging.getLogger(__name__)

LearningRate = Union[float, Callable[[int], float]]
UPDATE_MODES = ("example", "epoch")


@dataclass(frozen=True)
class Example:
    """Measured training pair: network input and expected output."""

    input: Tuple[float, ...]
    target: Tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "input", tuple(float(value) for value in self.input))
        object.__setattr__(self, "target", tuple(float(value) for value in self.target))


def exponential_decay(rate: float, decay: float) -> Callable[[int], float]:
    """Learning-rate schedule ``rate * decay**epoch``."""
    if rate <= 0 or not 0 < decay <= 1:
        raise InvalidInputError("exponential_decay needs rate > 0 and 0 < decay <= 1")

    def schedule(epoch: int) -> float:
        return rate * decay**epoch

    return schedule


@dataclass(frozen=True)
class EpochResult:
    epoch: int
    loss: float
    learning_rate: float
    weights: Dict[str, float]


@dataclass(frozen=True)
class TrainResult:
    epochs: int
    loss: float
    converged: bool
    weights: Dict[str, float]
    losses: Tuple[float, ...] = ()
    elapsed: float = 0.0


@dataclass(frozen=True)
class CalibrationOptions:
    """Training configuration.

    Parameters
    ----------
    max_epochs:
        Upper bound on passes over the examples.
    tolerance:
        Training converges once an epoch lowers the mean loss by less than
        this.  An epoch that raises the loss stops training and restores the
        weights the previous epoch started from.
    learning_rate:
        Constant rate or ``schedule(epoch) -> rate``.
    update:
        ``"example"`` applies every example's gradient immediately,
        ``"epoch"`` applies the mean gradient once per epoch.
    on_epoch, on_train:
        Observers called with :class:`EpochResult` after every epoch and with
        the final :class:`TrainResult`.  Their exceptions abort training.
    """

    max_epochs: int = 100
    tolerance: float = 1e-7
    learning_rate: LearningRate = 0.1
    update: str = "example"
    on_epoch: Callable[[EpochResult], Any] | None = field(default=None, compare=False)
    on_train: Callable[[TrainResult], Any] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.max_epochs, int) or self.max_epochs < 1:
            raise InvalidInputError("max_epochs must be a positive integer")
        if not self.tolerance >= 0:
            raise InvalidInputError("tolerance must be non-negative")
        if not callable(self.learning_rate) and not self.learning_rate > 0:
            raise InvalidInputError("learning_rate must be positive or a schedule")
        if self.update not in UPDATE_MODES:
            raise InvalidInputError(f"update must be one of {UPDATE_MODES}, got {self.update!r}")

    def rate(self, epoch: int) -> float:
        rate = self.learning_rate(epoch) if callable(self.learning_rate) else self.learning_rate
        if not np.isfinite(rate) or rate <= 0:
            raise InvalidInputError(f"learning rate for epoch {epoch} must be positive, got {rate}")
        return float(rate)


class Calibration:
    """Trained network used to correct positions.

    ``offset`` and ``scale`` describe the normalization the network was trained
    in: states are mapped to ``(state - offset) / scale`` before prediction and
    predictions are mapped back.
    """

    def __init__(
        self,
        network: Network,
        result: TrainResult | None = None,
        offset: Sequence[float] | None = None,
        scale: Sequence[float] | None = None,
    ):
        self.network = network
        self.result = result
        self.offset = np.zeros(network.n_in) if offset is None else np.asarray(offset, dtype=float)
        self.scale = np.ones(network.n_in) if scale is None else np.asarray(scale, dtype=float)
        if (offset is not None or scale is not None) and network.n_in != network.n_out:
            raise ShapeError("normalized calibration needs a network with equal input and output width")
        if self.offset.shape != (network.n_in,) or self.scale.shape != (network.n_in,):
            raise ShapeError(f"offset and scale must have {network.n_in} entries")
        if np.any(self.scale == 0):
            raise ValueError("scale entries must be non-zero")

    def to_actual(self, state: Sequence[float]) -> List[float]:
        """Predicted actual state for a commanded (nominal) state."""
        normalized = (np.asarray(state, dtype=float) - self.offset) / self.scale
        if self.network.n_in != self.network.n_out:
            return self.network.predict(list(normalized))
        predicted = np.asarray(self.network.predict(list(normalized)))
        return list(predicted * self.scale + self.offset)

    def to_nominal(
        self,
        actual: Sequence[float],
        max_iterations: int = 50,
        tolerance: float = 1e-10,
    ) -> List[float]:
        """Commanded state whose predicted actual state is ``actual``."""
        target = np.asarray(actual, dtype=float)
        nominal = target.copy()
        for _ in range(max_iterations):
            error = target - np.asarray(self.to_actual(nominal))
            nominal = nominal + error
            if np.max(np.abs(error)) < tolerance:
                break
        return list(nominal)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "Calibration",
            "network": self.network.to_dict(),
            "offset": list(self.offset),
            "scale": list(self.scale),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Calibration":
        network = Network.from_dict(data["network"])
        return cls(network, offset=data.get("offset"), scale=data.get("scale"))


def calibration_examples(frame: Any, count: int = 30, **options: Any) -> List[Example]:
    """Ask ``frame`` for ``count`` examples; the first one is always at home."""
    if count < 1:
        raise InvalidInputError("count must be a positive integer")
    examples = list(frame.calibration_examples(count, **options))
    if len(examples) != count:
        raise InvalidInputError(f"frame produced {len(examples)} examples, expected {count}")
    home = tuple(float(value) for value in frame.home_state())
    if examples[0].input != home:
        raise InvalidInputError(f"first example must start at home {home}, got {examples[0].input}")
    return examples


def compile_training(network: Network) -> Tuple[Evaluator, List[str]]:
    """Evaluator returning ``[loss, *gradients]`` and the weight names in order."""
    gradients = network.gradient_expressions()
    optimizer = Optimizer()
    names = optimizer.optimize(
        [formula(network.loss_expression())] + [formula(expr) for expr in gradients.values()]
    )
    evaluator = optimizer.compile(names)
    logger.debug(
        "training evaluator: %d memo entries for %d gradients",
        len(evaluator),
        len(gradients),
    )
    return evaluator, list(gradients)


def calibrate(
    network: Network,
    examples: Sequence[Example],
    options: CalibrationOptions | None = None,
    **overrides: Any,
) -> Calibration:
    """Train ``network`` on ``examples`` by gradient descent.

    Keyword overrides replace fields of ``options``.  Weights are updated in
    place, and the returned losses never increase from epoch to epoch.  A
    non-finite loss, gradient or weight raises :class:`TrainingDivergedError`
    after restoring the weights the diverging epoch started from.
    """
    options = replace(options or CalibrationOptions(), **overrides)
    examples = list(examples)
    if not examples:
        raise InvalidInputError("calibrate needs at least one example")
    _check_shapes(network, examples)
    weights = network.weights
    if not weights:
        raise InvalidInputError("network has no weights to train")

    evaluator, names = compile_training(network)
    if names != [weight.name for weight in weights]:
        raise ShapeError("gradient order does not match network weights")
    input_names = [str(symbol) for symbol in network.input_symbols]
    target_names = [str(symbol) for symbol in network.target_symbols]

    logger.info(
        "calibrating %d weights on %d examples (update=%s, max_epochs=%d)",
        len(weights),
        len(examples),
        options.update,
        options.max_epochs,
    )
    start = time.perf_counter()
    losses: List[float] = []
    converged = False
    previous: Dict[str, float] = {}
    for epoch in range(options.max_epochs):
        rate = options.rate(epoch)
        snapshot = network.weight_values()
        total = 0.0
        accumulated = np.zeros(len(weights))

        for index, example in enumerate(examples):
            scope: Dict[str, Any] = {weight.name: weight.value for weight in weights}
            scope.update(zip(input_names, example.input))
            scope.update(zip(target_names, example.target))
            with np.errstate(all="ignore"):
                loss, *gradient = evaluator(scope)
            gradient = np.asarray(gradient, dtype=float)
            if not np.isfinite(loss) or not np.all(np.isfinite(gradient)):
                _diverged(network, snapshot, epoch, index, "non-finite loss or gradient")
            total += float(loss)
            if options.update == "example":
                _step(network, weights, gradient, rate, snapshot, epoch, index)
            else:
                accumulated += gradient

        if options.update == "epoch":
            _step(network, weights, accumulated / len(examples), rate, snapshot, epoch, None)

        loss = total / len(examples)
        losses.append(loss)
        if options.on_epoch is not None:
            options.on_epoch(EpochResult(epoch, loss, rate, network.weight_values()))
        if len(losses) > 1:
            improvement = losses[-2] - loss
            if improvement < 0:
                # keep the weights that scored the lower loss
                logger.warning("epoch %d loss rose from %g to %g, stopping", epoch, losses[-2], loss)
                network.set_weights(previous)
                losses.pop()
                break
            if improvement < options.tolerance:
                converged = True
                break
        previous = snapshot

    result = TrainResult(
        epochs=len(losses),
        loss=losses[-1],
        converged=converged,
        weights=network.weight_values(),
        losses=tuple(losses),
        elapsed=time.perf_counter() - start,
    )
    logger.info("calibration finished after %d epochs, loss %g", result.epochs, result.loss)
    if options.on_train is not None:
        options.on_train(result)
    return Calibration(network, result)


def calibrate_frame(
    frame: Any,
    examples: Sequence[Example],
    options: CalibrationOptions | None = None,
    **overrides: Any,
) -> Calibration:
    """Calibrate a frame with one affine layer in normalized coordinates.

    Each state component is centered on the middle of its range and scaled by
    its half range, so positions and deadband values train at the same rate.
    The resulting calibration is assigned to ``frame.calibration``.
    """
    offset, scale = frame.normalization()
    width = len(offset)
    normalized = [
        Example(
            (np.asarray(example.input) - offset) / scale,
            (np.asarray(example.target) - offset) / scale,
        )
        for example in examples
    ]
    network = Sequential(width, [Layer(width)])
    trained = calibrate(network, normalized, options, **overrides)
    calibration = Calibration(network, trained.result, offset=offset, scale=scale)
    frame.calibration = calibration
    return calibration


def _check_shapes(network: Network, examples: Sequence[Example]) -> None:
    for index, example in enumerate(examples):
        if len(example.input) != network.n_in:
            raise ShapeError(f"example {index} has {len(example.input)} inputs, network expects {network.n_in}")
        if len(example.target) != network.n_out:
            raise ShapeError(f"example {index} has {len(example.target)} targets, network expects {network.n_out}")


def _step(
    network: Network,
    weights: Sequence[Any],
    gradient: np.ndarray,
    rate: float,
    snapshot: Dict[str, float],
    epoch: int,
    example: int | None,
) -> None:
    with np.errstate(all="ignore"):
        values = np.array([weight.value for weight in weights]) - rate * gradient
    if not np.all(np.isfinite(values)):
        _diverged(network, snapshot, epoch, example, "non-finite weight update")
    for weight, value in zip(weights, values):
        weight.value = float(value)


def _diverged(
    network: Network,
    snapshot: Dict[str, float],
    epoch: int,
    example: int | None,
    reason: str,
) -> None:
    network.set_weights(snapshot)
    where = f"epoch {epoch}" if example is None else f"epoch {epoch}, example {example}"
    logger.warning("training diverged (%s) at %s", reason, where)
    raise TrainingDivergedError(f"training diverged: {reason} at {where}", epoch, example, snapshot)


__all__ = [
    "LearningRate",
    "UPDATE_MODES",
    "Example",
    "exponential_decay",
    "EpochResult",
    "TrainResult",
    "CalibrationOptions",
    "Calibration",
    "calibration_examples",
    "compile_training",
    "calibrate",
    "calibrate_frame",
]
