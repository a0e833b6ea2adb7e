"""Tests for gradient-descent calibration."""

import math

import numpy as np
import pytest

from kinann.calibration import (
    Calibration,
    CalibrationOptions,
    Example,
    calibrate,
    exponential_decay,
)
from kinann.errors import InvalidInputError, ShapeError, TrainingDivergedError
from kinann.symbolic import Layer, MapLayer, Sequential


def _line_examples():
    return [Example([x], [2 * x + 1]) for x in (-1.0, -0.5, 0.0, 0.5, 1.0)]


class TestCalibrate:
    """Tests for calibrate() on small linear problems."""

    def test_fits_line_with_epoch_updates(self):
        network = Sequential(1, [Layer(1)])
        calibration = calibrate(
            network,
            _line_examples(),
            update="epoch",
            learning_rate=0.5,
            tolerance=1e-12,
            max_epochs=500,
        )
        assert isinstance(calibration, Calibration)
        assert calibration.result.converged
        assert network.weight("w0r0c0").value == pytest.approx(2.0, abs=1e-4)
        assert network.weight("w0b0").value == pytest.approx(1.0, abs=1e-4)
        assert calibration.to_actual([0.25]) == pytest.approx([1.5], abs=1e-4)

    def test_epoch_losses_do_not_increase(self):
        network = Sequential(1, [Layer(1)])
        result = calibrate(network, _line_examples(), update="epoch", learning_rate=0.5, max_epochs=30).result
        losses = result.losses
        assert len(losses) == result.epochs
        assert all(later <= earlier for earlier, later in zip(losses, losses[1:]))
        assert result.loss == losses[-1]

    def test_fits_line_with_example_updates(self):
        network = Sequential(1, [Layer(1)])
        result = calibrate(network, _line_examples(), learning_rate=0.1, tolerance=1e-12, max_epochs=500).result
        assert result.converged
        assert result.weights["w0r0c0"] == pytest.approx(2.0, abs=1e-3)
        assert result.weights["w0b0"] == pytest.approx(1.0, abs=1e-3)

    def test_options_object_and_overrides(self):
        options = CalibrationOptions(max_epochs=3, tolerance=0.0)
        result = calibrate(Sequential(1, [Layer(1)]), _line_examples(), options).result
        assert result.epochs == 3
        assert not result.converged
        result = calibrate(Sequential(1, [Layer(1)]), _line_examples(), options, max_epochs=2).result
        assert result.epochs == 2

    def test_callbacks(self):
        epochs, results = [], []
        calibrate(
            Sequential(1, [Layer(1)]),
            _line_examples(),
            max_epochs=4,
            tolerance=0.0,
            learning_rate=exponential_decay(0.1, 0.5),
            on_epoch=epochs.append,
            on_train=results.append,
        )
        assert [e.epoch for e in epochs] == [0, 1, 2, 3]
        assert [e.learning_rate for e in epochs] == pytest.approx([0.1, 0.05, 0.025, 0.0125])
        assert len(results) == 1
        assert results[0].epochs == 4
        assert results[0].losses == tuple(e.loss for e in epochs)

    def test_callback_errors_propagate(self):
        def fail(_):
            raise RuntimeError("stop")

        with pytest.raises(RuntimeError, match="stop"):
            calibrate(Sequential(1, [Layer(1)]), _line_examples(), on_epoch=fail)

    def test_empty_examples_leave_weights_untouched(self):
        network = Sequential(1, [Layer(1)])
        before = network.weight_values()
        with pytest.raises(InvalidInputError):
            calibrate(network, [])
        assert network.weight_values() == before

    def test_shape_mismatch(self):
        network = Sequential(1, [Layer(1)])
        with pytest.raises(ShapeError):
            calibrate(network, [Example([1.0, 2.0], [1.0])])
        with pytest.raises(ShapeError):
            calibrate(network, [Example([1.0], [1.0, 2.0])])

    def test_rising_loss_stops_with_better_weights(self):
        network = Sequential(1, [Layer(1)])
        initial = network.weight_values()
        epochs = []
        result = calibrate(
            network,
            _line_examples(),
            update="epoch",
            learning_rate=2.5,
            max_epochs=6,
            on_epoch=epochs.append,
        ).result
        assert len(epochs) == 2
        assert epochs[1].loss > epochs[0].loss
        assert result.losses == pytest.approx((1.5,))
        assert result.loss == pytest.approx(1.5)
        assert result.epochs == 1
        assert not result.converged
        assert network.weight_values() == initial
        assert result.weights == initial

    @pytest.mark.parametrize(
        "layers",
        [
            lambda: [Layer(1), MapLayer(["Max(x0, 0)"])],
            lambda: [Layer(1, activation="relu")],
        ],
        ids=["max-map", "relu"],
    )
    def test_trains_through_piecewise_layers(self, layers):
        network = Sequential(1, layers())
        examples = [Example([x], [2 * x + 1]) for x in (0.25, 0.5, 0.75, 1.0)]
        result = calibrate(network, examples, update="epoch", learning_rate=0.2, max_epochs=50).result
        assert result.loss < result.losses[0]
        assert all(later <= earlier for earlier, later in zip(result.losses, result.losses[1:]))
        assert all(math.isfinite(value) for value in result.weights.values())

    def test_divergence_restores_finite_weights(self):
        network = Sequential(1, [Layer(1)])
        with pytest.raises(TrainingDivergedError) as excinfo:
            calibrate(network, _line_examples(), learning_rate=1e100, max_epochs=100)
        error = excinfo.value
        values = network.weight_values()
        assert values == error.weights
        assert all(math.isfinite(value) for value in values.values())
        assert isinstance(error, ArithmeticError)


class TestOptions:
    """Tests for CalibrationOptions and learning-rate schedules."""

    def test_defaults(self):
        options = CalibrationOptions()
        assert options.max_epochs == 100
        assert options.tolerance == 1e-7
        assert options.rate(0) == 0.1
        assert options.update == "example"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_epochs": 0},
            {"max_epochs": 2.5},
            {"tolerance": -1.0},
            {"learning_rate": 0.0},
            {"update": "batch"},
        ],
    )
    def test_invalid_options(self, kwargs):
        with pytest.raises(InvalidInputError):
            CalibrationOptions(**kwargs)

    def test_schedule_must_stay_positive(self):
        options = CalibrationOptions(learning_rate=lambda epoch: 0.1 - 0.1 * epoch)
        assert options.rate(0) == pytest.approx(0.1)
        with pytest.raises(InvalidInputError):
            options.rate(1)

    def test_exponential_decay(self):
        schedule = exponential_decay(0.5, 0.9)
        assert schedule(0) == 0.5
        assert schedule(2) == pytest.approx(0.405)
        with pytest.raises(InvalidInputError):
            exponential_decay(0.0, 0.9)
        with pytest.raises(InvalidInputError):
            exponential_decay(0.5, 1.5)


class TestCalibration:
    """Tests for the Calibration wrapper."""

    def test_normalized_round_trip(self):
        network = Sequential(2, [Layer(2, weights={"w0r0c1": 0.1, "w0b0": 0.05})])
        calibration = Calibration(network, offset=[10.0, 0.0], scale=[5.0, 2.0])
        nominal = [12.0, -1.0]
        actual = calibration.to_actual(nominal)
        expected_x = ((12.0 - 10.0) / 5.0 + 0.1 * (-1.0 / 2.0) + 0.05) * 5.0 + 10.0
        assert actual == pytest.approx([expected_x, -1.0])
        assert calibration.to_nominal(actual) == pytest.approx(nominal, abs=1e-9)

    def test_dict_round_trip(self):
        network = Sequential(2, [Layer(2, weights={"w0r1c0": -0.2})])
        calibration = Calibration(network, offset=[1.0, 2.0], scale=[3.0, 4.0])
        restored = Calibration.from_dict(calibration.to_dict())
        np.testing.assert_array_equal(restored.offset, calibration.offset)
        assert restored.to_actual([0.5, 0.25]) == calibration.to_actual([0.5, 0.25])

    def test_invalid_normalization(self):
        network = Sequential(2, [Layer(2)])
        with pytest.raises(ShapeError):
            Calibration(network, offset=[0.0], scale=[1.0])
        with pytest.raises(ValueError):
            Calibration(network, offset=[0.0, 0.0], scale=[1.0, 0.0])
        with pytest.raises(ShapeError):
            Calibration(Sequential(2, [Layer(1)]), offset=[0.0, 0.0], scale=[1.0, 1.0])
