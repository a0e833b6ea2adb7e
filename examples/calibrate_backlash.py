"""Calibrate a three-axis frame with simulated backlash.

Builds a frame, generates a random walk of calibration examples in which the
X and Y axes fall short after reversing, trains a calibration and writes the
frame (with its calibration) plus the optimized training memo to
`examples/outputs/`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from kinann import Drive, DriveFrame, Optimizer, calibrate_frame, formula

OUTPUT_DIR = Path(__file__).resolve().parent / "outputs"
OUTPUT_DIR.mkdir(exist_ok=True)

BACKLASH = 1.5


def _measured(state):
    positions = [pos + (db - 0.5) * BACKLASH for pos, db in zip(state[:2], state[3:5])]
    return positions + [state[2]] + list(state[3:])


def _mean_error(predict, examples) -> float:
    errors = [
        abs(p - t)
        for example in examples
        for p, t in zip(predict(example.input)[:3], example.target[:3])
    ]
    return sum(errors) / len(errors)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    frame = DriveFrame([Drive(-1, 300), Drive(-2, 200), Drive(-3, 100)], seed=1)
    examples = frame.calibration_examples(80, target_state=_measured)
    calibration = calibrate_frame(frame, examples, max_epochs=100, tolerance=0.0)

    network = calibration.network
    optimizer = Optimizer()
    optimizer.optimize([formula(network.loss_expression())])
    optimizer.optimize([formula(expr) for expr in network.gradient_expressions().values()])

    frame_path = OUTPUT_DIR / "frame.json"
    memo_path = OUTPUT_DIR / "memo.json"
    frame_path.write_text(json.dumps(frame.to_dict(), indent=2), encoding="utf-8")
    memo_path.write_text(json.dumps(optimizer.memo, indent=2), encoding="utf-8")

    print(f"epochs: {calibration.result.epochs}, loss: {calibration.result.loss:.3g}")
    print(f"  mean error before: {_mean_error(list, examples):.4f}")
    print(f"  mean error after:  {_mean_error(calibration.to_actual, examples):.4f}")
    print(f"  memo: {len(optimizer)} entries for {len(network.weights)} gradients")
    print(f"  artifacts -> {frame_path.name}, {memo_path.name}")


if __name__ == "__main__":
    main()
