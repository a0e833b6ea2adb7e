"""Bounded multi-axis frame with a continuous deadband (backlash) model.

The frame state is the axis positions followed, when backlash is modelled, by
one deadband value per axis in ``[-0.5, 0.5]``.  Moving an axis pushes its
deadband towards ``+0.5`` (forward) or ``-0.5`` (reverse) with a ``tanh``
transition, which gives calibration a continuous signal for the direction an
axis last approached its position from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence, Tuple

import numpy as np

from .calibration import Calibration, Example

logger = logging.getLogger(__name__)

AXIS_NAMES = ("X", "Y", "Z", "A", "B", "C")
DEADBAND_LIMIT = 0.5


@dataclass
class Drive:
    """Axis travel limits."""

    min_pos: float
    max_pos: float
    name: str | None = None

    def __post_init__(self) -> None:
        if not self.min_pos < self.max_pos:
            raise ValueError("min_pos must be less than max_pos")

    def clip(self, value: float) -> float:
        return min(max(self.min_pos, value), self.max_pos)

    def to_dict(self) -> Dict[str, Any]:
        return {"min_pos": self.min_pos, "max_pos": self.max_pos, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Drive":
        return cls(data["min_pos"], data["max_pos"], data.get("name"))


class DriveFrame:
    """Axis positions and deadband state for a set of drives."""

    def __init__(
        self,
        drives: Sequence[Drive],
        backlash: bool = True,
        deadband_scale: float = 3.0,
        deadband_home: float = 0.5,
        state: Sequence[float | None] | None = None,
        seed: int | None = None,
    ):
        if not drives:
            raise ValueError("a frame needs at least one drive")
        self.drives = list(drives)
        for index, drive in enumerate(self.drives):
            if drive.name is None:
                drive.name = AXIS_NAMES[index] if index < len(AXIS_NAMES) else f"Drive{index + 1}"
        self.backlash = backlash
        self.deadband_scale = deadband_scale
        self.deadband_home = deadband_home
        self.calibration: Calibration | None = None
        self._rng = np.random.default_rng(seed)
        self._state: List[float | None] = []
        if state is not None:
            self.state = state
        else:
            self.clear_pos()

    @property
    def state(self) -> List[float | None]:
        return list(self._state)

    @state.setter
    def state(self, state: Sequence[float | None]) -> None:
        expected = len(self.drives) * (2 if self.backlash else 1)
        if len(state) != expected:
            raise ValueError(f"expected state of length {expected}, got {len(state)}")
        self._state = list(state)

    @property
    def axis_pos(self) -> List[float | None]:
        return self._state[: len(self.drives)]

    @axis_pos.setter
    def axis_pos(self, axis_pos: Sequence[float | None]) -> None:
        n = len(self.drives)
        if len(axis_pos) != n:
            raise ValueError(f"expected {n} axis positions, got {list(axis_pos)}")
        for index, (drive, value) in enumerate(zip(self.drives, axis_pos)):
            old = self._state[index]
            pos = None if value is None else drive.clip(value)
            if self.backlash and pos is not None and pos != old:
                if pos == drive.min_pos:
                    # homing to min_pos backs off past the positive deadband
                    deadband = self.deadband_home
                else:
                    delta = pos - (old or 0.0)
                    deadband = self._state[n + index] + float(np.tanh(self.deadband_scale * delta))
                    deadband = min(DEADBAND_LIMIT, max(deadband, -DEADBAND_LIMIT))
                self._state[n + index] = deadband
            self._state[index] = pos

    @property
    def deadband(self) -> List[float]:
        n = len(self.drives)
        return self._state[n : 2 * n]

    def clear_pos(self) -> None:
        positions: List[float | None] = [None] * len(self.drives)
        deadbands = [self.deadband_home] * len(self.drives) if self.backlash else []
        self._state = positions + deadbands

    def home(self, axis: int | None = None) -> "DriveFrame":
        if axis is None:
            logger.debug("home all")
            self.axis_pos = [drive.min_pos for drive in self.drives]
            return self
        logger.debug("home axis %s", axis)
        if not 0 <= axis < len(self.drives):
            raise ValueError(f"home() invalid axis: {axis}")
        self.axis_pos = [
            self.drives[index].min_pos if index == axis else pos
            for index, pos in enumerate(self.axis_pos)
        ]
        return self

    def move_to(self, axis_pos: Sequence[float | None]) -> "DriveFrame":
        """Move to ``axis_pos``; ``None`` leaves an axis where it is."""
        old = self.axis_pos
        self.axis_pos = [old[index] if pos is None else pos for index, pos in enumerate(axis_pos)]
        return self

    def home_state(self) -> List[float]:
        """State right after homing every axis."""
        positions = [drive.min_pos for drive in self.drives]
        return positions + ([self.deadband_home] * len(self.drives) if self.backlash else [])

    def normalization(self) -> Tuple[np.ndarray, np.ndarray]:
        """Per-component ``(offset, scale)`` mapping the state into roughly [-1, 1]."""
        offset = [(drive.min_pos + drive.max_pos) / 2 for drive in self.drives]
        scale = [(drive.max_pos - drive.min_pos) / 2 for drive in self.drives]
        if self.backlash:
            offset += [0.0] * len(self.drives)
            scale += [1.0] * len(self.drives)
        return np.asarray(offset), np.asarray(scale)

    def sample_axis_pos(self) -> List[float]:
        return [float(self._rng.uniform(drive.min_pos, drive.max_pos)) for drive in self.drives]

    def calibration_examples(
        self,
        count: int = 30,
        measured_pos: Callable[[List[float]], Sequence[float]] | None = None,
        target_state: Callable[[List[float]], Sequence[float]] | None = None,
        separation: float = 1.0,
        max_tries: int = 1000,
    ) -> List[Example]:
        """Random walk of examples starting at home.

        ``measured_pos`` maps the commanded axis positions to what the
        application measured (identity by default).  ``target_state`` builds
        the target from the post-move state; by default it is the state with
        its axis positions replaced by the measured ones.  Successive moves
        differ by at least ``separation`` on every axis to stay out of the
        deadband transition.
        """
        n = len(self.drives)
        measure = measured_pos or (lambda pos: pos)
        target = target_state or (lambda state: list(measure(self.axis_pos)) + list(state[n:]))

        examples = []
        for index in range(count):
            if index == 0:
                # homing leaves the deadband alone on axes already at min_pos
                self.home()
                self.state = self.home_state()
            else:
                for _ in range(max_tries):
                    axis_pos = self.sample_axis_pos()
                    distance = min(abs(new - old) for new, old in zip(axis_pos, self.axis_pos))
                    if distance >= separation:
                        break
                else:
                    raise ValueError(f"no move at least {separation} away found in {max_tries} tries")
                self.axis_pos = axis_pos
            state = self.state
            examples.append(Example(state, target(state)))
        return examples

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "DriveFrame",
            "state": self.state,
            "backlash": self.backlash,
            "deadband_scale": self.deadband_scale,
            "deadband_home": self.deadband_home,
            "drives": [drive.to_dict() for drive in self.drives],
            "calibration": None if self.calibration is None else self.calibration.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DriveFrame":
        frame = cls(
            [Drive.from_dict(drive) for drive in data["drives"]],
            backlash=data.get("backlash", True),
            deadband_scale=data.get("deadband_scale", 3.0),
            deadband_home=data.get("deadband_home", 0.5),
            state=data.get("state"),
        )
        if data.get("calibration") is not None:
            frame.calibration = Calibration.from_dict(data["calibration"])
        return frame


__all__ = ["AXIS_NAMES", "DEADBAND_LIMIT", "Drive", "DriveFrame"]
