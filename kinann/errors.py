"""Exceptions raised by the optimizer, the symbolic network and the trainer."""

from __future__ import annotations

from typing import Dict, Sequence


class KinannError(Exception):
    """Base class for all kinann errors."""


class ParseError(KinannError, ValueError):
    """Formula text could not be parsed."""

    def __init__(self, message: str, formula: str = "", position: int | None = None):
        self.formula = formula
        self.position = position
        if position is not None:
            message = f"{message} at position {position} in {formula!r}"
        elif formula:
            message = f"{message} in {formula!r}"
        super().__init__(message)


class UnboundVariableError(KinannError, KeyError):
    """An evaluation scope is missing one or more variables."""

    def __init__(self, names: Sequence[str]):
        self.names = tuple(names)
        super().__init__(f"unbound variable(s): {', '.join(self.names)}")

    def __str__(self) -> str:
        return self.args[0]


class ShapeError(KinannError, ValueError):
    """Vector arity does not match the network."""


class InvalidInputError(KinannError, ValueError):
    """Empty or invalid examples or configuration."""


class TrainingDivergedError(KinannError, ArithmeticError):
    """Loss, gradient or weight became non-finite during training."""

    def __init__(
        self,
        message: str,
        epoch: int,
        example: int | None = None,
        weights: Dict[str, float] | None = None,
    ):
        self.epoch = epoch
        self.example = example
        self.weights = dict(weights or {})
        super().__init__(message)


__all__ = [
    "KinannError",
    "ParseError",
    "UnboundVariableError",
    "ShapeError",
    "InvalidInputError",
    "TrainingDivergedError",
]
