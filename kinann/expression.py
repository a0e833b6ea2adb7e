"""Immutable formula trees, the formula parser and numeric evaluation.

Formula text uses infix ``+ - * /``, ``^`` (or ``**``) for powers, unary
minus, parentheses, function calls over ``FUNCTIONS`` and bare identifiers as
variables. Parentheses written in the text are kept as :class:`Group` nodes so
that rendering reproduces them, but they never take part in structural
identity (see :meth:`Expression.key`).

Direct evaluation (:meth:`Expression.evaluate`) and the generated source used
by the optimizer (:meth:`Expression.to_source`) call the very same numpy
functions, so a compiled evaluator and a tree walk agree bit for bit.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, NamedTuple, Set, Tuple

import numpy as np

from .errors import ParseError, UnboundVariableError

Scope = Dict[str, Any]


class Function(NamedTuple):
    func: Callable[..., Any]
    arity: int


def _heaviside(x: Any) -> Any:
    return np.heaviside(x, 0.5)


FUNCTIONS: Dict[str, Function] = {
    "sin": Function(np.sin, 1),
    "cos": Function(np.cos, 1),
    "tan": Function(np.tan, 1),
    "asin": Function(np.arcsin, 1),
    "acos": Function(np.arccos, 1),
    "atan": Function(np.arctan, 1),
    "sinh": Function(np.sinh, 1),
    "cosh": Function(np.cosh, 1),
    "tanh": Function(np.tanh, 1),
    "exp": Function(np.exp, 1),
    "log": Function(np.log, 1),
    "sqrt": Function(np.sqrt, 1),
    "abs": Function(np.abs, 1),
    "Abs": Function(np.abs, 1),
    "floor": Function(np.floor, 1),
    "ceil": Function(np.ceil, 1),
    "ceiling": Function(np.ceil, 1),
    "sign": Function(np.sign, 1),
    "Heaviside": Function(_heaviside, 1),
    "atan2": Function(np.arctan2, 2),
    "Max": Function(np.maximum, 2),
    "Min": Function(np.minimum, 2),
}

CONSTANTS: Dict[str, float] = {"pi": float(np.pi), "E": float(np.e)}

BINARY_OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "+": np.add,
    "-": np.subtract,
    "*": np.multiply,
    "/": np.true_divide,
    "^": np.float_power,
}

UNARY_OPERATORS: Dict[str, Callable[[Any], Any]] = {
    "-": np.negative,
    "+": np.positive,
}

_BINARY_NAMES = {"+": "add", "-": "sub", "*": "mul", "/": "div", "^": "pow"}
_UNARY_NAMES = {"-": "neg", "+": "pos"}

# binding strength used for rendering
SUM, PRODUCT, PREFIX, POWER, ATOM = range(1, 6)
_PRECEDENCE = {"+": SUM, "-": SUM, "*": PRODUCT, "/": PRODUCT, "^": POWER}


def namespace() -> Dict[str, Any]:
    """Globals for source produced by :meth:`Expression.to_source`."""
    names: Dict[str, Any] = {}
    for op, func in BINARY_OPERATORS.items():
        names[f"_op_{_BINARY_NAMES[op]}"] = func
    for op, func in UNARY_OPERATORS.items():
        names[f"_op_{_UNARY_NAMES[op]}"] = func
    for name, function in FUNCTIONS.items():
        names[f"_fn_{name}"] = function.func
    for name, value in CONSTANTS.items():
        names[f"_const_{name}"] = value
    return names


class Expression:
    """Base of the formula tree variants."""

    precedence = ATOM

    def children(self) -> Tuple["Expression", ...]:
        return ()

    def with_children(self, children: Tuple["Expression", ...]) -> "Expression":
        return self

    @property
    def is_trivial(self) -> bool:
        """Bare literals, constants and variables are never memoized as operands."""
        return False

    def key(self) -> "Expression":
        """Structural identity: the same tree with every group removed."""
        return self.with_children(tuple(child.key() for child in self.children()))

    def walk(self) -> Iterator["Expression"]:
        """Post-order iteration over the tree."""
        for child in self.children():
            yield from child.walk()
        yield self

    def variables(self) -> Set[str]:
        return {node.name for node in self.walk() if isinstance(node, Variable)}

    def evaluate(self, scope: Mapping[str, Any]) -> Any:
        raise NotImplementedError

    def to_source(self, ref: Callable[[str], str]) -> str:
        raise NotImplementedError

    def _operand(self, child: "Expression", tight: bool) -> str:
        text = str(child)
        if child.precedence < self.precedence or (tight and child.precedence == self.precedence):
            return f"({text})"
        return text


@dataclass(frozen=True)
class Number(Expression):
    value: float

    @property
    def precedence(self) -> int:
        return PREFIX if self.value < 0 else ATOM

    @property
    def is_trivial(self) -> bool:
        return True

    def evaluate(self, scope: Mapping[str, Any]) -> Any:
        return self.value

    def to_source(self, ref: Callable[[str], str]) -> str:
        return repr(self.value)

    def __str__(self) -> str:
        return repr(self.value)


@dataclass(frozen=True)
class Constant(Expression):
    name: str

    @property
    def is_trivial(self) -> bool:
        return True

    def evaluate(self, scope: Mapping[str, Any]) -> Any:
        return CONSTANTS[self.name]

    def to_source(self, ref: Callable[[str], str]) -> str:
        return f"_const_{self.name}"

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Variable(Expression):
    name: str

    @property
    def is_trivial(self) -> bool:
        return True

    def evaluate(self, scope: Mapping[str, Any]) -> Any:
        try:
            return scope[self.name]
        except KeyError:
            raise UnboundVariableError([self.name]) from None

    def to_source(self, ref: Callable[[str], str]) -> str:
        return ref(self.name)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Group(Expression):
    """Parentheses written in formula text."""

    inner: Expression

    def children(self) -> Tuple[Expression, ...]:
        return (self.inner,)

    def with_children(self, children: Tuple[Expression, ...]) -> Expression:
        return Group(children[0])

    def key(self) -> Expression:
        return self.inner.key()

    def evaluate(self, scope: Mapping[str, Any]) -> Any:
        return self.inner.evaluate(scope)

    def to_source(self, ref: Callable[[str], str]) -> str:
        return self.inner.to_source(ref)

    def __str__(self) -> str:
        return f"({self.inner})"


@dataclass(frozen=True)
class UnaryOp(Expression):
    op: str
    operand: Expression

    precedence = PREFIX

    def children(self) -> Tuple[Expression, ...]:
        return (self.operand,)

    def with_children(self, children: Tuple[Expression, ...]) -> Expression:
        return UnaryOp(self.op, children[0])

    def evaluate(self, scope: Mapping[str, Any]) -> Any:
        return UNARY_OPERATORS[self.op](self.operand.evaluate(scope))

    def to_source(self, ref: Callable[[str], str]) -> str:
        return f"_op_{_UNARY_NAMES[self.op]}({self.operand.to_source(ref)})"

    def __str__(self) -> str:
        return f"{self.op}{self._operand(self.operand, tight=False)}"


@dataclass(frozen=True)
class BinaryOp(Expression):
    op: str
    left: Expression
    right: Expression

    @property
    def precedence(self) -> int:
        return _PRECEDENCE[self.op]

    def children(self) -> Tuple[Expression, ...]:
        return (self.left, self.right)

    def with_children(self, children: Tuple[Expression, ...]) -> Expression:
        return BinaryOp(self.op, children[0], children[1])

    def evaluate(self, scope: Mapping[str, Any]) -> Any:
        return BINARY_OPERATORS[self.op](self.left.evaluate(scope), self.right.evaluate(scope))

    def to_source(self, ref: Callable[[str], str]) -> str:
        return (
            f"_op_{_BINARY_NAMES[self.op]}"
            f"({self.left.to_source(ref)}, {self.right.to_source(ref)})"
        )

    def __str__(self) -> str:
        # ^ is right associative, the others associate to the left
        right_assoc = self.op == "^"
        left = self._operand(self.left, tight=right_assoc)
        right = self._operand(self.right, tight=not right_assoc)
        return f"{left} {self.op} {right}"


@dataclass(frozen=True)
class Call(Expression):
    name: str
    args: Tuple[Expression, ...]

    def children(self) -> Tuple[Expression, ...]:
        return self.args

    def with_children(self, children: Tuple[Expression, ...]) -> Expression:
        return Call(self.name, tuple(children))

    def evaluate(self, scope: Mapping[str, Any]) -> Any:
        return FUNCTIONS[self.name].func(*(arg.evaluate(scope) for arg in self.args))

    def to_source(self, ref: Callable[[str], str]) -> str:
        args = ", ".join(arg.to_source(ref) for arg in self.args)
        return f"_fn_{self.name}({args})"

    def __str__(self) -> str:
        return f"{self.name}({', '.join(str(arg) for arg in self.args)})"


_SPACE = re.compile(r"\s*")
_TOKEN = re.compile(
    r"(?:"
    r"(?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)"
    r"|(?P<name>[A-Za-z_][A-Za-z_0-9]*)"
    r"|(?P<op>\*\*|[-+*/^(),])"
    r")"
)


class _Token(NamedTuple):
    kind: str
    text: str
    position: int


def _tokenize(formula: str) -> List[_Token]:
    tokens: List[_Token] = []
    position = 0
    end = len(formula.rstrip())
    while True:
        position = _SPACE.match(formula, position).end()
        if position >= end:
            break
        match = _TOKEN.match(formula, position)
        if match is None or match.lastgroup is None:
            raise ParseError("unexpected character", formula, position)
        text = match.group(match.lastgroup)
        tokens.append(_Token(match.lastgroup, "^" if text == "**" else text, match.start(match.lastgroup)))
        position = match.end()
    tokens.append(_Token("end", "", end))
    return tokens


class _Parser:
    """Recursive descent over ``sum := product (('+'|'-') product)*`` and friends."""

    def __init__(self, formula: str):
        self.formula = formula
        self.tokens = _tokenize(formula)
        self.index = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, *texts: str) -> _Token | None:
        if self.current.kind == "op" and self.current.text in texts:
            return self._advance()
        return None

    def _expect(self, text: str) -> None:
        if self._accept(text) is None:
            raise ParseError(f"expected {text!r}", self.formula, self.current.position)

    def parse(self) -> Expression:
        if self.current.kind == "end":
            raise ParseError("empty formula", self.formula)
        expr = self._sum()
        if self.current.kind != "end":
            raise ParseError(f"unexpected {self.current.text!r}", self.formula, self.current.position)
        return expr

    def _sum(self) -> Expression:
        expr = self._product()
        while True:
            token = self._accept("+", "-")
            if token is None:
                return expr
            expr = BinaryOp(token.text, expr, self._product())

    def _product(self) -> Expression:
        expr = self._prefix()
        while True:
            token = self._accept("*", "/")
            if token is None:
                return expr
            expr = BinaryOp(token.text, expr, self._prefix())

    def _prefix(self) -> Expression:
        token = self._accept("-", "+")
        if token is not None:
            return UnaryOp(token.text, self._prefix())
        return self._power()

    def _power(self) -> Expression:
        base = self._atom()
        if self._accept("^") is not None:
            return BinaryOp("^", base, self._prefix())
        return base

    def _atom(self) -> Expression:
        token = self._advance()
        if token.kind == "number":
            text = token.text
            is_float = any(ch in text for ch in ".eE")
            return Number(float(text) if is_float else int(text))
        if token.kind == "name":
            if self._accept("(") is not None:
                return self._call(token)
            if token.text in CONSTANTS:
                return Constant(token.text)
            return Variable(token.text)
        if token.kind == "op" and token.text == "(":
            inner = self._sum()
            self._expect(")")
            return Group(inner)
        if token.kind == "end":
            raise ParseError("unexpected end of formula", self.formula, token.position)
        raise ParseError(f"unexpected {token.text!r}", self.formula, token.position)

    def _call(self, name: _Token) -> Expression:
        function = FUNCTIONS.get(name.text)
        if function is None:
            raise ParseError(f"unknown function {name.text!r}", self.formula, name.position)
        args: List[Expression] = []
        if self._accept(")") is None:
            args.append(self._sum())
            while self._accept(",") is not None:
                args.append(self._sum())
            self._expect(")")
        if len(args) != function.arity:
            raise ParseError(
                f"{name.text}() takes {function.arity} argument(s), got {len(args)}",
                self.formula,
                name.position,
            )
        return Call(name.text, tuple(args))


def parse(formula: str) -> Expression:
    """Parse formula text into an :class:`Expression`."""
    if not isinstance(formula, str):
        raise TypeError(f"formula must be a string, got {type(formula).__name__}")
    return _Parser(formula).parse()


def evaluate(formula: str | Expression, scope: Mapping[str, Any]) -> Any:
    """Evaluate formula text or a tree directly against ``scope``."""
    expr = parse(formula) if isinstance(formula, str) else formula
    return expr.evaluate(scope)


__all__ = [
    "Scope",
    "Function",
    "FUNCTIONS",
    "CONSTANTS",
    "Expression",
    "Number",
    "Constant",
    "Variable",
    "Group",
    "UnaryOp",
    "BinaryOp",
    "Call",
    "parse",
    "evaluate",
    "namespace",
]
