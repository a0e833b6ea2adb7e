"""Common-subexpression elimination over formulas and compiled evaluators.

An :class:`Optimizer` owns a memo table that maps every distinct
subexpression it has seen to a synthetic name (``f0``, ``f1``, ...).  Names
are handed out in discovery order, never renumbered, and the table keeps
growing across calls::

    >>> opt = Optimizer()
    >>> opt.optimize("2*(a+b)+1/(a+b)+sin(a+b)")
    'f2'
    >>> opt.memo
    {'f0': '(a + b)', 'f1': 'sin(f0)', 'f2': '2 * (f0) + 1 / (f0) + f1'}
    >>> f = opt.compile()
    >>> scope = {"a": 3, "b": 5}
    >>> round(float(f(scope)), 6)
    17.114358

The evaluator returned by :meth:`Optimizer.compile` computes the memo entries
in order and writes each one back into the caller's scope.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, MutableMapping, Sequence, Set, Tuple, Union

from .errors import UnboundVariableError
from .expression import Call, Expression, Group, Variable, namespace, parse

logger = logging.getLogger(__name__)

Formula = Union[str, Expression]


class Evaluator:
    """Compiled evaluator for a slice of an optimizer's memo table."""

    def __init__(
        self,
        names: Sequence[str],
        inputs: Sequence[str],
        targets: Sequence[str],
        single: bool,
        source: str,
    ):
        self.names = tuple(names)
        self.inputs = tuple(inputs)
        self.targets = tuple(targets)
        self.single = single
        self.source = source
        globals_ = namespace()
        exec(compile(source, "<kinann-evaluator>", "exec"), globals_)
        self._function = globals_["evaluate"]

    def __call__(self, scope: MutableMapping[str, Any]) -> Any:
        missing = [name for name in self.inputs if name not in scope]
        if missing:
            raise UnboundVariableError(missing)
        return self._function(scope)

    def __len__(self) -> int:
        return len(self.names)

    def __repr__(self) -> str:
        return f"Evaluator(entries={len(self.names)}, inputs={list(self.inputs)}, targets={list(self.targets)})"


class Optimizer:
    """Accumulating memo table of deduplicated subexpressions."""

    def __init__(self, prefix: str = "f"):
        if not prefix.isidentifier():
            raise ValueError("prefix must be a valid identifier")
        self.prefix = prefix
        self._entries: Dict[str, Expression] = {}
        self._names: Dict[Expression, str] = {}

    @property
    def memo(self) -> Dict[str, str]:
        """Memo table as ``{name: formula text}`` in discovery order."""
        return {name: str(expr) for name, expr in self._entries.items()}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def expression(self, name: str) -> Expression:
        return self._entries[name]

    def optimize(self, formulas: Union[Formula, Sequence[Formula]]) -> Union[str, List[str]]:
        """Memoize one formula or a list of formulas, returning the root name(s)."""
        single = isinstance(formulas, (str, Expression))
        items = [formulas] if single else list(formulas)
        # parse everything before touching the memo table
        trees = [parse(item) if isinstance(item, str) else self._check(item) for item in items]
        before = len(self._entries)
        try:
            names = [self._optimize_tree(tree) for tree in trees]
        except BaseException:
            self._truncate(before)
            raise
        if len(self._entries) > before:
            logger.debug("memo grew from %d to %d entries", before, len(self._entries))
        return names[0] if single else names

    def compile(self, targets: Union[str, Sequence[str], None] = None) -> Evaluator:
        """Compile memo entries into an :class:`Evaluator`.

        With ``targets=None`` every entry is evaluated and the newest entry's
        value is returned.  A single name returns that value, a list of names
        returns a list; only the entries those names depend on are evaluated.
        """
        if not self._entries:
            raise ValueError("nothing to compile: the memo table is empty")
        order = self._topological_order()

        if targets is None:
            wanted = [order[-1]]
            needed = set(order)
            single = True
        else:
            single = isinstance(targets, str)
            wanted = [targets] if single else list(targets)
            unknown = [name for name in wanted if name not in self._entries]
            if unknown:
                raise ValueError(f"unknown memo name(s): {', '.join(unknown)}")
            needed = self._dependencies(wanted)

        names = [name for name in order if name in needed]
        inputs: List[str] = []
        for name in names:
            for var in sorted(self._entries[name].variables()):
                if var not in self._entries and var not in inputs:
                    inputs.append(var)

        source = self._source(names, wanted, single)
        evaluator = Evaluator(names, inputs, wanted, single, source)
        logger.debug("compiled %d of %d memo entries over %d inputs", len(names), len(order), len(inputs))
        return evaluator

    def _check(self, item: Any) -> Expression:
        if not isinstance(item, Expression):
            raise TypeError(f"expected formula text or Expression, got {type(item).__name__}")
        return item

    def _optimize_tree(self, tree: Expression) -> str:
        root = self._rewrite(tree)
        key = root.key()
        if isinstance(key, Variable) and key.name in self._entries:
            return key.name
        name = self._names.get(key)
        if name is None:
            name = self._memoize(root)
        return name

    def _rewrite(self, node: Expression) -> Expression:
        if node.is_trivial:
            return node
        node = node.with_children(tuple(self._rewrite(child) for child in node.children()))
        key = node.key()
        if key.is_trivial:
            return node
        name = self._names.get(key)
        if name is None:
            if not isinstance(node, (Group, Call)):
                return node
            name = self._memoize(node)
        reference = Variable(name)
        return Group(reference) if isinstance(node, Group) else reference

    def _memoize(self, node: Expression) -> str:
        name = f"{self.prefix}{len(self._entries)}"
        self._entries[name] = node
        self._names[node.key()] = name
        return name

    def _truncate(self, size: int) -> None:
        for name in list(self._entries)[size:]:
            del self._names[self._entries.pop(name).key()]

    def _topological_order(self) -> List[str]:
        order = list(self._entries)
        position = {name: index for index, name in enumerate(order)}
        for index, name in enumerate(order):
            for var in self._entries[name].variables():
                if position.get(var, -1) >= index:
                    raise ValueError(f"memo entry {name} references {var}, which is not defined before it")
        return order

    def _dependencies(self, wanted: Sequence[str]) -> Set[str]:
        needed: Set[str] = set()
        stack = list(wanted)
        while stack:
            name = stack.pop()
            if name in needed:
                continue
            needed.add(name)
            stack.extend(var for var in self._entries[name].variables() if var in self._entries)
        return needed

    def _source(self, names: Sequence[str], wanted: Sequence[str], single: bool) -> str:
        def ref(name: str) -> str:
            return f"scope[{name!r}]"

        lines = ["def evaluate(scope):"]
        for name in names:
            lines.append(f"    {ref(name)} = {self._entries[name].to_source(ref)}")
        if single:
            lines.append(f"    return {ref(wanted[0])}")
        else:
            lines.append(f"    return [{', '.join(ref(name) for name in wanted)}]")
        return "\n".join(lines) + "\n"


def optimize_all(formulas: Mapping[str, Formula], optimizer: Optimizer | None = None) -> Tuple[Optimizer, Dict[str, str]]:
    """Optimize named formulas into one optimizer, returning ``{key: memo name}``."""
    optimizer = optimizer if optimizer is not None else Optimizer()
    keys = list(formulas)
    names = optimizer.optimize([formulas[key] for key in keys])
    return optimizer, dict(zip(keys, names))


__all__ = ["Formula", "Evaluator", "Optimizer", "optimize_all"]
