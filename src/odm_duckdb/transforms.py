# -*- coding: utf-8 -*-
"""
Derivation Transforms
=====================

A closed set of arithmetic operations over named inputs. Each transform
is a tagged variant (``op``) holding the ordered operand names; the
derivation engine hands it one aligned array per operand and never looks
inside. New n-ary operations are added with @register_transform without
touching the join logic.

    bodyLength       = Subtract(("gageHeight", "offset"))
    groundwaterDepth = parse_transform("wellDepth - waterLevel")
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Sequence, Type

import numpy as np

from .exceptions import DerivationError

_REGISTRY: Dict[str, Type["Transform"]] = {}

_OPERAND = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def register_transform(op: str, symbol: str) -> Callable[[Type["Transform"]], Type["Transform"]]:
    """Class decorator adding a transform to the registry under ``op``."""
    def decorator(cls: Type["Transform"]) -> Type["Transform"]:
        cls.op = op
        cls.symbol = symbol
        _REGISTRY[op] = cls
        return cls
    return decorator


def get_transform(op: str) -> Type["Transform"]:
    try:
        return _REGISTRY[op]
    except KeyError:
        raise DerivationError(
            f"Unknown transform {op!r}; available: {sorted(_REGISTRY)}"
        ) from None


def list_transforms() -> List[str]:
    return sorted(_REGISTRY)


@dataclass(frozen=True)
class Transform:
    """
    Base class for pointwise n-ary arithmetic.

    Attributes
    ----------
    operands : tuple of str
        Input names in application order.
    """

    operands: Sequence[str]

    op: ClassVar[str] = ""
    symbol: ClassVar[str] = ""
    # Add/Subtract keep the inputs' unit; the others need an explicit one.
    preserves_unit: ClassVar[bool] = True

    def __post_init__(self) -> None:
        operands = tuple(self.operands)
        if len(operands) < 2:
            raise DerivationError(
                f"{type(self).__name__} needs at least two operands, got {operands}"
            )
        if len(set(operands)) != len(operands):
            raise DerivationError(f"Repeated operand in {operands}")
        for name in operands:
            if not _OPERAND.match(name):
                raise DerivationError(f"Invalid operand name {name!r}")
        object.__setattr__(self, "operands", operands)

    @property
    def expression(self) -> str:
        return f" {self.symbol} ".join(self.operands)

    def apply(self, values: Mapping[str, np.ndarray]) -> np.ndarray:
        """Combine the aligned operand arrays into one derived array."""
        missing = [name for name in self.operands if name not in values]
        if missing:
            raise DerivationError(f"Transform {self.expression!r} has no input named {missing}")
        arrays = [np.asarray(values[name], dtype=float) for name in self.operands]
        return self._combine(arrays)

    def _combine(self, arrays: List[np.ndarray]) -> np.ndarray:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "operands": list(self.operands)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Transform":
        return get_transform(data["op"])(tuple(data["operands"]))

    def __str__(self) -> str:
        return self.expression


@register_transform("add", "+")
class Add(Transform):
    def _combine(self, arrays: List[np.ndarray]) -> np.ndarray:
        return functools.reduce(np.add, arrays)


@register_transform("subtract", "-")
class Subtract(Transform):
    """First operand minus each of the others."""

    def _combine(self, arrays: List[np.ndarray]) -> np.ndarray:
        return functools.reduce(np.subtract, arrays)


@register_transform("multiply", "*")
class Multiply(Transform):
    preserves_unit = False

    def _combine(self, arrays: List[np.ndarray]) -> np.ndarray:
        return functools.reduce(np.multiply, arrays)


@register_transform("divide", "/")
class Divide(Transform):
    preserves_unit = False

    def _combine(self, arrays: List[np.ndarray]) -> np.ndarray:
        for divisor in arrays[1:]:
            if np.any(divisor == 0):
                raise DerivationError(f"Division by zero in {self.expression!r}")
        return functools.reduce(np.divide, arrays)


def parse_transform(expression: str) -> Transform:
    """
    Parse a single-operator expression such as 'wellDepth - waterLevel'.

    Operands must be identifiers and every operator in the expression must
    be the same; mixed operators and parentheses are not supported.
    """
    parts = re.split(r"\s*([+\-*/])\s*", expression.strip())
    operands = parts[0::2]
    symbols = set(parts[1::2])
    if len(operands) < 2 or len(symbols) != 1:
        raise DerivationError(
            f"Cannot parse {expression!r}: expected operands joined by one operator"
        )
    symbol = symbols.pop()
    for cls in _REGISTRY.values():
        if cls.symbol == symbol:
            return cls(tuple(operands))
    raise DerivationError(f"No transform registered for operator {symbol!r}")
