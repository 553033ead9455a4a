"""
Filter expression AST
"""

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

# relational and logical operators
LOGICAL_AND = "&&"
LOGICAL_OR = "||"
EQUALS = "=="
NOT_EQUALS = "!="
LESS = "<"
LESS_EQUALS = "<="
GREATER = ">"
GREATER_EQUALS = ">="

RELATIONAL_OPERATORS = (EQUALS, NOT_EQUALS, LESS, LESS_EQUALS, GREATER, GREATER_EQUALS)

# callable functions
STARTS_WITH = "startsWith"
CONTAINS = "contains"
NESTED_FILTER = "nestedFilter"

# engine range keyword per ordering operator
RANGE_KEYWORDS = {
    LESS: "lt",
    LESS_EQUALS: "lte",
    GREATER: "gt",
    GREATER_EQUALS: "gte",
}


@dataclass(frozen=True)
class Ident:
    name: str


@dataclass(frozen=True)
class Const:
    value: Any


@dataclass(frozen=True)
class Select:
    """operand.field"""
    operand: "Expr"
    field: str


@dataclass(frozen=True)
class Call:
    """
    Operator or function application

    Binary operators are calls with two args and no target; member calls such
    as a.startsWith("b") carry the receiver in target.
    """
    function: str
    args: Tuple["Expr", ...]
    target: Optional["Expr"] = None


Expr = Union[Ident, Const, Select, Call]
