"""
Filter translator

Compiles a filter expression into an Elasticsearch query DSL tree:

    a == b                 {"term": {"a": "b"}}
    a != b                 {"bool": {"must_not": [{"term": {"a": "b"}}]}}
    a && b && c            {"bool": {"must": [T(a), T(b), T(c)]}}
    a || b || c            {"bool": {"should": [T(a), T(b), T(c)]}}
    a < b (<=, >, >=)      {"range": {"a": {"lt": b}}}
    a.startsWith(b)        {"prefix": {"a": "b"}}
    a.contains(b)          {"query_string": {"default_field": "a", "query": "*b*"}}
    a.nestedFilter(expr)   {"nested": {"path": "a", "query": T(expr) relative to a}}
    nestedFilter(a, expr)  same as above
"""

import logging
import re
from typing import Any, Dict, List, Optional

from filtering.parser import MAX_NESTING_DEPTH, FilterError, parse
from filtering.types import (
    CONTAINS,
    EQUALS,
    LOGICAL_AND,
    LOGICAL_OR,
    NESTED_FILTER,
    NOT_EQUALS,
    RANGE_KEYWORDS,
    STARTS_WITH,
    Call,
    Const,
    Expr,
    Ident,
    Select,
)

logger = logging.getLogger(__name__)

# characters reserved by the query_string syntax
SPECIAL_CHARACTER_RE = re.compile(r'([\-=&|!(){}\[\]^"~*?:\\/])')


def escape_query_string(value: str) -> str:
    return SPECIAL_CHARACTER_RE.sub(r"\\\1", value)


def field_name(expression: Expr) -> Optional[str]:
    """
    Resolve an expression to a dotted field name

    Identifiers and select chains resolve to "a.b.c"; a string literal is used
    verbatim. Anything else resolves to None.
    """
    fields = []
    while isinstance(expression, Select):
        fields.append(expression.field)
        expression = expression.operand

    if isinstance(expression, Ident):
        root = expression.name
    elif isinstance(expression, Const) and isinstance(expression.value, str) and not fields:
        return expression.value
    else:
        return None

    return ".".join([root] + fields[::-1])


def literal_value(expression: Expr) -> Any:
    """Right-hand side value; literals keep their JSON type, identifiers become strings"""
    if isinstance(expression, Const):
        return expression.value
    return field_name(expression)


class Filterer:
    """
    Stateless filter-to-query translator

    Usage:
        query = Filterer().parse_expression('kind == "VULNERABILITY"')
        body = {"query": query}
    """

    def parse_expression(self, filter: str) -> Dict[str, Any]:
        """
        Parse a filter and translate it into a query tree

        Args:
            filter: filter expression

        Returns:
            query DSL dict with one top-level key
            (bool, term, prefix, query_string, range or nested)

        Raises:
            FilterError: syntax error or unsupported expression
        """
        expression = parse(filter)

        if not isinstance(expression, Call):
            raise FilterError(
                f"expected call expression when parsing filter, got {type(expression).__name__}"
            )

        query = self._translate(expression, "", 0)
        logger.debug(f"translated filter {filter!r}: {query}")
        return query

    def _translate(self, expression: Expr, prefix: str, depth: int) -> Dict[str, Any]:
        if depth > MAX_NESTING_DEPTH:
            raise FilterError(f"filter expression exceeds maximum nesting depth of {MAX_NESTING_DEPTH}")
        if not isinstance(expression, Call):
            raise FilterError(
                f"expected call expression, got {type(expression).__name__}"
            )

        function = expression.function

        if function in (LOGICAL_AND, LOGICAL_OR):
            occur = "must" if function == LOGICAL_AND else "should"
            return {
                "bool": {
                    occur: [
                        self._translate(operand, prefix, depth + 1)
                        for operand in self._chain_operands(expression)
                    ]
                }
            }

        if function == EQUALS:
            field, value = self._comparison_terms(*self._binary_args(expression))
            return {"term": {prefix + field: value}}

        if function == NOT_EQUALS:
            field, value = self._comparison_terms(*self._binary_args(expression))
            return {"bool": {"must_not": [{"term": {prefix + field: value}}]}}

        if function in RANGE_KEYWORDS:
            field, value = self._comparison_terms(*self._binary_args(expression))
            return {"range": {prefix + field: {RANGE_KEYWORDS[function]: value}}}

        if function == STARTS_WITH:
            field, value = self._receiver_terms(expression)
            return {"prefix": {prefix + field: value}}

        if function == CONTAINS:
            field, value = self._receiver_terms(expression)
            return {
                "query_string": {
                    "default_field": prefix + field,
                    "query": f"*{escape_query_string(value)}*",
                }
            }

        if function == NESTED_FILTER:
            return self._nested(expression, prefix, depth)

        raise FilterError(f"unknown function: {function}")

    def _chain_operands(self, expression: Call) -> List[Expr]:
        """Operands of a run of the same logical operator, left to right"""
        operands = []
        stack = [expression]
        while stack:
            node = stack.pop()
            if isinstance(node, Call) and node.function == expression.function:
                stack.extend(reversed(self._binary_args(node)))
            else:
                operands.append(node)
        return operands

    def _nested(self, expression: Call, prefix: str, depth: int) -> Dict[str, Any]:
        if expression.target is not None:
            if len(expression.args) != 1:
                raise FilterError(f"unexpected number of arguments to {NESTED_FILTER}: {len(expression.args)}")
            path_expression, inner = expression.target, expression.args[0]
        else:
            if len(expression.args) != 2:
                raise FilterError(f"unexpected number of arguments to {NESTED_FILTER}: {len(expression.args)}")
            path_expression, inner = expression.args

        path = field_name(path_expression)
        if not path:
            raise FilterError(f"unexpected path for {NESTED_FILTER}: {type(path_expression).__name__}")

        full_path = prefix + path
        return {
            "nested": {
                "path": full_path,
                "query": self._translate(inner, full_path + ".", depth + 1),
            }
        }

    @staticmethod
    def _binary_args(expression: Call):
        if expression.target is not None or len(expression.args) != 2:
            raise FilterError(
                f"unexpected number of arguments to {expression.function}: {len(expression.args)}"
            )
        return expression.args

    @staticmethod
    def _comparison_terms(left: Expr, right: Expr):
        field = field_name(left)
        value = literal_value(right)

        if not field or value is None or value == "":
            raise FilterError(
                "encountered unexpected expression kinds when evaluating filter: "
                f"{type(left).__name__}, {type(right).__name__}"
            )
        return field, value

    @staticmethod
    def _receiver_terms(expression: Call):
        if expression.target is None or len(expression.args) != 1:
            raise FilterError(
                f"unexpected number of arguments to {expression.function}: {len(expression.args)}"
            )

        field = field_name(expression.target)
        value = literal_value(expression.args[0])
        if not field or not isinstance(value, str) or value == "":
            raise FilterError(
                f"{expression.function} expects a field receiver and a string argument"
            )
        return field, value
