"""Restricted condition expressions over instance variables.

Expressions are parsed with :mod:`ast` and interpreted node by node; nothing
is ever compiled or executed as Python. Supported:

- literals: ``42``, ``"approved"``, ``true``/``false``/``none`` (any case)
- variable names, bare or with a ``$`` prefix: ``amount``, ``$amount``
- comparisons: ``==``, ``!=``, ``<``, ``<=``, ``>``, ``>=``, ``in``, ``not in``, ``is``
- boolean combinators: ``and``, ``or``, ``not`` (``&&`` and ``||`` are accepted too)
- arithmetic: ``+``, ``-``, ``*`` and unary minus
- field access on mappings: ``order["total"]``, ``order.total``
"""

import ast
import operator
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..models.core import Edge
from .exceptions import ConditionEvaluationError, NoMatchingEdge
from .logging import get_logger

logger = get_logger(__name__)

MAX_EXPRESSION_LENGTH = 500

_SAFE_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_SAFE_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
}

_SAFE_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_LITERAL_NAMES = {"true": True, "false": False, "none": None, "null": None}

_FORBIDDEN_NODES = (
    ast.Call, ast.Lambda, ast.ListComp, ast.SetComp, ast.DictComp,
    ast.GeneratorExp, ast.Await, ast.Starred, ast.NamedExpr,
)

# Quoted strings are matched first so that their contents are never rewritten
_REWRITES = re.compile(r'''("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')|\$(?=[A-Za-z_])|&&|\|\|''')
_REPLACEMENTS = {"$": "", "&&": " and ", "||": " or "}

# Upper bound on the length of a sequence built by ``*`` inside a condition
MAX_SEQUENCE_LENGTH = 10000

TRUE_LABELS = frozenset({"true", "yes"})
FALSE_LABELS = frozenset({"false", "no"})


def _normalise(expression: str) -> str:
    def rewrite(match: re.Match) -> str:
        if match.group(1) is not None:
            return match.group(1)
        return _REPLACEMENTS[match.group(0)]

    return _REWRITES.sub(rewrite, expression.strip()).strip()


def _parse(expression: Optional[str]) -> ast.Expression:
    if expression is None or not expression.strip():
        raise ConditionEvaluationError("Condition expression cannot be empty", expression=expression)

    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ConditionEvaluationError(
            f"Expression too long ({len(expression)} chars, max {MAX_EXPRESSION_LENGTH})",
            expression=expression
        )

    try:
        tree = ast.parse(_normalise(expression), mode="eval")
    except SyntaxError as e:
        raise ConditionEvaluationError(f"Invalid expression syntax: {e.msg}", expression=expression) from e

    for node in ast.walk(tree):
        if isinstance(node, _FORBIDDEN_NODES):
            raise ConditionEvaluationError(
                f"{type(node).__name__} is not allowed in conditions",
                expression=expression
            )
    return tree


def validate_expression(expression: Optional[str]) -> List[str]:
    """Check an expression without evaluating it; returns error strings, empty when valid."""
    try:
        _parse(expression)
    except ConditionEvaluationError as e:
        return [e.message]
    return []


def evaluate(expression: str, variables: Mapping[str, Any]) -> bool:
    """
    Evaluate a condition against instance variables.

    Args:
        expression: The condition expression
        variables: Names visible to the expression

    Returns:
        Truthiness of the expression result

    Raises:
        ConditionEvaluationError: If the expression is invalid, references an
            unknown variable, or fails while being evaluated
    """
    tree = _parse(expression)
    try:
        result = bool(_eval_node(tree.body, variables))
        logger.debug(f"Condition {expression!r} evaluated to {result}")
        return result
    except ConditionEvaluationError as e:
        if e.expression is None:
            e.expression = expression
            e.add_details(expression=expression)
        raise
    except Exception as e:
        raise ConditionEvaluationError(f"Evaluation error: {e}", expression=expression) from e


def _check_repetition(left: Any, right: Any) -> None:
    for sequence, count in ((left, right), (right, left)):
        if isinstance(sequence, (str, bytes, list, tuple)) and isinstance(count, int):
            if len(sequence) * max(count, 0) > MAX_SEQUENCE_LENGTH:
                raise ConditionEvaluationError(
                    f"Repeated sequence would exceed {MAX_SEQUENCE_LENGTH} items"
                )


def _eval_node(node: ast.AST, variables: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in variables:
            return variables[node.id]
        lowered = node.id.lower()
        if lowered in _LITERAL_NAMES:
            return _LITERAL_NAMES[lowered]
        raise ConditionEvaluationError(f"Unknown variable: '{node.id}'")

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, variables)
        for op, comparator in zip(node.ops, node.comparators):
            op_func = _SAFE_COMPARE_OPS.get(type(op))
            if op_func is None:
                raise ConditionEvaluationError(f"Unsupported comparison: {type(op).__name__}")
            right = _eval_node(comparator, variables)
            if not op_func(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval_node(value, variables) for value in node.values)
        if isinstance(node.op, ast.Or):
            return any(_eval_node(value, variables) for value in node.values)
        raise ConditionEvaluationError(f"Unsupported boolean op: {type(node.op).__name__}")

    if isinstance(node, ast.UnaryOp):
        op_func = _SAFE_UNARY_OPS.get(type(node.op))
        if op_func is None:
            raise ConditionEvaluationError(f"Unsupported unary op: {type(node.op).__name__}")
        return op_func(_eval_node(node.operand, variables))

    if isinstance(node, ast.BinOp):
        op_func = _SAFE_BIN_OPS.get(type(node.op))
        if op_func is None:
            raise ConditionEvaluationError(f"Unsupported binary op: {type(node.op).__name__}")
        left = _eval_node(node.left, variables)
        right = _eval_node(node.right, variables)
        if isinstance(node.op, ast.Mult):
            _check_repetition(left, right)
        return op_func(left, right)

    if isinstance(node, ast.Subscript):
        value = _eval_node(node.value, variables)
        key = _eval_node(node.slice, variables)
        try:
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ConditionEvaluationError(f"Subscript access failed: {e}") from e

    if isinstance(node, ast.Attribute):
        value = _eval_node(node.value, variables)
        if isinstance(value, Mapping):
            if node.attr in value:
                return value[node.attr]
            raise ConditionEvaluationError(f"Key '{node.attr}' not found")
        raise ConditionEvaluationError("Attribute access is only supported on mappings")

    if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
        items = [_eval_node(element, variables) for element in node.elts]
        if isinstance(node, ast.Set):
            return set(items)
        return tuple(items) if isinstance(node, ast.Tuple) else items

    if isinstance(node, ast.Dict):
        return {
            _eval_node(key, variables): _eval_node(value, variables)
            for key, value in zip(node.keys, node.values)
        }

    if isinstance(node, ast.IfExp):
        if _eval_node(node.test, variables):
            return _eval_node(node.body, variables)
        return _eval_node(node.orelse, variables)

    raise ConditionEvaluationError(f"Unsupported expression type: {type(node).__name__}")


def build_scope(variables: Mapping[str, Any], context: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Names visible to a condition: instance variables plus ``variables`` and ``context`` mappings."""
    scope: Dict[str, Any] = {}
    if context:
        scope.update(context)
    scope.update(variables)
    scope.setdefault("variables", dict(variables))
    scope.setdefault("context", dict(context or {}))
    return scope


def select_edge(edges: Iterable[Edge], result: bool, node_id: str) -> Edge:
    """
    Pick the outgoing edge for a boolean outcome.

    The first edge whose routing label matches the result wins; an unlabeled
    edge is used only when no labeled edge matches.

    Raises:
        NoMatchingEdge: If no edge matches the outcome
    """
    wanted = TRUE_LABELS if result else FALSE_LABELS
    fallback = None
    for edge in edges:
        label = edge.route_label
        if label is None:
            if fallback is None:
                fallback = edge
            continue
        if label in wanted:
            return edge
    if fallback is not None:
        return fallback
    raise NoMatchingEdge(node_id, outcome=result)
