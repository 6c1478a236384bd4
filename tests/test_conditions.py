"""Tests for the restricted condition language and edge selection."""

import pytest

from flowengine.core.conditions import build_scope, evaluate, select_edge, validate_expression
from flowengine.core.exceptions import ConditionEvaluationError, NoMatchingEdge
from flowengine.models.core import Edge


class TestEvaluate:
    """Expression evaluation against instance variables."""

    @pytest.mark.parametrize("expression,expected", [
        ("amount > 1000", True),
        ("amount <= 1000", False),
        ("$amount > 1000 && region == 'EU'", True),
        ("amount > 5000 || region == 'EU'", True),
        ("not approved", True),
        ("region in ['EU', 'UK']", True),
        ("order['total'] * 2 == 3000", True),
        ("order.total - 500 == 1000", True),
        ("approved == false", True),
    ])
    def test_supported_operations(self, expression, expected):
        """Test comparisons, boolean operators, membership and field access."""
        variables = {"amount": 1500, "region": "EU", "approved": False, "order": {"total": 1500}}
        assert evaluate(expression, variables) is expected

    def test_unknown_variable_raises(self):
        """Test that referencing a missing variable is an evaluation error."""
        with pytest.raises(ConditionEvaluationError) as exc_info:
            evaluate("missing > 1", {})
        assert exc_info.value.expression == "missing > 1"

    @pytest.mark.parametrize("expression", [
        "__import__('os').system('echo hi')",
        "(lambda: 1)()",
        "[x for x in items]",
        "open('/etc/passwd')",
    ])
    def test_code_execution_is_rejected(self, expression):
        """Test that calls, lambdas and comprehensions never run."""
        with pytest.raises(ConditionEvaluationError):
            evaluate(expression, {"items": [1, 2]})
        assert validate_expression(expression)

    def test_attribute_access_on_objects_is_rejected(self):
        """Test that attribute access only works on mappings."""
        with pytest.raises(ConditionEvaluationError):
            evaluate("name.__class__", {"name": "x"})

    @pytest.mark.parametrize("expression,variables", [
        ('note == "a && b"', {"note": "a && b"}),
        ("note == 'x || y'", {"note": "x || y"}),
        ('code == "$USD"', {"code": "$USD"}),
        ("$code == '$USD' && note == \"a && b\"", {"code": "$USD", "note": "a && b"}),
    ])
    def test_string_literals_are_not_rewritten(self, expression, variables):
        """Test that operator and prefix shorthands only apply outside quotes."""
        assert evaluate(expression, variables) is True

    @pytest.mark.parametrize("expression", [
        '"ab" * 100000000 == ""',
        "[0] * 100000000 * 100 == []",
        "100000 * name == ''",
    ])
    def test_large_repetition_is_rejected(self, expression):
        """Test that sequence repetition cannot build huge values."""
        with pytest.raises(ConditionEvaluationError) as exc_info:
            evaluate(expression, {"name": "x"})
        assert "exceed" in exc_info.value.message

    def test_small_repetition_is_allowed(self):
        assert evaluate("'ab' * 3 == 'ababab'", {})
        assert evaluate("[0] * 2 == [0, 0]", {})

    def test_empty_and_invalid_expressions(self):
        """Test validation messages for empty and malformed expressions."""
        assert validate_expression("") == ["Condition expression cannot be empty"]
        assert validate_expression("amount >") != []
        assert validate_expression("amount > 10") == []

    def test_scope_exposes_context_and_variables(self):
        """Test that variables shadow context values and both mappings are reachable."""
        scope = build_scope({"amount": 5}, {"amount": 1, "department": "ops"})
        assert evaluate("amount == 5", scope)
        assert evaluate("department == 'ops'", scope)
        assert evaluate("context.amount == 1", scope)
        assert evaluate("variables['amount'] == 5", scope)


class TestSelectEdge:
    """Routing a boolean outcome onto labeled edges."""

    def _edges(self, *labels):
        return [
            Edge(id=f"e{index}", source="check", target=f"n{index}", condition=label)
            for index, label in enumerate(labels)
        ]

    def test_labeled_edges_win(self):
        """Test true/false and yes/no labels."""
        edges = self._edges("true", "false")
        assert select_edge(edges, True, "check").target == "n0"
        assert select_edge(edges, False, "check").target == "n1"

        edges = self._edges("No", "Yes")
        assert select_edge(edges, True, "check").target == "n1"

    def test_unlabeled_edge_is_fallback(self):
        """Test that an unlabeled edge catches outcomes without a matching label."""
        edges = self._edges(None, "true")
        assert select_edge(edges, True, "check").target == "n1"
        assert select_edge(edges, False, "check").target == "n0"

    def test_no_matching_edge(self):
        """Test that an outcome without a matching or default edge raises."""
        with pytest.raises(NoMatchingEdge) as exc_info:
            select_edge(self._edges("true"), False, "check")
        assert exc_info.value.context["node_id"] == "check"
