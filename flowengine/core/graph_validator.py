"""Structural validation of workflow definitions."""

from collections import deque
from typing import Dict, List, Set

from ..models.core import DefinitionDraft, NodeKind, RuleAction, ValidationResult
from .conditions import validate_expression
from .exceptions import DefinitionInvalid
from .logging import get_logger

logger = get_logger(__name__)


class GraphValidator:
    """Checks a definition for structural soundness.

    Every problem found is reported; nothing is auto-corrected. Errors make a
    definition invalid, warnings are advisory.
    """

    def validate(self, definition: DefinitionDraft) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        node_ids = {node.id for node in definition.nodes}
        starts = [node for node in definition.nodes if node.type == NodeKind.START]
        ends = [node for node in definition.nodes if node.type == NodeKind.END]

        if len(starts) != 1:
            errors.append(f"Definition must have exactly one start node (found {len(starts)})")
        if not ends:
            errors.append("Definition must have at least one end node")

        seen_edge_ids: Set[str] = set()
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
        incoming: Dict[str, int] = {node_id: 0 for node_id in node_ids}
        for edge in definition.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge id: {edge.id}")
            seen_edge_ids.add(edge.id)

            dangling = False
            if edge.source not in node_ids:
                errors.append(f"Edge '{edge.id}' references non-existent source node: {edge.source}")
                dangling = True
            if edge.target not in node_ids:
                errors.append(f"Edge '{edge.id}' references non-existent target node: {edge.target}")
                dangling = True
            if not dangling:
                adjacency[edge.source].append(edge.target)
                incoming[edge.target] += 1

        if len(starts) == 1:
            start = starts[0]
            reachable = self._find_reachable_nodes(start.id, adjacency)
            for node in definition.nodes:
                if node.id not in reachable:
                    errors.append(f"Node '{node.id}' is disconnected: not reachable from start node '{start.id}'")

            outgoing_count = len(adjacency[start.id])
            if outgoing_count != 1:
                errors.append(f"Start node '{start.id}' must have exactly one outgoing edge (found {outgoing_count})")
            if incoming[start.id]:
                errors.append(f"Start node '{start.id}' must not have incoming edges")

        for node in definition.nodes:
            outgoing = adjacency[node.id]
            if node.type == NodeKind.END:
                if outgoing:
                    warnings.append(f"End node '{node.id}' has outgoing edges that will never be followed")
                continue
            if not outgoing and node.type not in (NodeKind.CONDITION, NodeKind.PARALLEL):
                warnings.append(f"Node '{node.id}' has no outgoing edges")
            errors.extend(self._check_node(definition, node, outgoing, node_ids))

        if not errors and self._has_cycles(adjacency):
            warnings.append("Definition contains cycles; make sure every loop can exit")

        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
        if errors:
            logger.debug(f"Definition '{definition.name}' failed validation: {'; '.join(errors)}")
        return result

    def ensure_valid(self, definition: DefinitionDraft) -> ValidationResult:
        """Validate and raise DefinitionInvalid listing every error."""
        result = self.validate(definition)
        if not result.is_valid:
            raise DefinitionInvalid(result.errors, definition_name=definition.name)
        if result.warnings:
            logger.warning(f"Definition '{definition.name}' validation warnings: {'; '.join(result.warnings)}")
        return result

    def _check_node(self, definition: DefinitionDraft, node, outgoing: List[str], node_ids: Set[str]) -> List[str]:
        errors: List[str] = []
        config = node.parsed_config()

        if node.type == NodeKind.CONDITION:
            for problem in validate_expression(config.condition):
                errors.append(f"Condition node '{node.id}': {problem}")
            if not outgoing:
                errors.append(f"Condition node '{node.id}' must have at least one outgoing edge")

        elif node.type == NodeKind.APPROVAL:
            if not config.approvers:
                errors.append(f"Approval node '{node.id}' must list at least one approver")

        elif node.type == NodeKind.PARALLEL:
            if not definition.settings.allow_parallel:
                errors.append(f"Parallel node '{node.id}' is not allowed: parallel execution is disabled")
            if not outgoing:
                errors.append(f"Parallel node '{node.id}' must have at least one outgoing edge")
            if config.merge_node:
                merge = next((n for n in definition.nodes if n.id == config.merge_node), None)
                if merge is None or merge.type != NodeKind.MERGE:
                    errors.append(f"Parallel node '{node.id}' pairs with '{config.merge_node}', which is not a merge node")

        for index, rule in enumerate(node.rules):
            for problem in validate_expression(rule.condition):
                errors.append(f"Rule {index} of node '{node.id}': {problem}")
            if rule.action == RuleAction.GOTO and rule.target not in node_ids:
                errors.append(f"Rule {index} of node '{node.id}' targets non-existent node: {rule.target}")

        return errors

    @staticmethod
    def _find_reachable_nodes(entry_point: str, adjacency: Dict[str, List[str]]) -> Set[str]:
        """Breadth-first search from the entry point."""
        reachable = {entry_point}
        queue = deque([entry_point])
        while queue:
            current = queue.popleft()
            for neighbor in adjacency.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)
        return reachable

    @staticmethod
    def _has_cycles(adjacency: Dict[str, List[str]]) -> bool:
        """Iterative three-colour DFS."""
        white, grey, black = 0, 1, 2
        colour = {node_id: white for node_id in adjacency}
        for root in adjacency:
            if colour[root] != white:
                continue
            stack = [(root, iter(adjacency[root]))]
            colour[root] = grey
            while stack:
                node_id, neighbours = stack[-1]
                advanced = False
                for neighbour in neighbours:
                    if colour[neighbour] == grey:
                        return True
                    if colour[neighbour] == white:
                        colour[neighbour] = grey
                        stack.append((neighbour, iter(adjacency[neighbour])))
                        advanced = True
                        break
                if not advanced:
                    colour[node_id] = black
                    stack.pop()
        return False
