"""
工作流图验证器
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..models.workflow import Workflow, Node, NodeType


logger = logging.getLogger(__name__)

HYBRID_STRATEGIES = ("agent_first", "tool_first", "parallel", "coordinated")
TRANSFORM_TYPES = ("script", "path", "template")

UNVISITED, VISITING, VISITED = 0, 1, 2


@dataclass
class ValidationResult:
    """验证结果"""
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


class WorkflowValidator:
    """检查环、孤立节点以及各类型节点的必需配置"""

    def validate(self, workflow: Workflow) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        node_ids = [node.id for node in workflow.nodes]
        duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
        if duplicates:
            errors.append(f"Duplicate node IDs: {duplicates}")

        known = set(node_ids)
        for edge in workflow.edges:
            if edge.source not in known:
                errors.append(f"Edge source '{edge.source}' not found in nodes")
            if edge.target not in known:
                errors.append(f"Edge target '{edge.target}' not found in nodes")

        cycle = self.find_cycle(workflow)
        if cycle:
            errors.append(f"Workflow contains a cycle: {' -> '.join(cycle)}")

        if len(workflow.nodes) > 1:
            connected = set()
            for edge in workflow.edges:
                connected.add(edge.source)
                connected.add(edge.target)
            for node_id in node_ids:
                if node_id not in connected:
                    warnings.append(f"Node '{node_id}' is not connected to any other node")

        for node in workflow.nodes:
            errors.extend(self._validate_node_config(node))

        result = ValidationResult(valid=not errors, errors=errors, warnings=warnings)
        if not result.valid:
            logger.debug(f"Workflow {workflow.id} failed validation: {errors}")
        return result

    def find_cycle(self, workflow: Workflow) -> Optional[List[str]]:
        """三色深度优先遍历，返回第一个发现的环"""
        adjacency: Dict[str, List[str]] = {node.id: [] for node in workflow.nodes}
        for edge in workflow.edges:
            if edge.source in adjacency and edge.target in adjacency:
                adjacency[edge.source].append(edge.target)

        color = {node_id: UNVISITED for node_id in adjacency}
        stack: List[str] = []

        def visit(node_id: str) -> Optional[List[str]]:
            color[node_id] = VISITING
            stack.append(node_id)
            for target in adjacency[node_id]:
                if color[target] == VISITING:
                    return stack[stack.index(target):] + [target]
                if color[target] == UNVISITED:
                    found = visit(target)
                    if found:
                        return found
            stack.pop()
            color[node_id] = VISITED
            return None

        for node_id in adjacency:
            if color[node_id] == UNVISITED:
                found = visit(node_id)
                if found:
                    return found
        return None

    def _validate_node_config(self, node: Node) -> List[str]:
        """按节点类型检查必需配置"""
        config = node.config or {}
        errors = []

        if node.type == NodeType.AGENT and not config.get("agent_id"):
            errors.append(f"Agent node '{node.id}' requires agent_id")

        elif node.type == NodeType.TOOL and not config.get("tool_id"):
            errors.append(f"Tool node '{node.id}' requires tool_id")

        elif node.type == NodeType.HYBRID:
            if not config.get("agent_id"):
                errors.append(f"Hybrid node '{node.id}' requires agent_id")
            if not config.get("tool_ids"):
                errors.append(f"Hybrid node '{node.id}' requires a non-empty tool_ids list")
            strategy = config.get("strategy", "agent_first")
            if strategy not in HYBRID_STRATEGIES:
                errors.append(f"Hybrid node '{node.id}' has unknown strategy '{strategy}'")

        elif node.type == NodeType.CONDITION and not config.get("condition"):
            errors.append(f"Condition node '{node.id}' requires condition")

        elif node.type == NodeType.TRANSFORMER:
            transform_type = config.get("transform_type")
            if transform_type not in TRANSFORM_TYPES:
                errors.append(
                    f"Transformer node '{node.id}' requires transform_type in {list(TRANSFORM_TYPES)}"
                )

        elif node.type == NodeType.LOOP:
            max_iterations = config.get("max_iterations", 100)
            if not isinstance(max_iterations, int) or max_iterations < 1:
                errors.append(f"Loop node '{node.id}' max_iterations must be a positive integer")

        return errors
