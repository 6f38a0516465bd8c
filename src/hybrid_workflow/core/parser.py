"""
工作流解析器
"""
import yaml
import json
from typing import Dict, Any, List, Union
from pathlib import Path

from ..models.workflow import (
    Workflow, Node, Edge, NodeType, ExecutionSettings, ErrorHandlingMode, RetryPolicy
)
from ..exceptions import WorkflowParseError


class WorkflowParser:
    """工作流解析器，只负责结构转换，图的合法性由验证器检查"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }

    def parse(self, source: Union[str, Path, Dict[str, Any], Workflow]) -> Workflow:
        """
        解析工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、字符串、字典或已构建的工作流

        Returns:
            Workflow: 解析后的工作流对象
        """
        if isinstance(source, Workflow):
            return source

        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if '\n' not in source and len(source) < 1024:
                path = Path(source)
                if path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> Workflow:
        """解析工作流文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        try:
            content = file_path.read_text(encoding='utf-8')
        except OSError as e:
            raise WorkflowParseError(f"Cannot read workflow file {file_path}: {e}")

        return self._parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> Workflow:
        """解析工作流字符串（JSON 是 YAML 的子集，先按 YAML 解析）"""
        return self._parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def _parse_dict(self, data: Any) -> Workflow:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")

        if 'workflow' in data and isinstance(data['workflow'], dict):
            data = data['workflow']

        try:
            workflow = Workflow(
                name=data.get('name', ''),
                version=int(data.get('version', 1)),
                description=data.get('description'),
                variables=dict(data.get('variables') or {}),
                triggers=list(data.get('triggers') or []),
                settings=self._parse_settings(data.get('settings') or {}),
                organization_id=data.get('organization_id'),
                created_by=data.get('created_by'),
                is_active=data.get('is_active', True),
                metadata=dict(data.get('metadata') or {})
            )
            if data.get('id'):
                workflow.id = str(data['id'])

            dependencies: Dict[str, List[str]] = {}
            for node_data in data.get('nodes') or []:
                node = self._parse_node(node_data)
                workflow.nodes.append(node)
                dependencies[node.id] = list(node_data.get('dependencies') or [])

            for edge_data in data.get('edges') or []:
                workflow.edges.append(self._parse_edge(edge_data))
        except WorkflowParseError:
            raise
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise WorkflowParseError(f"Invalid workflow definition: {e}")

        # 如果没有显式定义边，从节点依赖关系推断
        if not workflow.edges:
            workflow.edges = [
                Edge(source=dep_id, target=node_id)
                for node_id, deps in dependencies.items()
                for dep_id in deps
            ]

        return workflow

    def _parse_settings(self, data: Dict[str, Any]) -> ExecutionSettings:
        """解析执行设置"""
        return ExecutionSettings(
            timeout=data.get('timeout'),
            max_concurrency=int(data.get('max_concurrency', 10)),
            error_handling=ErrorHandlingMode(data.get('error_handling', 'stop')),
            retry_policy=RetryPolicy.from_dict(data.get('retry_policy'))
        )

    def _parse_node(self, data: Dict[str, Any]) -> Node:
        """解析节点"""
        if not data.get('id'):
            raise WorkflowParseError(f"Node without id: {data}")

        try:
            node_type = NodeType(data.get('type', 'agent'))
        except ValueError:
            raise WorkflowParseError(f"Unknown node type '{data.get('type')}' for node '{data['id']}'")

        config = dict(data.get('config') or {})
        if 'agent' in data:
            config.setdefault('agent_id', data['agent'])
        if 'tool' in data:
            config.setdefault('tool_id', data['tool'])

        return Node(
            id=str(data['id']),
            name=data.get('name', ''),
            type=node_type,
            config=config,
            timeout=data.get('timeout'),
            metadata=dict(data.get('metadata') or {})
        )

    def _parse_edge(self, data: Dict[str, Any]) -> Edge:
        """解析边"""
        edge = Edge(
            source=str(data.get('from', data.get('source', ''))),
            target=str(data.get('to', data.get('target', ''))),
            condition=data.get('condition')
        )
        if data.get('id'):
            edge.id = str(data['id'])
        return edge

    def to_dict(self, workflow: Workflow) -> Dict[str, Any]:
        """序列化为可再次解析的字典"""
        settings = workflow.settings
        return {
            'id': workflow.id,
            'name': workflow.name,
            'version': workflow.version,
            'description': workflow.description,
            'variables': workflow.variables,
            'triggers': workflow.triggers,
            'settings': {
                'timeout': settings.timeout,
                'max_concurrency': settings.max_concurrency,
                'error_handling': settings.error_handling.value,
                'retry_policy': settings.retry_policy.to_dict()
            },
            'nodes': [
                {
                    'id': node.id,
                    'name': node.name,
                    'type': node.type.value,
                    'config': node.config,
                    'timeout': node.timeout,
                    'metadata': node.metadata
                }
                for node in workflow.nodes
            ],
            'edges': [
                {'id': edge.id, 'from': edge.source, 'to': edge.target, 'condition': edge.condition}
                for edge in workflow.edges
            ],
            'organization_id': workflow.organization_id,
            'created_by': workflow.created_by,
            'is_active': workflow.is_active,
            'metadata': workflow.metadata
        }
