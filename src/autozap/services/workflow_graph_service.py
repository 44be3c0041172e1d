"""
Workflow Graph Service
Structural checks on a workflow's node graph and next-node selection.
"""
from collections import Counter
from typing import Optional, List, Dict, Iterable

# Utils
from autozap.utils.log_utils import LogUtil

# Exceptions
from autozap.exceptions.app_exception import ValidationException

# Models
from autozap.models.workflow_data import WorkflowData, WorkflowEdge


class WorkflowGraphService:
    """
    Service for validating workflow graphs and walking their edges.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def validate_workflow(self, workflow: WorkflowData) -> None:
        """
        Check the structure of a manual workflow.

        Collects every violation before raising, so the editor can show them all at once:
        exactly one trigger node, unique node ids, known node types, edges between existing
        nodes and at most one edge per source handle.

        Raises:
            ValidationException: with the list of violations under fields["graph"]
        """
        if workflow.is_ai_only:
            return

        errors: List[str] = []
        node_ids = [node.id for node in workflow.nodes]

        trigger_count = sum(1 for node in workflow.nodes if node.type == "trigger")
        if trigger_count == 0:
            errors.append("Workflow must have a trigger node")
        elif trigger_count > 1:
            errors.append("Workflow must have exactly one trigger node")

        for node_id, count in Counter(node_ids).items():
            if count > 1:
                errors.append(f"Duplicate node id: {node_id}")

        known_ids = set(node_ids)
        for edge in workflow.edges:
            if edge.source not in known_ids:
                errors.append(f"Edge {edge.id} references missing source node {edge.source}")
            if edge.target not in known_ids:
                errors.append(f"Edge {edge.id} references missing target node {edge.target}")

        handles = Counter((edge.source, edge.sourceHandle) for edge in workflow.edges if edge.sourceHandle)
        for (source, handle), count in handles.items():
            if count > 1:
                errors.append(f"Node {source} has more than one edge on handle '{handle}'")

        if errors:
            self.log_util.warning(
                service_name="WorkflowGraphService",
                message=f"Workflow '{workflow.name}' failed validation: {errors}"
            )
            raise ValidationException(message="; ".join(errors), fields={"graph": errors})

    @staticmethod
    def derive_uses_ai(is_ai_only: bool, nodes: Iterable) -> bool:
        return bool(is_ai_only) or any(node.type == "ai" for node in nodes)

    @staticmethod
    def get_next_node_id(node_id: str, edges: List[WorkflowEdge], source_handle: Optional[str] = None) -> Optional[str]:
        """
        Target of the edge leaving node_id on source_handle.

        Falls back to the first outgoing edge when the handle is not given or has no edge,
        and returns None when the node has no outgoing edge at all.
        """
        outgoing = [edge for edge in edges if edge.source == node_id]
        if not outgoing:
            return None
        if source_handle:
            for edge in outgoing:
                if edge.sourceHandle == source_handle:
                    return edge.target
        return outgoing[0].target

    @staticmethod
    def index_nodes(workflow: WorkflowData) -> Dict[str, object]:
        return {node.id: node for node in workflow.nodes}
