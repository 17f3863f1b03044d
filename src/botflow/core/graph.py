"""
工作流图：执行顺序与控制边
"""
import logging
from collections import deque
from typing import Dict, List, Set

from ..exceptions import GraphError
from ..models.workflow import Workflow, Edge


logger = logging.getLogger(__name__)

LOOP_OUTPUT = "loop"


def _orders_execution(edge: Edge, control_bus: bool) -> bool:
    """控制总线模式只看控制边，否则只看非控制的数据边"""
    if control_bus:
        return edge.is_control
    return not edge.is_control


def _reachable(start: str, successors: Dict[str, Set[str]]) -> Set[str]:
    seen: Set[str] = set()
    stack = [start]
    while stack:
        node_id = stack.pop()
        if node_id in seen:
            continue
        seen.add(node_id)
        stack.extend(successors.get(node_id, ()))
    return seen


def loop_back_edges(workflow: Workflow) -> Set[str]:
    """回到循环节点的控制边：源节点可从该循环节点的 loop 输出到达"""
    successors: Dict[str, Set[str]] = {}
    for edge in workflow.edges:
        if edge.is_control:
            successors.setdefault(edge.source_node, set()).add(edge.target_node)

    routes = control_edge_map(workflow)
    back_edges: Set[str] = set()
    bodies: Dict[str, Set[str]] = {}
    for edge in workflow.edges:
        if not edge.is_control:
            continue
        loop_entry = routes.get(edge.target_node, {}).get(LOOP_OUTPUT)
        if loop_entry is None:
            continue
        if edge.target_node not in bodies:
            bodies[edge.target_node] = _reachable(loop_entry, successors)
        if edge.source_node in bodies[edge.target_node]:
            back_edges.add(edge.id)
    return back_edges


def topological_order(workflow: Workflow) -> List[str]:
    """Kahn 算法计算执行顺序，同层按节点声明顺序"""
    node_ids = list(workflow.nodes.keys())
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    in_degree: Dict[str, int] = {node_id: 0 for node_id in node_ids}
    control_bus = workflow.has_control_bus
    back_edges = loop_back_edges(workflow) if control_bus else set()

    for edge in workflow.edges:
        if not _orders_execution(edge, control_bus):
            continue
        if edge.source_node not in adjacency or edge.target_node not in in_degree:
            continue
        if edge.source_node == edge.target_node or edge.id in back_edges:
            continue
        adjacency[edge.source_node].append(edge.target_node)
        in_degree[edge.target_node] += 1

    queue = deque(node_id for node_id in node_ids if in_degree[node_id] == 0)
    order: List[str] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for target in adjacency[node_id]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                queue.append(target)

    if len(order) != len(node_ids):
        placed = set(order)
        unresolved = [node_id for node_id in node_ids if node_id not in placed]
        raise GraphError(
            f"cyclic dependency detected between nodes: {', '.join(unresolved)}",
            node_ids=unresolved
        )

    logger.debug(f"Workflow {workflow.id} order ({'control-bus' if control_bus else 'data'}): {order}")
    return order


def control_edge_map(workflow: Workflow) -> Dict[str, Dict[str, str]]:
    """(节点, 控制输出) -> 目标节点；重复登记保留第一条"""
    routes: Dict[str, Dict[str, str]] = {}
    for edge in workflow.edges:
        if not edge.is_control:
            continue
        routes.setdefault(edge.source_node, {}).setdefault(edge.source_output, edge.target_node)
    return routes


def validate_control_fanout(workflow: Workflow):
    """同一控制输出连到多个不同节点时拒绝执行"""
    targets: Dict[tuple, List[str]] = {}
    for edge in workflow.edges:
        if not edge.is_control:
            continue
        key = (edge.source_node, edge.source_output)
        bucket = targets.setdefault(key, [])
        if edge.target_node not in bucket:
            bucket.append(edge.target_node)

    for (node_id, output), bucket in targets.items():
        if len(bucket) > 1:
            raise GraphError(
                f"ambiguous control output: node '{node_id}' output '{output}' "
                f"connects to multiple nodes: {', '.join(bucket)}",
                node_ids=[node_id] + bucket
            )


def terminal_node_ids(workflow: Workflow) -> List[str]:
    """没有任何出向控制边的节点"""
    sources = {edge.source_node for edge in workflow.edges if edge.is_control}
    return [node_id for node_id in workflow.nodes if node_id not in sources]
