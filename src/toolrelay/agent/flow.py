"""
Flow runner: executes a graph of tool-call nodes without involving a model.

Nodes are ordered by their edges (a topological sort); when the edges contain a cycle the nodes run
in the order they were given.  Every node goes through :meth:`ToolInvoker.execute`, so tool lookup
shares the resolver memo with ``chat()`` and failures become flagged results instead of aborting
the run.
"""

import logging
from collections import deque
from typing import (
    Dict,
    List,
    Sequence,
)

from toolrelay.agent.tool_executor import ToolInvoker
from toolrelay.core.schema import (
    FlowEdge,
    FlowNode,
    FlowNodeResult,
    FlowRunRequest,
    FlowRunResult,
)

logger = logging.getLogger(__name__)


def topological_order(node_ids: Sequence[str], edges: Sequence[FlowEdge]) -> List[str]:
    """
    Order *node_ids* so that every edge's source precedes its target.

    Edges touching unknown nodes are ignored.  Ties keep the given node order.  If the edges form a
    cycle the original order is returned unchanged.
    """
    known = set(node_ids)
    in_degree: Dict[str, int] = {node_id: 0 for node_id in node_ids}
    successors: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    for edge in edges:
        if edge.source not in known or edge.target not in known:
            continue
        successors[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    queue = deque(node_id for node_id in node_ids if in_degree[node_id] == 0)
    order: List[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for target in successors[current]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                queue.append(target)

    if len(order) != len(node_ids):
        logger.warning("Flow edges contain a cycle; running nodes in the given order")
        return list(node_ids)
    return order


class FlowRunner:
    """Runs :class:`FlowRunRequest` graphs one node at a time."""

    def __init__(self, invoker: ToolInvoker) -> None:
        self._invoker = invoker

    async def run(self, request: FlowRunRequest) -> FlowRunResult:
        nodes: Dict[str, FlowNode] = {node.id: node for node in request.nodes if node.runnable}
        if not nodes:
            return FlowRunResult()

        order = topological_order(list(nodes), request.edges) if request.edges else list(nodes)
        logger.info("Running flow with %d tool node(s)", len(order))

        results: List[FlowNodeResult] = []
        for node_id in order:
            node = nodes[node_id]
            tool_name = node.data.name or ""
            outcome = await self._invoker.execute(tool_name, node.data.args)
            logger.debug("Flow node '%s' (%s) error=%s", node_id, tool_name, outcome.is_error)
            results.append(
                FlowNodeResult(
                    node_id=node_id,
                    tool_name=tool_name,
                    success=not outcome.is_error,
                    output=outcome.text,
                    is_error=outcome.is_error,
                )
            )
        return FlowRunResult(results=results, executed_count=len(results))
