"""
Execution planning - turns a validated workflow into a run order.

``order`` is Kahn's algorithm with a min-heap keyed on declaration index, so
among nodes that are ready at the same time the one declared first runs
first. The same graph therefore always produces the same order.

``waves`` groups nodes into dependency levels: every node in wave ``n`` only
depends on nodes in waves ``< n``, so the nodes of one wave may run
concurrently.

Both expect a workflow that passed ``GraphValidator``.
"""

import heapq
import logging

from skillflow.errors import DependencyUnsatisfiedError
from skillflow.graph.workflow import Workflow, WorkflowNode

logger = logging.getLogger(__name__)


class ExecutionPlanner:
    """Computes dependency-respecting execution orders."""

    def dependencies(self, workflow: Workflow) -> dict[str, list[str]]:
        """Map each node id to the distinct ids it receives connections from."""
        deps: dict[str, list[str]] = {node.id: [] for node in workflow.nodes}
        for source, conn in workflow.edges():
            if conn.target in deps and source not in deps[conn.target]:
                deps[conn.target].append(source)
        return deps

    def order(self, workflow: Workflow) -> list[WorkflowNode]:
        index = {node.id: i for i, node in enumerate(workflow.nodes)}
        deps = self.dependencies(workflow)

        remaining = {node_id: len(sources) for node_id, sources in deps.items()}
        dependents: dict[str, list[str]] = {node_id: [] for node_id in deps}
        for node_id, sources in deps.items():
            for source in sources:
                dependents[source].append(node_id)

        # Input nodes have no incoming connections, so they seed the heap
        ready = [index[node_id] for node_id, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        ordered: list[WorkflowNode] = []
        while ready:
            node = workflow.nodes[heapq.heappop(ready)]
            ordered.append(node)
            for dependent in dependents[node.id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, index[dependent])

        if len(ordered) != len(workflow.nodes):
            placed = {node.id for node in ordered}
            missing = {
                node_id: [s for s in sources if s not in placed]
                for node_id, sources in deps.items()
                if node_id not in placed
            }
            raise DependencyUnsatisfiedError(
                f"Could not order nodes {sorted(missing)}: the graph contains a cycle",
                missing=missing,
            )

        logger.debug(f"Planned order for '{workflow.id}': {[n.id for n in ordered]}")
        return ordered

    def waves(self, workflow: Workflow) -> list[list[WorkflowNode]]:
        deps = self.dependencies(workflow)
        level: dict[str, int] = {}
        for node in self.order(workflow):
            level[node.id] = 1 + max((level[s] for s in deps[node.id]), default=-1)

        waves: list[list[WorkflowNode]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        # Declaration order within a wave
        for node in workflow.nodes:
            waves[level[node.id]].append(node)
        return waves
