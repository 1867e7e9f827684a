from __future__ import annotations

import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable, Sequence

from strategy_flow.flow.models import (
    DEFAULT_HANDLE,
    END_SENTINEL,
    START_SENTINEL,
    FlowEdge,
    FlowNode,
    node_key,
)


LOGGER = logging.getLogger(__name__)
SENTINELS = {START_SENTINEL, END_SENTINEL}


class FlowGraph:
    """Adjacency view over a strategy's persisted edges.

    Only enabled nodes are indexed. Edges whose source is not an indexed node
    (or the ``start`` sentinel) never take part in traversal, and edges that
    point at unknown targets are dropped when the next node set is computed.
    """

    def __init__(self, nodes: Sequence[FlowNode], edges: Sequence[FlowEdge]) -> None:
        self._nodes: dict[str, FlowNode] = {
            node_key(node): node for node in nodes if node.enabled
        }
        self._edges = list(edges)
        self._adjacency: dict[str, list[FlowEdge]] = defaultdict(list)
        for edge in self._edges:
            handle = edge.source_handle or DEFAULT_HANDLE
            self._adjacency[f"{edge.source_node_id}:{handle}"].append(edge)

    @property
    def nodes(self) -> dict[str, FlowNode]:
        return dict(self._nodes)

    def get(self, key: str) -> FlowNode | None:
        return self._nodes.get(key)

    def edges_from(self, key: str, handle: str = DEFAULT_HANDLE) -> list[FlowEdge]:
        return list(self._adjacency.get(f"{key}:{handle}", []))

    def start_nodes(self) -> list[str]:
        sentinel_targets = [
            edge.target_node_id
            for edge in self._edges
            if edge.source_node_id == START_SENTINEL or edge.source_handle == START_SENTINEL
        ]
        sentinel_targets = [key for key in _unique(sentinel_targets) if key in self._nodes]
        if sentinel_targets:
            return sentinel_targets

        with_incoming = {
            edge.target_node_id
            for edge in self._edges
            if edge.source_node_id in self._nodes
        }
        roots = [key for key in self._nodes if key not in with_incoming]
        if roots:
            return roots

        if not self._nodes:
            return []
        lowest = min(node.order_index for node in self._nodes.values())
        return [key for key, node in self._nodes.items() if node.order_index == lowest]

    def next_nodes(self, key: str, handle: str, executed: set[str]) -> list[str]:
        targets: list[str] = []
        for edge in self.edges_from(key, handle):
            target = edge.target_node_id
            if target in executed or target in targets:
                continue
            if target not in self._nodes and target not in SENTINELS:
                LOGGER.warning("Edge %s:%s points at unknown node %s; ignoring.", key, handle, target)
                continue
            targets.append(target)
        return targets

    async def traverse(self, execute: Callable[[FlowNode], Awaitable[str]]) -> list[str]:
        """Run nodes reachable from the start set, one at a time.

        ``execute`` runs a node and returns the handle to follow. A node runs at
        most once per traversal; a second path reaching it is ignored, which is
        also what breaks cycles.
        """
        queue: deque[str] = deque(self.start_nodes())
        executed: set[str] = set()
        order: list[str] = []

        while queue:
            key = queue.popleft()
            if key in executed or key in SENTINELS:
                continue
            node = self._nodes.get(key)
            if node is None:
                LOGGER.warning("Node %s is not an enabled node of this strategy; skipping.", key)
                continue

            handle = await execute(node)
            executed.add(key)
            order.append(key)
            queue.extend(self.next_nodes(key, handle, executed))

        return order


def _unique(items: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        ordered.append(item)
    return ordered
