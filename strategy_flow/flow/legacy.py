from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence

from strategy_flow.flow.models import FlowNode


class LegacyOrderResolver:
    """Scheduler for strategies authored before explicit edges existed.

    Enabled nodes are grouped by order index. Each group runs as a concurrent
    batch and the next group starts only once every member has settled; the
    first failing member (in group order) aborts the run.
    """

    def __init__(self, nodes: Sequence[FlowNode]) -> None:
        groups: dict[int, list[FlowNode]] = defaultdict(list)
        for node in nodes:
            if node.enabled:
                groups[int(node.order_index)].append(node)
        self._batches = [groups[index] for index in sorted(groups)]

    def batches(self) -> list[list[FlowNode]]:
        return [list(batch) for batch in self._batches]

    async def run(self, execute: Callable[[FlowNode], Awaitable[object]]) -> None:
        for batch in self._batches:
            outcomes = await asyncio.gather(
                *(execute(node) for node in batch),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
