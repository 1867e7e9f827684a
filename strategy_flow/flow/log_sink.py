from __future__ import annotations

import logging

from strategy_flow.flow.models import ExecutionLogEntry, FlowNode
from strategy_flow.flow.store import StrategyStore


LOGGER = logging.getLogger(__name__)


class ExecutionLogSink:
    """Collects one log entry per executed node and persists it immediately.

    Entries become durable as each node completes, so a run that dies midway
    still leaves the completed nodes' records behind.
    """

    def __init__(self, store: StrategyStore, execution_id: int) -> None:
        self._store = store
        self._execution_id = execution_id
        self._entries: list[ExecutionLogEntry] = []

    @property
    def execution_id(self) -> int:
        return self._execution_id

    @property
    def entries(self) -> list[ExecutionLogEntry]:
        return list(self._entries)

    def record(
        self,
        node: FlowNode,
        *,
        input: object = None,
        output: object = None,
        error: str | None = None,
        duration_ms: int = 0,
    ) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(
            node_kind=node.kind.value,
            node_id=node.id,
            node_name=node.name,
            input=input,
            output=output,
            error=error,
            duration_ms=max(0, int(duration_ms)),
            execution_id=self._execution_id,
        )
        self._entries.append(entry)
        try:
            self._store.add_log_entry(self._execution_id, entry)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error(
                "Could not persist log entry for %s node %s (execution %s): %s",
                entry.node_kind,
                entry.node_id,
                self._execution_id,
                exc,
            )
        return entry
