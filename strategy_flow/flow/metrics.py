from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from strategy_flow.flow.models import ExecutionRecord
from strategy_flow.flow.store import StrategyStore


@dataclass(slots=True)
class StrategyMetrics:
    strategy_id: int
    total_runs: int
    successful_runs: int
    failed_runs: int
    success_rate: int
    last_run: str | None
    avg_execution_seconds: int | None


@dataclass(slots=True)
class NodeDuration:
    node_kind: str
    node_id: int
    node_name: str
    duration_ms: int
    failed: bool


class ExecutionMetricsReader:
    """Read-only statistics derived from execution rows and node log entries."""

    def __init__(self, store: StrategyStore) -> None:
        self._store = store

    def strategy_metrics(self, strategy_id: int) -> StrategyMetrics:
        stats = self._store.execution_stats(strategy_id)
        total = stats["total"]
        successful = stats["successful"]
        success_rate = round(successful / total * 100) if total else 0
        avg_seconds = stats["avg_seconds"]
        return StrategyMetrics(
            strategy_id=strategy_id,
            total_runs=total,
            successful_runs=successful,
            failed_runs=stats["failed"],
            success_rate=int(success_rate),
            last_run=_to_iso_utc(stats["last_run"]),
            avg_execution_seconds=round(avg_seconds) if avg_seconds is not None else None,
        )

    def all_metrics(self) -> list[StrategyMetrics]:
        return [self.strategy_metrics(strategy.id) for strategy in self._store.list_strategies()]

    def recent_executions(self, strategy_id: int, limit: int = 10) -> list[ExecutionRecord]:
        return self._store.recent_executions(strategy_id, limit=limit)

    def node_durations(self, execution_id: int) -> list[NodeDuration]:
        return [
            NodeDuration(
                node_kind=entry.node_kind,
                node_id=entry.node_id,
                node_name=entry.node_name,
                duration_ms=entry.duration_ms,
                failed=entry.error is not None,
            )
            for entry in self._store.list_log_entries(execution_id)
        ]


def _to_iso_utc(value: str | None) -> str | None:
    # sqlite CURRENT_TIMESTAMP is "YYYY-MM-DD HH:MM:SS" in UTC.
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()
