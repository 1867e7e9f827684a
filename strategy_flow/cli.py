from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence

from rich.console import Console
from rich.table import Table

from strategy_flow.flow.engine import StrategyFlowEngine
from strategy_flow.flow.executors import dry_run_fetch
from strategy_flow.flow.metrics import ExecutionMetricsReader
from strategy_flow.flow.models import FlowExecutionResult, NodeKind, TriggerKind, node_key
from strategy_flow.flow.scheduler import StrategyScheduler
from strategy_flow.flow.store import StrategyStore
from strategy_flow.http_fetch import HttpFetcher, HttpxFetcher
from strategy_flow.llm_client import build_llm_client
from strategy_flow.logging_utils import configure_logging
from strategy_flow.notifier import build_notifier
from strategy_flow.seed import ensure_default_strategies
from strategy_flow.settings import AppSettings, load_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="strategy-flow", description="Run strategy flows.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("seed", help="Insert the default strategies.")
    subparsers.add_parser("list", help="List strategies with execution metrics.")

    run_parser = subparsers.add_parser("run", help="Run a strategy once.")
    run_parser.add_argument("strategy_id", type=int)

    history_parser = subparsers.add_parser("history", help="Show recent executions.")
    history_parser.add_argument("strategy_id", type=int)
    history_parser.add_argument("--limit", type=int, default=10)

    show_parser = subparsers.add_parser("show", help="Show the nodes and edges of a strategy.")
    show_parser.add_argument("strategy_id", type=int)

    fetch_parser = subparsers.add_parser(
        "test-fetch",
        help="Send one fetch node's request without running its strategy.",
    )
    fetch_parser.add_argument("node_id", type=int)
    fetch_parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Variable available to placeholders; may be repeated.",
    )

    subparsers.add_parser("serve", help="Schedule enabled strategies until interrupted.")
    return parser


class StrategyCLI:
    def __init__(
        self,
        settings: AppSettings | None = None,
        console: Console | None = None,
        fetcher: HttpFetcher | None = None,
    ) -> None:
        self.console = console or Console(highlight=False)
        self.settings = settings or load_settings()
        self.fetcher = fetcher or HttpxFetcher(timeout_seconds=self.settings.fetch_timeout_seconds)
        self.store = StrategyStore(self.settings.sqlite_path)
        self.metrics = ExecutionMetricsReader(self.store)
        self._engine: StrategyFlowEngine | None = None

    @property
    def engine(self) -> StrategyFlowEngine:
        if self._engine is None:
            self._engine = StrategyFlowEngine(
                self.store,
                fetcher=self.fetcher,
                llm=build_llm_client(self.settings),
                notifier=build_notifier(self.settings),
            )
        return self._engine

    async def dispatch(self, args: argparse.Namespace) -> int:
        if args.command == "seed":
            ids = ensure_default_strategies(self.store)
            self.console.print(f"Seeded strategies: {', '.join(str(item) for item in ids)}")
            return 0
        if args.command == "list":
            self._print_strategies()
            return 0
        if args.command == "run":
            result = await self.engine.execute(args.strategy_id, TriggerKind.MANUAL)
            await self.engine.wait_for_background()
            self._print_result(result)
            return 0 if result.success else 1
        if args.command == "history":
            self._print_history(args.strategy_id, args.limit)
            return 0
        if args.command == "show":
            return self._print_overview(args.strategy_id)
        if args.command == "test-fetch":
            return await self._test_fetch(args.node_id, args.var)
        if args.command == "serve":
            await self._serve()
            return 0
        raise ValueError(f"Unknown command '{args.command}'.")

    async def _serve(self) -> None:
        scheduler = StrategyScheduler(
            store=self.store,
            engine=self.engine,
            default_cron=self.settings.default_cron,
        )
        scheduled = await scheduler.refresh()
        self.console.print(f"Scheduled {len(scheduled)} strategy timer(s). Press Ctrl+C to stop.")
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.shutdown()

    async def _test_fetch(self, node_id: int, assignments: Sequence[str]) -> int:
        node = self.store.get_node(NodeKind.FETCH, node_id)
        if node is None:
            self.console.print(f"Fetch node {node_id} was not found.")
            return 1
        result = await dry_run_fetch(node, self.fetcher, _parse_assignments(assignments))
        self.console.print_json(json.dumps(result, ensure_ascii=False, default=str))
        return 0 if result["success"] else 1

    def _print_overview(self, strategy_id: int) -> int:
        overview = self.store.get_overview(strategy_id)
        if overview is None:
            self.console.print(f"Strategy {strategy_id} was not found.")
            return 1

        strategy = overview.strategy
        nodes = Table(title=f"{strategy.name} ({overview.total_steps} steps)")
        for column in ("Order", "Node", "Name", "Enabled", "Output"):
            nodes.add_column(column)
        for node in overview.nodes:
            nodes.add_row(
                str(node.order_index),
                node_key(node),
                node.name,
                "yes" if node.enabled else "no",
                getattr(node, "output_variable", None) or "-",
            )
        self.console.print(nodes)

        if overview.edges:
            edges = Table(title="Edges")
            for column in ("Source", "Handle", "Target"):
                edges.add_column(column)
            for edge in overview.edges:
                edges.add_row(edge.source_node_id, edge.source_handle, edge.target_node_id)
            self.console.print(edges)
        else:
            self.console.print("No edges; nodes run in order-index groups.")
        return 0

    def _print_strategies(self) -> None:
        table = Table(title="Strategies")
        for column in ("ID", "Name", "Enabled", "Cron", "Runs", "Success %", "Avg s", "Last run"):
            table.add_column(column)
        for strategy in self.store.list_strategies():
            stats = self.metrics.strategy_metrics(strategy.id)
            table.add_row(
                str(strategy.id),
                strategy.name,
                "yes" if strategy.enabled else "no",
                strategy.cron or self.settings.default_cron,
                str(stats.total_runs),
                str(stats.success_rate),
                "-" if stats.avg_execution_seconds is None else str(stats.avg_execution_seconds),
                stats.last_run or "-",
            )
        self.console.print(table)

    def _print_history(self, strategy_id: int, limit: int) -> None:
        table = Table(title=f"Executions of strategy {strategy_id}")
        for column in ("ID", "Trigger", "Status", "Started", "Completed", "Error"):
            table.add_column(column)
        for record in self.metrics.recent_executions(strategy_id, limit=limit):
            table.add_row(
                str(record.id),
                record.trigger,
                record.status,
                record.started_at,
                record.completed_at or "-",
                record.error or "",
            )
        self.console.print(table)

    def _print_result(self, result: FlowExecutionResult) -> None:
        status = "[green]success[/green]" if result.success else "[red]failed[/red]"
        self.console.print(f"Execution {result.execution_id}: {status}")
        if result.error:
            self.console.print(f"Error: {result.error}", markup=False)

        variables = Table(title="Variables")
        variables.add_column("Name")
        variables.add_column("Value")
        for name, value in result.variables.items():
            variables.add_row(name, _preview(value))
        self.console.print(variables)

        logs = Table(title="Node log")
        for column in ("Kind", "Node", "Duration ms", "Output", "Error"):
            logs.add_column(column)
        for entry in result.logs:
            logs.add_row(
                entry.node_kind,
                f"{entry.node_name} (#{entry.node_id})",
                str(entry.duration_ms),
                _preview(entry.output),
                entry.error or "",
            )
        self.console.print(logs)


def _parse_assignments(items: Sequence[str]) -> dict[str, object]:
    variables: dict[str, object] = {}
    for item in items:
        name, sep, raw = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Expected NAME=VALUE, got '{item}'.")
        try:
            variables[name.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            variables[name.strip()] = raw
    return variables


def _preview(value: object, limit: int = 120) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    text = text.replace("\n", " ")
    if len(text) > limit:
        return f"{text[: limit - 3]}..."
    return text


def run(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    app = StrategyCLI()
    try:
        return asyncio.run(app.dispatch(args))
    except KeyboardInterrupt:
        app.console.print("\nInterrupted. Goodbye.")
        return 130
