from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from functools import partial
from typing import Any

from strategy_flow.flow.errors import FlowExecutionError, NodeExecutionError
from strategy_flow.flow.executors import NodeContext, execute_node
from strategy_flow.flow.graph import FlowGraph
from strategy_flow.flow.hooks import FlowHookRegistry
from strategy_flow.flow.legacy import LegacyOrderResolver
from strategy_flow.flow.log_sink import ExecutionLogSink
from strategy_flow.flow.models import (
    FlowExecutionResult,
    FlowNode,
    TriggerKind,
    TriggerNode,
    node_key,
)
from strategy_flow.flow.store import StrategyStore
from strategy_flow.http_fetch import HttpFetcher
from strategy_flow.llm_client import LanguageModel
from strategy_flow.notifier import Notifier


LOGGER = logging.getLogger(__name__)


class StrategyFlowEngine:
    """Runs a strategy's node graph against a fresh variable environment.

    Strategies with persisted edges are traversed through :class:`FlowGraph`;
    strategies without any edges fall back to order-index batches. ``run``
    never raises: every failure ends up in the returned result's ``error``.
    """

    def __init__(
        self,
        store: StrategyStore,
        *,
        fetcher: HttpFetcher,
        llm: LanguageModel,
        notifier: Notifier,
        hook_registry: FlowHookRegistry | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._llm = llm
        self._notifier = notifier
        self._hooks = hook_registry or FlowHookRegistry()
        self._background: set[asyncio.Task[FlowExecutionResult]] = set()

    @property
    def hooks(self) -> FlowHookRegistry:
        return self._hooks

    @property
    def store(self) -> StrategyStore:
        return self._store

    @property
    def background_tasks(self) -> set[asyncio.Task[FlowExecutionResult]]:
        return set(self._background)

    async def execute(
        self,
        strategy_id: int,
        trigger: TriggerKind | str = TriggerKind.MANUAL,
        variables: Mapping[str, Any] | None = None,
    ) -> FlowExecutionResult:
        """Record a new execution, run it, and store its terminal status."""
        execution_id = self._start_execution(strategy_id, trigger)
        return await self._run_and_finalize(strategy_id, execution_id, variables)

    async def run(
        self,
        strategy_id: int,
        execution_id: int,
        variables: Mapping[str, Any] | None = None,
    ) -> FlowExecutionResult:
        environment: dict[str, Any] = dict(variables or {})
        sink = ExecutionLogSink(self._store, execution_id)
        started = time.perf_counter()
        await self._hooks.emit(
            "before_run",
            {"strategy_id": strategy_id, "execution_id": execution_id, "variables": dict(environment)},
        )

        try:
            strategy = self._store.get_strategy(strategy_id)
            if strategy is None:
                raise FlowExecutionError(f"Strategy {strategy_id} was not found.")

            nodes = self._store.list_nodes(strategy_id)
            edges = self._store.list_edges(strategy_id)
            context = NodeContext(
                strategy_id=strategy_id,
                execution_id=execution_id,
                variables=environment,
                fetcher=self._fetcher,
                llm=self._llm,
                notifier=self._notifier,
                run_trigger=self._run_trigger,
            )
            execute = partial(self._run_node, context=context, sink=sink)

            LOGGER.info(
                "Running strategy %s (%s) as execution %s with %s node(s), %s edge(s).",
                strategy.id,
                strategy.name,
                execution_id,
                len(nodes),
                len(edges),
            )
            if edges:
                await FlowGraph(nodes, edges).traverse(execute)
            else:
                await LegacyOrderResolver(nodes).run(execute)

            result = FlowExecutionResult(
                success=True,
                variables=environment,
                logs=sink.entries,
                execution_id=execution_id,
            )
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or exc.__class__.__name__
            LOGGER.error("Execution %s of strategy %s failed: %s", execution_id, strategy_id, error)
            result = FlowExecutionResult(
                success=False,
                variables=environment,
                logs=sink.entries,
                error=error,
                execution_id=execution_id,
            )

        LOGGER.info(
            "Execution %s of strategy %s finished (%s) in %.2fs.",
            execution_id,
            strategy_id,
            "success" if result.success else "failed",
            time.perf_counter() - started,
        )
        await self._hooks.emit(
            "after_run",
            {"strategy_id": strategy_id, "execution_id": execution_id, "result": result},
        )
        return result

    async def wait_for_background(self) -> None:
        """Wait for fire-and-forget sub-runs, including any they spawn themselves."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _run_node(
        self,
        node: FlowNode,
        *,
        context: NodeContext,
        sink: ExecutionLogSink,
    ) -> str:
        key = node_key(node)
        await self._hooks.emit(
            "before_node",
            {"execution_id": context.execution_id, "node": key, "variables": dict(context.variables)},
        )
        started = time.perf_counter()
        try:
            outcome = await execute_node(node, context)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            sink.record(node, error=message, duration_ms=_elapsed_ms(started))
            LOGGER.error("Step %s (%s) failed: %s", node.name, key, message)
            await self._hooks.emit(
                "after_node",
                {"execution_id": context.execution_id, "node": key, "error": message},
            )
            raise NodeExecutionError(f'Node "{node.name}" failed: {message}') from exc

        context.variables.update(outcome.assignments)
        sink.record(
            node,
            input=outcome.input,
            output=outcome.output,
            duration_ms=_elapsed_ms(started),
        )
        await self._hooks.emit(
            "after_node",
            {
                "execution_id": context.execution_id,
                "node": key,
                "output": outcome.output,
                "handle": outcome.handle,
            },
        )
        return outcome.handle

    async def _run_trigger(self, node: TriggerNode, forwarded: dict[str, Any]) -> dict[str, Any]:
        target_id = int(node.target_strategy_id)
        execution_id = self._start_execution(target_id, TriggerKind.MANUAL)
        LOGGER.info(
            "Trigger node %s started strategy %s as execution %s (wait=%s).",
            node.name,
            target_id,
            execution_id,
            node.wait_for_completion,
        )

        if node.wait_for_completion:
            result = await self._run_and_finalize(target_id, execution_id, forwarded)
            return {
                "triggered": True,
                "wait_for_completion": True,
                "execution_id": execution_id,
                "success": result.success,
                "error": result.error,
            }

        task = asyncio.create_task(
            self._run_and_finalize(target_id, execution_id, forwarded),
            name=f"strategy-{target_id}-execution-{execution_id}",
        )
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return {
            "triggered": True,
            "wait_for_completion": False,
            "execution_id": execution_id,
        }

    def _start_execution(self, strategy_id: int, trigger: TriggerKind | str) -> int:
        if self._store.get_strategy(strategy_id) is None:
            raise FlowExecutionError(f"Strategy {strategy_id} was not found.")
        return self._store.start_execution(strategy_id, TriggerKind(trigger))

    async def _run_and_finalize(
        self,
        strategy_id: int,
        execution_id: int,
        variables: Mapping[str, Any] | None,
    ) -> FlowExecutionResult:
        result = await self.run(strategy_id, execution_id, variables)
        if result.success:
            self._store.complete_execution(execution_id)
        else:
            self._store.fail_execution(execution_id, result.error)

        await self._hooks.emit(
            "execution_finished",
            {
                "strategy_id": strategy_id,
                "execution_id": execution_id,
                "success": result.success,
                "error": result.error,
            },
        )
        return result

    def _on_background_done(self, task: asyncio.Task[FlowExecutionResult]) -> None:
        self._background.discard(task)
        if task.cancelled():
            LOGGER.warning("Background execution %s was cancelled.", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Background execution %s crashed: %s", task.get_name(), exc)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
