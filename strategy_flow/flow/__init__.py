from strategy_flow.flow.conditions import evaluate_condition, resolve_operand
from strategy_flow.flow.engine import StrategyFlowEngine
from strategy_flow.flow.errors import ConditionEvaluationError, FlowExecutionError, NodeExecutionError
from strategy_flow.flow.graph import FlowGraph
from strategy_flow.flow.hooks import FLOW_HOOK_EVENTS, FlowHookRegistry, HookInvocation
from strategy_flow.flow.interpolation import format_variable_dump, interpolate
from strategy_flow.flow.legacy import LegacyOrderResolver
from strategy_flow.flow.log_sink import ExecutionLogSink
from strategy_flow.flow.metrics import ExecutionMetricsReader, NodeDuration, StrategyMetrics
from strategy_flow.flow.models import (
    ConditionNode,
    ExecutionLogEntry,
    ExecutionRecord,
    ExecutionStatus,
    FetchNode,
    FlowEdge,
    FlowExecutionResult,
    GenerateNode,
    NodeKind,
    NotifyNode,
    Strategy,
    StrategyOverview,
    TriggerKind,
    TriggerNode,
    node_key,
)
from strategy_flow.flow.scheduler import StrategyScheduler, next_run_after, parse_cron
from strategy_flow.flow.store import StrategyStore

__all__ = [
    "ConditionEvaluationError",
    "ConditionNode",
    "ExecutionLogEntry",
    "ExecutionLogSink",
    "ExecutionMetricsReader",
    "ExecutionRecord",
    "ExecutionStatus",
    "FLOW_HOOK_EVENTS",
    "FetchNode",
    "FlowEdge",
    "FlowExecutionError",
    "FlowExecutionResult",
    "FlowGraph",
    "FlowHookRegistry",
    "GenerateNode",
    "HookInvocation",
    "LegacyOrderResolver",
    "NodeDuration",
    "NodeExecutionError",
    "NodeKind",
    "NotifyNode",
    "Strategy",
    "StrategyFlowEngine",
    "StrategyMetrics",
    "StrategyOverview",
    "StrategyScheduler",
    "StrategyStore",
    "TriggerKind",
    "TriggerNode",
    "evaluate_condition",
    "format_variable_dump",
    "interpolate",
    "next_run_after",
    "node_key",
    "parse_cron",
    "resolve_operand",
]
