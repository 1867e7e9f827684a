from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


class NodeKind(str, Enum):
    FETCH = "fetch"
    GENERATE = "generate"
    CONDITION = "condition"
    TRIGGER = "trigger"
    NOTIFY = "notify"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class TriggerKind(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


START_SENTINEL = "start"
END_SENTINEL = "end"
DEFAULT_HANDLE = "default"
TRUE_HANDLE = "true"
FALSE_HANDLE = "false"


@dataclass(slots=True)
class Strategy:
    id: int
    name: str
    enabled: bool = True
    cron: str | None = None
    description: str | None = None
    triggers: object = None


@dataclass(slots=True)
class FetchNode:
    id: int
    strategy_id: int
    name: str
    url: str
    output_variable: str
    method: str = "GET"
    headers: str | None = None
    body: str | None = None
    json_path: str | None = None
    cast_to_number: bool = False
    order_index: int = 0
    enabled: bool = True
    kind: NodeKind = field(default=NodeKind.FETCH, init=False)


@dataclass(slots=True)
class GenerateNode:
    id: int
    strategy_id: int
    name: str
    user_prompt: str
    output_variable: str
    model_tier: str = "cheap"
    system_prompt: str | None = None
    include_variables: bool = False
    order_index: int = 0
    enabled: bool = True
    kind: NodeKind = field(default=NodeKind.GENERATE, init=False)


@dataclass(slots=True)
class ConditionNode:
    id: int
    strategy_id: int
    name: str
    left_operand: str
    operator: str
    right_operand: str
    true_output_variable: str | None = None
    false_output_variable: str | None = None
    order_index: int = 0
    enabled: bool = True
    kind: NodeKind = field(default=NodeKind.CONDITION, init=False)


@dataclass(slots=True)
class TriggerNode:
    id: int
    strategy_id: int
    name: str
    target_strategy_id: int
    condition_variable: str | None = None
    pass_variables: list[str] = field(default_factory=list)
    wait_for_completion: bool = False
    output_variable: str | None = None
    order_index: int = 0
    enabled: bool = True
    kind: NodeKind = field(default=NodeKind.TRIGGER, init=False)


@dataclass(slots=True)
class NotifyNode:
    id: int
    strategy_id: int
    name: str
    chat_id: str
    message_template: str
    include_variables: bool = False
    only_if_variable: str | None = None
    message_type: str = "info"
    parse_mode: str = "Markdown"
    order_index: int = 0
    enabled: bool = True
    kind: NodeKind = field(default=NodeKind.NOTIFY, init=False)


FlowNode = Union[FetchNode, GenerateNode, ConditionNode, TriggerNode, NotifyNode]

NODE_TYPES: dict[NodeKind, type] = {
    NodeKind.FETCH: FetchNode,
    NodeKind.GENERATE: GenerateNode,
    NodeKind.CONDITION: ConditionNode,
    NodeKind.TRIGGER: TriggerNode,
    NodeKind.NOTIFY: NotifyNode,
}


def node_key(node: FlowNode) -> str:
    """Graph identifier of a node, as referenced by persisted edges."""
    return f"{node.kind.value}_{node.id}"


@dataclass(slots=True)
class FlowEdge:
    strategy_id: int
    source_node_id: str
    target_node_id: str
    source_handle: str = DEFAULT_HANDLE
    target_handle: str = DEFAULT_HANDLE
    id: str | None = None


@dataclass(slots=True)
class ExecutionRecord:
    id: int
    strategy_id: int
    status: str
    trigger: str
    started_at: str
    completed_at: str | None = None
    error: str | None = None


@dataclass(slots=True)
class ExecutionLogEntry:
    node_kind: str
    node_id: int
    node_name: str
    input: object = None
    output: object = None
    error: str | None = None
    duration_ms: int = 0
    execution_id: int | None = None
    created_at: str | None = None


@dataclass(slots=True)
class FlowExecutionResult:
    success: bool
    variables: dict[str, object]
    logs: list[ExecutionLogEntry]
    error: str | None = None
    execution_id: int | None = None


@dataclass(slots=True)
class StrategyOverview:
    strategy: Strategy
    nodes: list[FlowNode]
    edges: list[FlowEdge]

    @property
    def total_steps(self) -> int:
        return len(self.nodes)

    def nodes_of(self, kind: NodeKind) -> list[FlowNode]:
        return [node for node in self.nodes if node.kind == kind]
