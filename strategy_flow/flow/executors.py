from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from jsonpath_ng.ext import parse as parse_json_path

from strategy_flow.flow.conditions import evaluate_condition, resolve_operand, to_number
from strategy_flow.flow.errors import NodeExecutionError
from strategy_flow.flow.interpolation import format_variable_dump, interpolate
from strategy_flow.flow.models import (
    DEFAULT_HANDLE,
    FALSE_HANDLE,
    TRUE_HANDLE,
    ConditionNode,
    FetchNode,
    FlowNode,
    GenerateNode,
    NodeKind,
    NotifyNode,
    TriggerNode,
)
from strategy_flow.http_fetch import FetchResponse, HttpFetcher
from strategy_flow.llm_client import LanguageModel
from strategy_flow.notifier import Notifier


LOGGER = logging.getLogger(__name__)
GENERATION_FALLBACK = "AI analysis is temporarily unavailable. Please review the raw data."
DEFAULT_CONTENT_TYPE = {"Content-Type": "application/json"}

TriggerRunner = Callable[[TriggerNode, dict[str, Any]], Awaitable[dict[str, Any]]]


@dataclass(slots=True)
class NodeContext:
    strategy_id: int
    execution_id: int
    variables: dict[str, Any]
    fetcher: HttpFetcher
    llm: LanguageModel
    notifier: Notifier
    run_trigger: TriggerRunner


@dataclass(slots=True)
class NodeOutcome:
    output: object
    handle: str = DEFAULT_HANDLE
    assignments: dict[str, Any] = field(default_factory=dict)
    input: object = None


NodeExecutor = Callable[[Any, NodeContext], Awaitable[NodeOutcome]]


def guard_allows(guard: str | None, variables: dict[str, Any]) -> bool:
    if not guard:
        return True
    return bool(variables.get(guard))


async def execute_fetch(node: FetchNode, context: NodeContext) -> NodeOutcome:
    method, url, headers, body = _build_request(node, context.variables)
    snapshot = {"method": method, "url": url, "json_path": node.json_path}
    response = await _send(context.fetcher, method, url, headers, body)

    value = response.body
    if node.json_path:
        value = extract_json_path(node.json_path, value)
    if node.cast_to_number:
        value = _cast_number(node, value)

    return NodeOutcome(
        output=value,
        assignments={node.output_variable: value},
        input=snapshot,
    )


def _build_request(
    node: FetchNode, variables: dict[str, Any]
) -> tuple[str, str, dict[str, str], str | None]:
    method = (node.method or "GET").upper()
    url = interpolate(node.url, variables)
    headers = dict(DEFAULT_CONTENT_TYPE)
    headers.update(_render_headers(node.headers, variables))
    body = interpolate(node.body, variables) if node.body else None
    return method, url, headers, body


async def _send(
    fetcher: HttpFetcher,
    method: str,
    url: str,
    headers: dict[str, str],
    body: str | None,
) -> FetchResponse:
    try:
        response = await fetcher.fetch(method=method, url=url, headers=headers, body=body)
    except Exception as exc:  # noqa: BLE001
        raise NodeExecutionError(str(exc)) from exc
    if not response.ok:
        detail = f"HTTP {response.status}"
        if response.reason:
            detail = f"{detail}: {response.reason}"
        raise NodeExecutionError(detail)
    return response


async def dry_run_fetch(
    node: FetchNode,
    fetcher: HttpFetcher,
    variables: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Send a fetch node's request once, outside of any execution.

    Nothing is persisted and no error is raised: a failed request yields
    ``success: False`` with the error text, and an unusable JSON path is
    reported inside ``extracted_value`` while the response data is kept.
    """
    LOGGER.info("Dry run of fetch node %s: %s %s", node.name, node.method, node.url)
    try:
        method, url, headers, body = _build_request(node, variables or {})
        response = await _send(fetcher, method, url, headers, body)
    except NodeExecutionError as exc:
        LOGGER.warning("Dry run of fetch node %s failed: %s", node.name, exc)
        return {"success": False, "error": str(exc), "json_path": node.json_path}

    extracted: object = None
    if node.json_path:
        try:
            extracted = extract_json_path(node.json_path, response.body)
        except NodeExecutionError as exc:
            extracted = {"error": str(exc)}
    return {
        "success": True,
        "data": response.body,
        "extracted_value": extracted,
        "json_path": node.json_path,
    }


def extract_json_path(path: str, document: object) -> object:
    """First match of ``path`` in ``document``, or None when nothing matches."""
    try:
        expression = parse_json_path(path)
    except Exception as exc:  # noqa: BLE001
        raise NodeExecutionError(f"Invalid JSON path '{path}': {exc}") from exc
    matches = expression.find(document)
    if not matches:
        return None
    return matches[0].value


def _render_headers(template: str | None, variables: dict[str, Any]) -> dict[str, str]:
    if not template:
        return {}
    rendered = interpolate(template, variables)
    try:
        parsed = json.loads(rendered)
    except json.JSONDecodeError as exc:
        raise NodeExecutionError(f"Headers are not valid JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise NodeExecutionError("Headers must be a JSON object.")
    return {str(key): str(value) for key, value in parsed.items()}


def _cast_number(node: FetchNode, value: object) -> object:
    number = to_number(value)
    if number is None:
        LOGGER.warning(
            "Fetch node %s: could not cast %r to a number; keeping the original value.",
            node.name,
            value,
        )
        return value
    if number.is_integer():
        return int(number)
    return number


async def execute_generate(node: GenerateNode, context: NodeContext) -> NodeOutcome:
    variables = context.variables
    prompt = node.user_prompt or ""
    if node.include_variables:
        dump = format_variable_dump(variables)
        if dump:
            prompt = f"{dump}\n\n{prompt}"
    prompt = interpolate(prompt, variables)
    system_prompt = interpolate(node.system_prompt, variables) or None
    snapshot = {"tier": node.model_tier, "prompt": prompt, "system_prompt": system_prompt}

    try:
        text = await context.llm.generate(prompt, tier=node.model_tier, system_prompt=system_prompt)
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning(
            "Generate node %s failed (%s); using the fallback message.",
            node.name,
            exc,
        )
        text = GENERATION_FALLBACK

    return NodeOutcome(
        output=text,
        assignments={node.output_variable: text},
        input=snapshot,
    )


async def execute_condition(node: ConditionNode, context: NodeContext) -> NodeOutcome:
    """Sets only the flag of the branch taken; the other flag is left as it was."""
    variables = context.variables
    left = resolve_operand(node.left_operand, variables)
    right = resolve_operand(node.right_operand, variables)
    snapshot = {"left": left, "operator": node.operator, "right": right}

    try:
        result = evaluate_condition(left, node.operator, right)
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("Condition node %s evaluated to false: %s", node.name, exc)
        result = False

    assignments: dict[str, Any] = {}
    flag = node.true_output_variable if result else node.false_output_variable
    if flag:
        assignments[flag] = True

    return NodeOutcome(
        output=result,
        handle=TRUE_HANDLE if result else FALSE_HANDLE,
        assignments=assignments,
        input=snapshot,
    )


async def execute_trigger(node: TriggerNode, context: NodeContext) -> NodeOutcome:
    variables = context.variables
    snapshot = {
        "target_strategy_id": node.target_strategy_id,
        "condition_variable": node.condition_variable,
        "wait_for_completion": node.wait_for_completion,
    }
    if not guard_allows(node.condition_variable, variables):
        result: dict[str, Any] = {"triggered": False}
    else:
        forwarded = {name: variables[name] for name in node.pass_variables if name in variables}
        snapshot["pass_variables"] = forwarded
        result = await context.run_trigger(node, forwarded)

    assignments = {node.output_variable: result} if node.output_variable else {}
    return NodeOutcome(output=result, assignments=assignments, input=snapshot)


async def execute_notify(node: NotifyNode, context: NodeContext) -> NodeOutcome:
    variables = context.variables
    if not guard_allows(node.only_if_variable, variables):
        return NodeOutcome(
            output={"sent": False},
            input={"only_if_variable": node.only_if_variable},
        )

    message = interpolate(node.message_template, variables)
    if node.include_variables:
        dump = format_variable_dump(variables)
        if dump:
            message = f"{message}\n\n{dump}"
    snapshot = {"chat_id": node.chat_id, "message": message, "message_type": node.message_type}

    try:
        delivery_id = await context.notifier.send(
            message,
            chat_id=node.chat_id or None,
            parse_mode=node.parse_mode,
            severity=node.message_type,
        )
    except Exception as exc:  # noqa: BLE001
        raise NodeExecutionError(str(exc)) from exc

    return NodeOutcome(
        output={"sent": True, "message_id": delivery_id},
        input=snapshot,
    )


NODE_EXECUTORS: dict[NodeKind, NodeExecutor] = {
    NodeKind.FETCH: execute_fetch,
    NodeKind.GENERATE: execute_generate,
    NodeKind.CONDITION: execute_condition,
    NodeKind.TRIGGER: execute_trigger,
    NodeKind.NOTIFY: execute_notify,
}


async def execute_node(node: FlowNode, context: NodeContext) -> NodeOutcome:
    executor = NODE_EXECUTORS.get(node.kind)
    if executor is None:
        raise NodeExecutionError(f"No executor registered for node kind '{node.kind}'.")
    return await executor(node, context)
