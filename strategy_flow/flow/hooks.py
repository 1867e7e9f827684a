from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable


LOGGER = logging.getLogger(__name__)
HookCallback = Callable[[dict[str, Any]], object | Awaitable[object]]


@dataclass(slots=True)
class HookInvocation:
    event: str
    callback_name: str
    result: object | None


class FlowHookRegistry:
    """Lifecycle hook registry for strategy runs.

    Hooks observe a run; a failing callback is logged and never changes the
    outcome of the run that emitted the event.
    """

    def __init__(self) -> None:
        self._callbacks: dict[str, list[HookCallback]] = defaultdict(list)

    def register(self, event: str, callback: HookCallback) -> None:
        if event not in FLOW_HOOK_EVENTS:
            raise ValueError(f"Unknown hook event '{event}'.")
        self._callbacks[event].append(callback)

    def clear(self, event: str | None = None) -> None:
        if event is None:
            self._callbacks.clear()
            return
        self._callbacks.pop(event, None)

    def callbacks_for(self, event: str) -> list[HookCallback]:
        return list(self._callbacks.get(event, []))

    async def emit(self, event: str, context: dict[str, Any]) -> list[HookInvocation]:
        invocations: list[HookInvocation] = []
        for callback in self._callbacks.get(event, []):
            callback_name = getattr(callback, "__name__", callback.__class__.__name__)
            try:
                result = callback(context)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Hook %s for %s failed: %s", callback_name, event, exc)
                result = None
            invocations.append(
                HookInvocation(
                    event=event,
                    callback_name=str(callback_name),
                    result=result,
                )
            )
        return invocations


FLOW_HOOK_EVENTS = {
    "before_run",
    "after_run",
    "before_node",
    "after_node",
    "execution_finished",
}
