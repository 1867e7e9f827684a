from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from strategy_flow.flow.engine import StrategyFlowEngine
from strategy_flow.flow.models import FlowExecutionResult, Strategy, TriggerKind
from strategy_flow.flow.store import StrategyStore
from strategy_flow.settings import DEFAULT_CRON


LOGGER = logging.getLogger(__name__)
SEARCH_HORIZON_MINUTES = 60 * 24 * 370


@dataclass(slots=True)
class CronSchedule:
    expression: str
    seconds: set[int]
    minutes: set[int]
    hours: set[int]
    days: set[int]
    months: set[int]
    weekdays: set[int]

    def matches_minute(self, dt: datetime) -> bool:
        cron_weekday = (dt.weekday() + 1) % 7
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.day in self.days
            and dt.month in self.months
            and cron_weekday in self.weekdays
        )


def parse_cron(expression: str) -> CronSchedule:
    """Parse a 5-field cron expression, or a 6-field one with leading seconds."""
    parts = (expression or "").split()
    if len(parts) == 5:
        seconds = {0}
    elif len(parts) == 6:
        seconds = _parse_field(parts[0], 0, 59)
        parts = parts[1:]
    else:
        raise ValueError(
            f"Invalid cron expression '{expression}'. Expected 5 fields "
            "(minute hour day month weekday) or 6 with leading seconds."
        )

    minute, hour, day, month, weekday = parts
    return CronSchedule(
        expression=expression,
        seconds=seconds,
        minutes=_parse_field(minute, 0, 59),
        hours=_parse_field(hour, 0, 23),
        days=_parse_field(day, 1, 31),
        months=_parse_field(month, 1, 12),
        weekdays=_parse_field(weekday, 0, 7, normalize_weekday=True),
    )


def next_run_after(now: datetime, expression: str | CronSchedule) -> datetime:
    schedule = expression if isinstance(expression, CronSchedule) else parse_cron(expression)
    anchor = now.replace(microsecond=0) + timedelta(seconds=1)
    minute_bucket = anchor.replace(second=0)
    ordered_seconds = sorted(schedule.seconds)
    for offset in range(0, SEARCH_HORIZON_MINUTES):
        candidate = minute_bucket + timedelta(minutes=offset)
        if not schedule.matches_minute(candidate):
            continue
        for second in ordered_seconds:
            at = candidate.replace(second=second)
            if at >= anchor:
                return at
    raise ValueError(f"Could not compute next run for cron expression '{schedule.expression}'.")


def next_slot(now: datetime, schedule: CronSchedule, fired: datetime | None = None) -> datetime:
    """Next slot after ``now`` that is also later than the slot that last fired."""
    if fired is not None and fired > now:
        now = fired
    return next_run_after(now, schedule)


def _parse_field(
    pattern: str,
    minimum: int,
    maximum: int,
    normalize_weekday: bool = False,
) -> set[int]:
    normalized_pattern = pattern.strip()
    if normalized_pattern in {"*", "?"}:
        return set(range(minimum, maximum + 1)) - ({7} if normalize_weekday else set())

    values: set[int] = set()
    for token in normalized_pattern.split(","):
        token = token.strip()
        if not token:
            continue

        step = 1
        if "/" in token:
            token, step_str = token.split("/", 1)
            step = int(step_str)
            if step <= 0:
                raise ValueError(f"Invalid cron step in pattern '{pattern}'.")

        if token == "*":
            start, end = minimum, maximum
        elif "-" in token:
            start_str, end_str = token.split("-", 1)
            start = int(start_str)
            end = int(end_str)
            if start > end:
                raise ValueError(f"Invalid cron range '{token}'.")
        else:
            start = int(token)
            end = maximum if step > 1 else start

        for value in range(start, end + 1, step):
            values.add(_normalize_field_value(value, normalize_weekday))

    for item in values:
        if item < minimum or item > maximum:
            raise ValueError(
                f"Cron value '{item}' out of bounds [{minimum}, {maximum}] for pattern '{pattern}'."
            )

    if not values:
        raise ValueError(f"Cron field '{pattern}' resolved to empty value set.")

    return values


def _normalize_field_value(value: int, normalize_weekday: bool) -> int:
    if normalize_weekday and value == 7:
        return 0
    return value


class StrategyScheduler:
    """In-app cron scheduler owning one timer task per enabled strategy.

    Timers only launch runs; each run is its own task, so refreshing or
    stopping a timer never cancels an execution that is already in flight.
    """

    def __init__(
        self,
        *,
        store: StrategyStore,
        engine: StrategyFlowEngine,
        default_cron: str = DEFAULT_CRON,
    ) -> None:
        self._store = store
        self._engine = engine
        self._default_cron = default_cron
        self._timers: dict[int, asyncio.Task[None]] = {}
        self._runs: set[asyncio.Task[FlowExecutionResult]] = set()
        self._lock = asyncio.Lock()

    @property
    def scheduled_strategy_ids(self) -> list[int]:
        return sorted(self._timers)

    async def refresh(self) -> list[int]:
        """Tear down every timer and schedule each enabled strategy again."""
        async with self._lock:
            await self._cancel_timers(list(self._timers))
            for strategy in self._store.list_strategies(enabled_only=True):
                schedule = self._schedule_for(strategy)
                self._timers[strategy.id] = asyncio.create_task(
                    self._timer_loop(strategy.id, schedule),
                    name=f"strategy-{strategy.id}-timer",
                )
                LOGGER.info(
                    "Scheduled strategy %s (%s) with cron '%s'.",
                    strategy.id,
                    strategy.name,
                    schedule.expression,
                )
            return sorted(self._timers)

    async def stop_strategy(self, strategy_id: int) -> bool:
        async with self._lock:
            if strategy_id not in self._timers:
                return False
            await self._cancel_timers([strategy_id])
            LOGGER.info("Stopped schedule for strategy %s.", strategy_id)
            return True

    async def run_now(self, strategy_id: int) -> FlowExecutionResult:
        return await self._engine.execute(strategy_id, TriggerKind.MANUAL)

    async def shutdown(self) -> None:
        async with self._lock:
            await self._cancel_timers(list(self._timers))
        if self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)
        await self._engine.wait_for_background()

    def _schedule_for(self, strategy: Strategy) -> CronSchedule:
        expression = (strategy.cron or "").strip() or self._default_cron
        try:
            return parse_cron(expression)
        except ValueError as exc:
            LOGGER.warning(
                "Strategy %s has an invalid cron expression (%s); using '%s'.",
                strategy.id,
                exc,
                self._default_cron,
            )
            return parse_cron(self._default_cron)

    async def _timer_loop(self, strategy_id: int, schedule: CronSchedule) -> None:
        fired: datetime | None = None
        while True:
            now = datetime.now().astimezone()
            due = next_slot(now, schedule, fired)
            await asyncio.sleep(max(0.0, (due - now).total_seconds()))
            fired = due
            self._launch(strategy_id)

    def _launch(self, strategy_id: int) -> None:
        task = asyncio.create_task(
            self._engine.execute(strategy_id, TriggerKind.SCHEDULED),
            name=f"strategy-{strategy_id}-scheduled-run",
        )
        self._runs.add(task)
        task.add_done_callback(self._on_run_done)

    def _on_run_done(self, task: asyncio.Task[FlowExecutionResult]) -> None:
        self._runs.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Scheduled run %s crashed: %s", task.get_name(), exc)
            return
        result = task.result()
        if not result.success:
            LOGGER.warning("Scheduled run %s failed: %s", task.get_name(), result.error)

    async def _cancel_timers(self, strategy_ids: list[int]) -> None:
        tasks = [self._timers.pop(strategy_id) for strategy_id in strategy_ids if strategy_id in self._timers]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
