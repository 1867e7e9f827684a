from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from strategy_flow.flow import FlowExecutionResult, StrategyScheduler, StrategyStore, next_run_after, parse_cron
from strategy_flow.flow.scheduler import next_slot


class CronParsingTests(unittest.TestCase):
    def test_step_minutes(self) -> None:
        self.assertEqual(
            next_run_after(datetime(2025, 1, 1, 10, 2, 30), "*/5 * * * *"),
            datetime(2025, 1, 1, 10, 5, 0),
        )

    def test_six_field_expression_uses_leading_seconds(self) -> None:
        self.assertEqual(
            next_run_after(datetime(2025, 1, 1, 10, 2, 30), "*/30 * * * * *"),
            datetime(2025, 1, 1, 10, 3, 0),
        )
        self.assertEqual(
            next_run_after(datetime(2025, 1, 1, 10, 2, 10), "*/30 * * * * *"),
            datetime(2025, 1, 1, 10, 2, 30),
        )

    def test_weekday_and_sunday_alias(self) -> None:
        # 2025-01-01 is a Wednesday.
        self.assertEqual(
            next_run_after(datetime(2025, 1, 1, 12, 0), "0 9 * * 1"),
            datetime(2025, 1, 6, 9, 0),
        )
        self.assertEqual(
            next_run_after(datetime(2025, 1, 1, 12, 0), "0 0 * * 7"),
            datetime(2025, 1, 5, 0, 0),
        )

    def test_ranges_and_lists(self) -> None:
        schedule = parse_cron("0,30 9-11 * * *")
        self.assertEqual(schedule.minutes, {0, 30})
        self.assertEqual(schedule.hours, {9, 10, 11})
        self.assertEqual(schedule.seconds, {0})

    def test_slot_that_already_fired_is_not_returned_again(self) -> None:
        schedule = parse_cron("*/5 * * * *")
        due = datetime(2026, 1, 1, 12, 5, tzinfo=timezone.utc)
        woke_early = due - timedelta(microseconds=500)

        self.assertEqual(next_slot(woke_early, schedule), due)
        self.assertEqual(next_slot(woke_early, schedule, fired=due), datetime(2026, 1, 1, 12, 10, tzinfo=timezone.utc))
        self.assertEqual(
            next_slot(due + timedelta(minutes=7), schedule, fired=due),
            datetime(2026, 1, 1, 12, 15, tzinfo=timezone.utc),
        )

    def test_invalid_expressions_raise(self) -> None:
        for expression in ("", "* * *", "61 * * * *", "*/0 * * * *", "a b c d e"):
            with self.subTest(expression=expression):
                with self.assertRaises(ValueError):
                    parse_cron(expression)


class _RecordingEngine:
    def __init__(self) -> None:
        self.calls: list[tuple[int, str]] = []
        self.waited = False

    async def execute(self, strategy_id, trigger="manual", variables=None) -> FlowExecutionResult:
        self.calls.append((strategy_id, str(getattr(trigger, "value", trigger))))
        return FlowExecutionResult(success=True, variables={}, logs=[], execution_id=len(self.calls))

    async def wait_for_background(self) -> None:
        self.waited = True


class StrategySchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.store = StrategyStore(Path(tmp.name) / "flows.db")
        self.engine = _RecordingEngine()

    def test_refresh_schedules_enabled_strategies_and_falls_back_on_bad_cron(self) -> None:
        good = self.store.create_strategy(name="Good", cron="0 9 * * *")
        bad = self.store.create_strategy(name="Bad", cron="every morning")
        self.store.create_strategy(name="Off", cron="0 9 * * *", enabled=False)
        scheduler = StrategyScheduler(store=self.store, engine=self.engine)

        async def scenario():
            with self.assertLogs("strategy_flow.flow.scheduler", level="WARNING") as logs:
                scheduled = await scheduler.refresh()
            refreshed = await scheduler.refresh()
            stopped = await scheduler.stop_strategy(good)
            stopped_again = await scheduler.stop_strategy(good)
            remaining = scheduler.scheduled_strategy_ids
            await scheduler.shutdown()
            return scheduled, refreshed, stopped, stopped_again, remaining, logs.output

        scheduled, refreshed, stopped, stopped_again, remaining, output = asyncio.run(scenario())

        self.assertEqual(scheduled, [good, bad])
        self.assertEqual(refreshed, [good, bad])
        self.assertTrue(stopped)
        self.assertFalse(stopped_again)
        self.assertEqual(remaining, [bad])
        self.assertTrue(any("invalid cron" in line for line in output))
        self.assertTrue(self.engine.waited)
        self.assertEqual(scheduler.scheduled_strategy_ids, [])

    def test_run_now_executes_manually(self) -> None:
        strategy_id = self.store.create_strategy(name="Manual")
        scheduler = StrategyScheduler(store=self.store, engine=self.engine)

        result = asyncio.run(scheduler.run_now(strategy_id))

        self.assertTrue(result.success)
        self.assertEqual(self.engine.calls, [(strategy_id, "manual")])

    def test_due_timer_launches_scheduled_run(self) -> None:
        strategy_id = self.store.create_strategy(name="Every second", cron="* * * * * *")
        scheduler = StrategyScheduler(store=self.store, engine=self.engine)

        async def scenario():
            await scheduler.refresh()
            for _ in range(40):
                if self.engine.calls:
                    break
                await asyncio.sleep(0.05)
            await scheduler.shutdown()

        asyncio.run(scenario())

        self.assertIn((strategy_id, "scheduled"), self.engine.calls)


if __name__ == "__main__":
    unittest.main()
