import asyncio
import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import backend_app


BANGKOK = ZoneInfo("Asia/Bangkok")
NEW_YORK = ZoneInfo("America/New_York")


class MovableClock:
    def __init__(self, value: datetime) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += timedelta(seconds=seconds)


class PlayedTodaySetTests(unittest.TestCase):
    def setUp(self) -> None:
        # 23:30 in Bangkok
        self.clock = MovableClock(datetime(2024, 5, 1, 16, 30, tzinfo=timezone.utc))
        self.played = backend_app.PlayedTodaySet(BANGKOK, now_factory=self.clock)

    def test_day_boundary_follows_configured_timezone(self) -> None:
        self.assertEqual(self.played.today_start(), datetime(2024, 5, 1, tzinfo=BANGKOK))
        self.assertEqual(self.played.next_midnight(), datetime(2024, 5, 2, tzinfo=BANGKOK))

    def test_membership_is_exact_pair(self) -> None:
        self.played.add("Yellow", "Coldplay")

        self.assertTrue(self.played.contains("Yellow", "Coldplay"))
        self.assertFalse(self.played.contains("Yellow", "Someone"))
        self.assertEqual(len(self.played), 1)

    def test_plays_before_local_midnight_are_ignored(self) -> None:
        # 23:00 Bangkok on April 30th
        self.played.add("Old", "Band", datetime(2024, 4, 30, 16, 0, tzinfo=timezone.utc))
        self.played.add("New", "Band", datetime(2024, 4, 30, 17, 30, tzinfo=timezone.utc))

        self.assertFalse(self.played.contains("Old", "Band"))
        self.assertTrue(self.played.contains("New", "Band"))

    def test_window_clears_itself_once_the_day_changes(self) -> None:
        self.played.add("Yellow", "Coldplay")
        self.clock.advance(31 * 60)

        self.assertFalse(self.played.contains("Yellow", "Coldplay"))
        self.assertEqual(len(self.played), 0)

    def test_rebuild_replaces_contents(self) -> None:
        self.played.add("Yellow", "Coldplay")
        self.played.rebuild({("Fix You", "Coldplay")})

        self.assertFalse(self.played.contains("Yellow", "Coldplay"))
        self.assertTrue(self.played.contains("Fix You", "Coldplay"))


class DailyResetSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = MovableClock(datetime(2024, 5, 1, 16, 30, tzinfo=timezone.utc))
        self.played = backend_app.PlayedTodaySet(BANGKOK, now_factory=self.clock)
        self.sleeps = []

    def _scheduler(self, sleep) -> backend_app.DailyResetScheduler:
        return backend_app.DailyResetScheduler(self.played, sleep=sleep)

    async def test_seconds_until_local_midnight(self) -> None:
        scheduler = self._scheduler(asyncio.sleep)
        self.assertEqual(scheduler.seconds_until_midnight(), 30 * 60)

    async def test_run_once_resets_at_midnight(self) -> None:
        async def sleep(seconds):
            self.sleeps.append(seconds)
            self.clock.advance(seconds)

        self.played.add("Yellow", "Coldplay")

        await self._scheduler(sleep).run_once()

        self.assertEqual(self.sleeps, [30 * 60])
        self.assertEqual(len(self.played), 0)

    async def test_early_wake_sleeps_again_before_reset(self) -> None:
        async def sleep(seconds):
            self.sleeps.append(seconds)
            # wakes 10 seconds short the first time
            self.clock.advance(seconds - 10 if len(self.sleeps) == 1 else seconds)

        await self._scheduler(sleep).run_once()

        self.assertEqual(self.sleeps, [30 * 60, 10])
        self.assertGreaterEqual(self.clock.value, datetime(2024, 5, 2, tzinfo=BANGKOK))

    async def test_start_and_stop(self) -> None:
        blocker = asyncio.Event()

        async def sleep(seconds):
            await blocker.wait()

        scheduler = self._scheduler(sleep)
        scheduler.start()
        scheduler.start()
        await asyncio.sleep(0)

        self.assertTrue(scheduler.running)
        await scheduler.stop()
        self.assertFalse(scheduler.running)
        await scheduler.stop()


class DaylightSavingResetTests(unittest.IsolatedAsyncioTestCase):
    async def _run_from(self, start: datetime):
        clock = MovableClock(start)
        played = backend_app.PlayedTodaySet(NEW_YORK, now_factory=clock)
        played.add("Yellow", "Coldplay")
        sleeps = []

        async def sleep(seconds):
            sleeps.append(seconds)
            clock.advance(seconds)

        scheduler = backend_app.DailyResetScheduler(played, sleep=sleep)
        expected = scheduler.seconds_until_midnight()
        await scheduler.run_once()
        return expected, sleeps, clock, played

    async def test_spring_forward_day_is_23_hours(self) -> None:
        # 00:30 EST on 2024-03-10; the next midnight is EDT
        expected, sleeps, clock, played = await self._run_from(datetime(2024, 3, 10, 5, 30, tzinfo=timezone.utc))

        self.assertEqual(expected, 22.5 * 3600)
        self.assertEqual(sleeps, [22.5 * 3600])
        self.assertEqual(clock.value, datetime(2024, 3, 11, 4, 0, tzinfo=timezone.utc))
        self.assertEqual(len(played), 0)

    async def test_fall_back_day_is_25_hours(self) -> None:
        # 00:30 EDT on 2024-11-03; the next midnight is EST
        expected, sleeps, clock, _ = await self._run_from(datetime(2024, 11, 3, 4, 30, tzinfo=timezone.utc))

        self.assertEqual(expected, 24.5 * 3600)
        self.assertEqual(sleeps, [24.5 * 3600])
        self.assertEqual(clock.value, datetime(2024, 11, 4, 5, 0, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
