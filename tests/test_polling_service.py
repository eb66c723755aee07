import asyncio
import tempfile
import unittest

from laskbot.modules.match_tracking.models import GameMode, TrackedAccount
from laskbot.modules.match_tracking.services.polling_service import MatchPollingService, PollerState
from laskbot.modules.match_tracking.services.user_registry import UserRegistry
from fakes import FakeClock, FakeGateway, RecordingSink


class MatchPollingServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.registry = UserRegistry(self._tmp.name)
        self.gateway = FakeGateway()
        self.sink = RecordingSink(self.registry)
        self.clock = FakeClock()
        self.poller = MatchPollingService(
            self.gateway, self.registry, self.sink,
            startup_delay_seconds=0, sleep=self.clock.sleep,
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def register(self, user_id: int, puuid: str, last: str = None, last_tft: str = None, guild_id: int = 100):
        account = TrackedAccount(puuid=puuid, game_name=f"N{user_id}", tag_line="EUNE", last_match_id=last, last_tft_match_id=last_tft)
        await self.registry.register(user_id, account, guild_id)

    async def test_new_match_updates_watermark_and_notifies_once(self):
        await self.register(1, "A", last="M1")
        self.gateway.set_latest(GameMode.LOL, "A", "M2")
        self.gateway.set_details(GameMode.LOL, "M2", "A", win=True)

        notified = await self.poller.run_tick()

        self.assertEqual(notified, 1)
        self.assertIn(('details', GameMode.LOL, "M2"), self.gateway.calls)
        self.assertEqual((await self.registry.get(1)).last_match_id, "M2")
        self.assertEqual(self.sink.notifications, [(GameMode.LOL, "A", "M2")])

    async def test_watermark_is_stored_before_notification(self):
        await self.register(1, "A", last="M1")
        self.gateway.set_latest(GameMode.LOL, "A", "M2")
        self.gateway.set_details(GameMode.LOL, "M2", "A")

        await self.poller.run_tick()

        self.assertEqual(self.sink.watermarks_seen, ["M2"])

    async def test_seeded_watermark_produces_no_notification(self):
        await self.register(1, "A", last="M5", last_tft="T5")
        self.gateway.set_latest(GameMode.LOL, "A", "M5")
        self.gateway.set_latest(GameMode.TFT, "A", "T5")

        self.assertEqual(await self.poller.run_tick(), 0)
        self.assertEqual(self.sink.notifications, [])
        self.assertFalse(any(call[0] == 'details' for call in self.gateway.calls))

    async def test_second_tick_does_not_repeat_notification(self):
        await self.register(1, "A", last="M1")
        self.gateway.set_latest(GameMode.LOL, "A", "M2")
        self.gateway.set_details(GameMode.LOL, "M2", "A")

        await self.poller.run_tick()
        await self.poller.run_tick()

        self.assertEqual(len(self.sink.notifications), 1)

    async def test_missing_details_leave_watermark_untouched(self):
        await self.register(1, "A", last="M1")
        self.gateway.set_latest(GameMode.LOL, "A", "M2")

        self.assertEqual(await self.poller.run_tick(), 0)
        self.assertEqual((await self.registry.get(1)).last_match_id, "M1")

    async def test_tick_is_skipped_while_rate_limited(self):
        await self.register(1, "A", last="M1")
        self.gateway.set_latest(GameMode.LOL, "A", "M2")
        self.gateway.rate_limited = True

        self.assertEqual(await self.poller.run_tick(), 0)
        self.assertEqual(self.gateway.calls, [])

    async def test_empty_registry_makes_no_calls(self):
        self.assertEqual(await self.poller.run_tick(), 0)
        self.assertEqual(self.gateway.calls, [])

    async def test_failure_for_one_account_does_not_stop_others(self):
        await self.register(1, "A", last="M1")
        await self.register(2, "B", last="M1")
        await self.register(3, "C", last="M1")
        self.gateway.fail_latest_for.add("B")
        for puuid in ("A", "C"):
            self.gateway.set_latest(GameMode.LOL, puuid, f"{puuid}-M2")
            self.gateway.set_details(GameMode.LOL, f"{puuid}-M2", puuid)

        notified = await self.poller.run_tick()

        self.assertEqual(notified, 2)
        self.assertCountEqual([n[1] for n in self.sink.notifications], ["A", "C"])

    async def test_modes_are_checked_independently(self):
        await self.register(1, "A", last="M1", last_tft="T1")
        self.gateway.set_latest(GameMode.LOL, "A", "M1")
        self.gateway.set_latest(GameMode.TFT, "A", "T2")
        self.gateway.set_details(GameMode.TFT, "T2", "A", placement=1)

        self.assertEqual(await self.poller.run_tick(), 1)

        account = await self.registry.get(1)
        self.assertEqual(account.last_match_id, "M1")
        self.assertEqual(account.last_tft_match_id, "T2")
        self.assertEqual(self.sink.notifications, [(GameMode.TFT, "A", "T2")])

    async def test_primary_failure_does_not_block_secondary_mode(self):
        await self.register(1, "A", last="M1", last_tft="T1")
        self.gateway.set_latest(GameMode.TFT, "A", "T2")
        self.gateway.set_details(GameMode.TFT, "T2", "A")

        original = self.gateway.get_latest

        async def flaky_latest(mode, puuid):
            if mode is GameMode.LOL:
                raise RuntimeError("lol endpoint down")
            return await original(mode, puuid)

        self.gateway.get_latest = flaky_latest

        self.assertEqual(await self.poller.run_tick(), 1)
        self.assertEqual(self.sink.notifications, [(GameMode.TFT, "A", "T2")])

    async def test_secondary_mode_can_be_disabled(self):
        poller = MatchPollingService(self.gateway, self.registry, self.sink, include_tft=False, sleep=self.clock.sleep)
        await self.register(1, "A", last="M1", last_tft="T1")
        self.gateway.set_latest(GameMode.TFT, "A", "T2")
        self.gateway.set_details(GameMode.TFT, "T2", "A")

        self.assertEqual(await poller.run_tick(), 0)
        self.assertFalse(any(call[1] is GameMode.TFT for call in self.gateway.calls))

    async def test_spawns_are_paced(self):
        for user_id, puuid in enumerate(("A", "B", "C"), start=1):
            await self.register(user_id, puuid)

        await self.poller.run_tick()

        self.assertEqual(self.clock.sleeps, [self.poller.spawn_delay] * 2)
        self.assertAlmostEqual(self.poller.spawn_delay, 0.4)

    async def test_concurrency_is_bounded(self):
        for user_id in range(1, 8):
            await self.register(user_id, f"P{user_id}")

        in_flight = 0
        peak = 0

        async def slow_latest(mode, puuid):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return await FakeGateway.get_latest(self.gateway, mode, puuid)

        self.gateway.get_latest = slow_latest
        await self.poller.run_tick()

        self.assertLessEqual(peak, 3)
        self.assertGreater(peak, 1)

    async def test_account_unregistered_mid_scan_is_not_notified(self):
        await self.register(1, "A", last="M1")
        self.gateway.set_latest(GameMode.LOL, "A", "M2")
        self.gateway.set_details(GameMode.LOL, "M2", "A")

        original = self.gateway.get_details

        async def details_then_unregister(mode, match_id):
            response = await original(mode, match_id)
            await self.registry.remove_from_guild(1, 100)
            return response

        self.gateway.get_details = details_then_unregister

        self.assertEqual(await self.poller.run_tick(), 0)
        self.assertEqual(self.sink.notifications, [])
        self.assertIsNone(await self.registry.get(1))

    async def test_account_switched_mid_scan_keeps_new_watermark(self):
        await self.register(1, "A", last="A1")
        self.gateway.set_latest(GameMode.LOL, "A", "A2")
        self.gateway.set_details(GameMode.LOL, "A2", "A")
        self.gateway.set_latest(GameMode.LOL, "B", "B1")

        original = self.gateway.get_details
        switched = False

        async def details_then_switch(mode, match_id):
            nonlocal switched
            response = await original(mode, match_id)
            if not switched:
                switched = True
                await self.register(1, "B", last="B1")
            return response

        self.gateway.get_details = details_then_switch

        self.assertEqual(await self.poller.run_tick(), 0)
        self.assertEqual(await self.poller.run_tick(), 0)

        self.assertEqual(self.sink.notifications, [])
        account = await self.registry.get(1)
        self.assertEqual(account.puuid, "B")
        self.assertEqual(account.last_match_id, "B1")

    async def test_check_user_now_notifies_without_moving_watermark(self):
        await self.register(1, "A", last="M2")
        self.gateway.set_latest(GameMode.LOL, "A", "M2")
        self.gateway.set_details(GameMode.LOL, "M2", "A")

        self.assertTrue(await self.poller.check_user_now(1))
        self.assertFalse(await self.poller.check_user_now(99))
        self.assertEqual(self.sink.notifications, [(GameMode.LOL, "A", "M2")])
        self.assertEqual((await self.registry.get(1)).last_match_id, "M2")

    async def test_start_stop_lifecycle(self):
        ticks = asyncio.Event()

        async def fake_tick():
            ticks.set()
            return 0

        self.poller.run_tick = fake_tick
        self.poller.start()
        await asyncio.wait_for(ticks.wait(), timeout=1)
        self.assertIn(self.poller.state, (PollerState.IDLE, PollerState.SCANNING))

        await self.poller.close()
        self.assertEqual(self.poller.state, PollerState.STOPPED)
        self.assertTrue(self.poller.task.done())

        self.poller.start()
        self.assertTrue(self.poller.task.done())

    async def test_cancelling_tick_cancels_account_tasks(self):
        await self.register(1, "A", last="M1")
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def hanging_latest(mode, puuid):
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        self.gateway.get_latest = hanging_latest
        tick = asyncio.create_task(self.poller.run_tick())
        await asyncio.wait_for(started.wait(), timeout=1)
        tick.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await tick

        await asyncio.wait_for(cancelled.wait(), timeout=1)
        self.assertEqual(self.poller.state, PollerState.IDLE)
