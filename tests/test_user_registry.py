import asyncio
import json
import os
import tempfile
import unittest
from unittest import mock

from laskbot.modules.match_tracking.models import GameMode, RegisterResult, TrackedAccount
from laskbot.modules.match_tracking.services.user_registry import UserRegistry


def make_account(puuid: str = "puuid-a", name: str = "Lask", tag: str = "EUNE", last: str = None, last_tft: str = None) -> TrackedAccount:
    return TrackedAccount(puuid=puuid, game_name=name, tag_line=tag, last_match_id=last, last_tft_match_id=last_tft)


class UserRegistryTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.data_path = self._tmp.name
        self.registry = UserRegistry(self.data_path)
        self.users_file = os.path.join(self.data_path, "users.json")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def read_file(self) -> dict:
        with open(self.users_file, encoding="utf-8") as f:
            return json.load(f)

    def temp_files(self) -> list[str]:
        return [name for name in os.listdir(self.data_path) if name.endswith(".tmp")]

    async def test_register_creates_account_with_single_guild(self):
        result = await self.registry.register(1, make_account(last="EUN1_1"), 100)
        self.assertEqual(result, RegisterResult.CREATED)

        account = await self.registry.get(1)
        self.assertEqual(account.registered_guild_ids, [100])
        self.assertEqual(account.last_match_id, "EUN1_1")
        self.assertEqual(self.read_file()["1"]["registeredGuildIds"], [100])

    async def test_registering_same_guild_twice_is_idempotent(self):
        await self.registry.register(1, make_account(), 100)
        result = await self.registry.register(1, make_account(), 100)

        self.assertEqual(result, RegisterResult.ALREADY_REGISTERED)
        account = await self.registry.get(1)
        self.assertEqual(len(account.registered_guild_ids), 1)

    async def test_adding_guild_keeps_existing_watermarks(self):
        await self.registry.register(1, make_account(last="EUN1_1", last_tft="EUN1_T1"), 100)
        await self.registry.update_last_match_id(1, "EUN1_2")

        # 新的注册请求携带的水位线不应覆盖已有的值
        result = await self.registry.register(1, make_account(last="EUN1_999", last_tft=None), 200)

        self.assertEqual(result, RegisterResult.GUILD_ADDED)
        account = await self.registry.get(1)
        self.assertEqual(account.registered_guild_ids, [100, 200])
        self.assertEqual(account.last_match_id, "EUN1_2")
        self.assertEqual(account.last_tft_match_id, "EUN1_T1")

    async def test_registering_different_puuid_replaces_account(self):
        await self.registry.register(1, make_account(puuid="old", last="EUN1_1"), 100)
        result = await self.registry.register(1, make_account(puuid="new", name="Other", last="EUN1_50"), 200)

        self.assertEqual(result, RegisterResult.REPLACED)
        account = await self.registry.get(1)
        self.assertEqual(account.puuid, "new")
        self.assertEqual(account.game_name, "Other")
        self.assertEqual(account.last_match_id, "EUN1_50")
        self.assertEqual(account.registered_guild_ids, [100, 200])

    async def test_removing_last_guild_deletes_account(self):
        await self.registry.register(1, make_account(), 100)
        await self.registry.register(1, make_account(), 200)

        self.assertTrue(await self.registry.remove_from_guild(1, 100))
        self.assertEqual((await self.registry.get(1)).registered_guild_ids, [200])

        self.assertTrue(await self.registry.remove_from_guild(1, 200))
        self.assertIsNone(await self.registry.get(1))
        self.assertNotIn("1", self.read_file())

    async def test_remove_from_unknown_guild_or_user_returns_false(self):
        await self.registry.register(1, make_account(), 100)
        self.assertFalse(await self.registry.remove_from_guild(1, 999))
        self.assertFalse(await self.registry.remove_from_guild(2, 100))

    async def test_watermark_update_for_missing_user_is_noop(self):
        await self.registry.update_last_match_id(42, "EUN1_1")
        self.assertIsNone(await self.registry.get(42))
        self.assertFalse(os.path.exists(self.users_file))

    async def test_concurrent_primary_and_secondary_watermark_updates_both_persist(self):
        await self.registry.register(1, make_account(), 100)

        await asyncio.gather(
            self.registry.update_last_match_id(1, "EUN1_2"),
            self.registry.update_last_tft_match_id(1, "EUN1_T2"),
        )

        account = await self.registry.get(1)
        self.assertEqual(account.last_match_id, "EUN1_2")
        self.assertEqual(account.last_tft_match_id, "EUN1_T2")

        reloaded = await UserRegistry(self.data_path).get(1)
        self.assertEqual(reloaded.last_match_id, "EUN1_2")
        self.assertEqual(reloaded.last_tft_match_id, "EUN1_T2")

    async def test_snapshot_is_isolated_from_later_writes(self):
        await self.registry.register(1, make_account(last="EUN1_1"), 100)
        snapshot = await self.registry.snapshot_all()

        await self.registry.update_watermark(1, GameMode.LOL, "EUN1_2")
        snapshot[0][1].registered_guild_ids.append(555)

        self.assertEqual(snapshot[0][1].last_match_id, "EUN1_1")
        account = await self.registry.get(1)
        self.assertEqual(account.last_match_id, "EUN1_2")
        self.assertEqual(account.registered_guild_ids, [100])

    async def test_failed_rename_keeps_previous_file_and_memory(self):
        await self.registry.register(1, make_account(last="EUN1_1"), 100)
        before = self.read_file()

        # 模拟在临时文件写完、重命名之前崩溃
        with mock.patch("laskbot.core.json_store.os.replace", side_effect=OSError("disk error")):
            with self.assertRaises(OSError):
                await self.registry.update_last_match_id(1, "EUN1_2")

        self.assertEqual(self.read_file(), before)
        self.assertEqual((await self.registry.get(1)).last_match_id, "EUN1_1")
        self.assertEqual(self.temp_files(), [])

    async def test_failed_temp_write_propagates_and_leaves_state(self):
        await self.registry.register(1, make_account(), 100)

        with mock.patch("laskbot.core.json_store.JsonFileStore._write_temp", side_effect=OSError("no space")):
            with self.assertRaises(OSError):
                await self.registry.register(2, make_account(puuid="b"), 100)

        self.assertIsNone(await self.registry.get(2))
        self.assertNotIn("2", self.read_file())

    async def test_concurrent_readers_never_see_partial_file(self):
        await self.registry.register(1, make_account(), 100)
        observed = []

        async def reader():
            for _ in range(20):
                with open(self.users_file, encoding="utf-8") as f:
                    observed.append(json.load(f))
                await asyncio.sleep(0)

        async def writer():
            for i in range(10):
                await self.registry.update_last_match_id(1, f"EUN1_{i}")

        await asyncio.gather(reader(), writer())
        self.assertTrue(all("1" in data for data in observed))

    async def test_remove_guild_everywhere(self):
        await self.registry.register(1, make_account(puuid="a"), 100)
        await self.registry.register(1, make_account(puuid="a"), 200)
        await self.registry.register(2, make_account(puuid="b"), 100)
        await self.registry.register(3, make_account(puuid="c"), 300)

        affected = await self.registry.remove_guild_everywhere(100)

        self.assertEqual(affected, 2)
        self.assertEqual((await self.registry.get(1)).registered_guild_ids, [200])
        self.assertIsNone(await self.registry.get(2))
        self.assertIsNotNone(await self.registry.get(3))

    async def test_watermark_update_for_replaced_account_is_skipped(self):
        await self.registry.register(1, make_account(puuid="a", last="EUN1_1"), 100)
        await self.registry.register(1, make_account(puuid="b", last="EUW1_5"), 100)

        updated = await self.registry.update_watermark(1, GameMode.LOL, "EUN1_2", expected_puuid="a")

        self.assertFalse(updated)
        self.assertEqual((await self.registry.get(1)).last_match_id, "EUW1_5")
        self.assertTrue(await self.registry.update_watermark(1, GameMode.LOL, "EUW1_6", expected_puuid="b"))
        self.assertEqual((await self.registry.get(1)).last_match_id, "EUW1_6")

    async def test_update_account_puuid(self):
        await self.registry.register(1, make_account(puuid="a"), 100)
        self.assertTrue(await self.registry.update_account_puuid(1, "a2"))
        self.assertFalse(await self.registry.update_account_puuid(1, "a2"))
        self.assertEqual((await self.registry.get(1)).puuid, "a2")


class UserRegistryLoadTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.data_path = self._tmp.name

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def write(self, text: str):
        with open(os.path.join(self.data_path, "users.json"), "w", encoding="utf-8") as f:
            f.write(text)

    def test_malformed_file_yields_empty_registry(self):
        self.write("{ not json")
        registry = UserRegistry(self.data_path)
        self.assertEqual(asyncio.run(registry.count()), 0)

    def test_missing_file_yields_empty_registry(self):
        registry = UserRegistry(self.data_path)
        self.assertEqual(asyncio.run(registry.snapshot_all()), [])

    def test_records_that_are_not_objects_are_skipped(self):
        self.write(json.dumps({
            "1": "garbage",
            "2": None,
            "3": {"puuid": "c", "gameName": "C", "tagLine": "Z", "registeredGuildIds": [10]},
        }))
        registry = UserRegistry(self.data_path)
        snapshot = asyncio.run(registry.snapshot_all())
        self.assertEqual([user_id for user_id, _ in snapshot], [3])

    def test_records_without_guilds_are_dropped(self):
        self.write(json.dumps({
            "1": {"puuid": "a", "gameName": "A", "tagLine": "X", "registeredGuildIds": [10]},
            "2": {"puuid": "b", "gameName": "B", "tagLine": "Y", "registeredGuildIds": []},
        }))
        registry = UserRegistry(self.data_path)
        snapshot = asyncio.run(registry.snapshot_all())
        self.assertEqual([user_id for user_id, _ in snapshot], [1])
