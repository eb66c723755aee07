# laskbot/modules/match_tracking/services/user_registry.py

import logging
from typing import Optional
from laskbot.core.json_store import JsonFileStore
from laskbot.core.rwlock import AsyncReaderWriterLock
from laskbot.modules.match_tracking.models import GameMode, RegisterResult, TrackedAccount

logger = logging.getLogger(__name__)


class UserRegistry:
    """
    Discord 用户 -> Riot 账号 的持久化映射，按服务器记录注册关系。

    所有写操作都遵循：获取写锁 -> 基于当前映射构建新映射 -> 原子写盘 -> 替换内存引用 -> 释放写锁。
    写盘失败时内存与磁盘都停留在旧版本，异常抛给调用方。
    内存中的 TrackedAccount 对象一旦放入映射就不再原地修改，对外只返回副本。
    """

    def __init__(self, data_path: str = 'data', file_name: str = 'users.json'):
        self._store = JsonFileStore(data_path, file_name)
        self._lock = AsyncReaderWriterLock()
        self._accounts: dict[int, TrackedAccount] = self._load()

    def _load(self) -> dict[int, TrackedAccount]:
        raw = self._store.load()
        accounts: dict[int, TrackedAccount] = {}
        for user_id_str, record in raw.items():
            if not isinstance(record, dict):
                logger.warning("跳过格式不正确的用户记录（不是对象）", extra={'user_id': user_id_str})
                continue
            try:
                account = TrackedAccount.from_dict(record)
                user_id = int(user_id_str)
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.warning("跳过无法解析的用户记录", extra={'user_id': user_id_str}, exc_info=True)
                continue
            if not account.registered_guild_ids:
                # 没有任何服务器的账号不应该存在
                logger.warning("跳过没有关联服务器的用户记录", extra={'user_id': user_id_str})
                continue
            accounts[user_id] = account
        logger.info(f"已加载 {len(accounts)} 个被追踪的账号。", extra={'path': str(self._store.path)})
        return accounts

    async def _commit(self, new_accounts: dict[int, TrackedAccount]):
        """必须在写锁内调用。"""
        payload = {str(user_id): account.to_dict() for user_id, account in new_accounts.items()}
        await self._store.save(payload)
        self._accounts = new_accounts

    async def register(self, user_id: int, account: TrackedAccount, guild_id: int) -> RegisterResult:
        """
        为用户在指定服务器注册账号。
        - 用户尚无账号：创建，服务器集合为 {guild_id}
        - 同一 PUUID：追加服务器（已存在则不做任何事），保留水位线
        - 不同 PUUID：整体替换账号身份与水位线，保留该用户已有的服务器
        """
        async with self._lock.write():
            existing = self._accounts.get(user_id)
            log_context = {'user_id': user_id, 'guild_id': guild_id, 'puuid': account.puuid}

            if existing is None:
                new_account = account.copy()
                new_account.registered_guild_ids = [guild_id]
                result = RegisterResult.CREATED
            elif existing.puuid != account.puuid:
                new_account = account.copy()
                new_account.registered_guild_ids = list(existing.registered_guild_ids)
                if guild_id not in new_account.registered_guild_ids:
                    new_account.registered_guild_ids.append(guild_id)
                result = RegisterResult.REPLACED
                log_context['previous_puuid'] = existing.puuid
            else:
                new_account = existing.copy()
                # 同一账号只刷新显示名称（Riot ID 可以改名），水位线保持不变
                new_account.game_name = account.game_name or existing.game_name
                new_account.tag_line = account.tag_line or existing.tag_line
                if guild_id in new_account.registered_guild_ids:
                    result = RegisterResult.ALREADY_REGISTERED
                    if new_account == existing:
                        logger.debug("用户已在该服务器注册，无需写入", extra=log_context)
                        return result
                else:
                    new_account.registered_guild_ids.append(guild_id)
                    result = RegisterResult.GUILD_ADDED

            await self._commit({**self._accounts, user_id: new_account})
            log_context['result'] = result.name
            logger.info("用户账号注册已更新", extra=log_context)
            return result

    async def update_watermark(self, user_id: int, mode: GameMode, match_id: str, expected_puuid: Optional[str] = None) -> bool:
        """
        更新指定模式的水位线。用户在此期间被删除时静默忽略。
        给出 expected_puuid 时，只有账号仍是同一个 Riot 账号才会更新。
        返回 False 表示账号已不存在或已更换。
        """
        async with self._lock.write():
            existing = self._accounts.get(user_id)
            if existing is None:
                logger.debug("更新水位线时用户已不存在，忽略", extra={'user_id': user_id, 'mode': mode.value})
                return False
            if expected_puuid is not None and existing.puuid != expected_puuid:
                logger.info(
                    "更新水位线时用户已更换账号，忽略",
                    extra={'user_id': user_id, 'mode': mode.value, 'puuid': existing.puuid, 'expected_puuid': expected_puuid}
                )
                return False
            if existing.get_watermark(mode) == match_id:
                return True
            new_account = existing.copy()
            new_account.set_watermark(mode, match_id)
            await self._commit({**self._accounts, user_id: new_account})
            logger.debug("水位线已更新", extra={'user_id': user_id, 'mode': mode.value, 'match_id': match_id})
            return True

    async def update_last_match_id(self, user_id: int, match_id: str):
        await self.update_watermark(user_id, GameMode.LOL, match_id)

    async def update_last_tft_match_id(self, user_id: int, match_id: str):
        await self.update_watermark(user_id, GameMode.TFT, match_id)

    async def update_account_puuid(self, user_id: int, new_puuid: str) -> bool:
        """Riot 的 PUUID 与 API Key 绑定，更换 Key 后需要迁移已保存的 PUUID。"""
        async with self._lock.write():
            existing = self._accounts.get(user_id)
            if existing is None or existing.puuid == new_puuid:
                return False
            new_account = existing.copy()
            new_account.puuid = new_puuid
            await self._commit({**self._accounts, user_id: new_account})
            logger.info("已更新账号 PUUID", extra={'user_id': user_id, 'previous_puuid': existing.puuid, 'puuid': new_puuid})
            return True

    async def remove_from_guild(self, user_id: int, guild_id: int) -> bool:
        """
        从指定服务器移除用户的注册。服务器集合为空时删除整个账号。
        返回 False 表示用户没有账号或未在该服务器注册。
        """
        async with self._lock.write():
            existing = self._accounts.get(user_id)
            if existing is None or guild_id not in existing.registered_guild_ids:
                return False

            new_accounts = dict(self._accounts)
            remaining = [gid for gid in existing.registered_guild_ids if gid != guild_id]
            if remaining:
                new_account = existing.copy()
                new_account.registered_guild_ids = remaining
                new_accounts[user_id] = new_account
            else:
                del new_accounts[user_id]

            await self._commit(new_accounts)
            logger.info(
                "用户已从服务器移除",
                extra={'user_id': user_id, 'guild_id': guild_id, 'account_deleted': not remaining}
            )
            return True

    async def remove_guild_everywhere(self, guild_id: int) -> int:
        """机器人离开服务器时调用：把该服务器从所有账号中移除，返回受影响的账号数。"""
        async with self._lock.write():
            new_accounts: dict[int, TrackedAccount] = {}
            affected = 0
            for user_id, account in self._accounts.items():
                if guild_id not in account.registered_guild_ids:
                    new_accounts[user_id] = account
                    continue
                affected += 1
                remaining = [gid for gid in account.registered_guild_ids if gid != guild_id]
                if remaining:
                    new_account = account.copy()
                    new_account.registered_guild_ids = remaining
                    new_accounts[user_id] = new_account

            if affected:
                await self._commit(new_accounts)
                logger.info(f"已从 {affected} 个账号中移除服务器。", extra={'guild_id': guild_id})
            return affected

    async def get(self, user_id: int) -> Optional[TrackedAccount]:
        async with self._lock.read():
            account = self._accounts.get(user_id)
            return account.copy() if account else None

    async def snapshot_all(self) -> list[tuple[int, TrackedAccount]]:
        """返回所有账号的完整副本，遍历期间不会阻塞写者。"""
        async with self._lock.read():
            return [(user_id, account.copy()) for user_id, account in self._accounts.items()]

    async def count(self) -> int:
        async with self._lock.read():
            return len(self._accounts)
