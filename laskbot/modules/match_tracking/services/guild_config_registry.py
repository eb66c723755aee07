# laskbot/modules/match_tracking/services/guild_config_registry.py

import logging
from typing import Optional
from laskbot.core.json_store import JsonFileStore
from laskbot.core.rwlock import AsyncReaderWriterLock
from laskbot.modules.match_tracking.models import GuildConfig

logger = logging.getLogger(__name__)


class GuildConfigRegistry:
    """服务器配置（通知频道）的持久化存储，与 UserRegistry 使用各自独立的锁和文件。"""

    def __init__(self, data_path: str = 'data', file_name: str = 'guilds.json'):
        self._store = JsonFileStore(data_path, file_name)
        self._lock = AsyncReaderWriterLock()
        self._configs: dict[int, GuildConfig] = {}
        for guild_id_str, record in self._store.load().items():
            try:
                self._configs[int(guild_id_str)] = GuildConfig.from_dict(record)
            except (AttributeError, TypeError, ValueError):
                logger.warning("跳过无法解析的服务器配置", extra={'guild_id': guild_id_str}, exc_info=True)
        logger.info(f"已加载 {len(self._configs)} 个服务器配置。", extra={'path': str(self._store.path)})

    async def _commit(self, new_configs: dict[int, GuildConfig]):
        payload = {str(guild_id): config.to_dict() for guild_id, config in new_configs.items()}
        await self._store.save(payload)
        self._configs = new_configs

    async def set_notification_channel(self, guild_id: int, channel_id: int):
        async with self._lock.write():
            await self._commit({**self._configs, guild_id: GuildConfig(notification_channel_id=channel_id)})
            logger.info("已设置通知频道", extra={'guild_id': guild_id, 'channel_id': channel_id})

    async def get_notification_channel(self, guild_id: int) -> Optional[int]:
        async with self._lock.read():
            config = self._configs.get(guild_id)
            return config.notification_channel_id if config else None

    async def get_config(self, guild_id: int) -> Optional[GuildConfig]:
        async with self._lock.read():
            config = self._configs.get(guild_id)
            return GuildConfig(config.notification_channel_id) if config else None

    async def get_all_configured_guild_ids(self) -> list[int]:
        async with self._lock.read():
            return [gid for gid, config in self._configs.items() if config.notification_channel_id]

    async def remove_guild(self, guild_id: int) -> bool:
        """移除服务器的全部配置。账号与服务器的关联不受影响。"""
        async with self._lock.write():
            if guild_id not in self._configs:
                return False
            new_configs = dict(self._configs)
            del new_configs[guild_id]
            await self._commit(new_configs)
            logger.info("已移除服务器配置", extra={'guild_id': guild_id})
            return True
