# laskbot/modules/match_tracking/models.py

import copy
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Optional


class GameMode(Enum):
    """
    被监视的游戏模式。两种模式的比赛 ID 空间互不相交，各自拥有独立的水位线字段。
    """
    LOL = 'lol'
    TFT = 'tft'

    @property
    def watermark_attr(self) -> str:
        return 'last_match_id' if self is GameMode.LOL else 'last_tft_match_id'

    @property
    def label(self) -> str:
        return 'League of Legends' if self is GameMode.LOL else 'Teamfight Tactics'


class RegisterResult(Enum):
    CREATED = 1
    GUILD_ADDED = 2
    ALREADY_REGISTERED = 3
    REPLACED = 4


@dataclass
class TrackedAccount:
    """
    代表一个被追踪的 Riot 账号。
    对应 users.json 中以 Discord 用户 ID 为键的一条记录。
    """
    puuid: str
    game_name: str
    tag_line: str
    last_match_id: Optional[str] = None
    last_tft_match_id: Optional[str] = None
    registered_guild_ids: list[int] = field(default_factory=list)

    @property
    def riot_id(self) -> str:
        return f"{self.game_name}#{self.tag_line}"

    def get_watermark(self, mode: GameMode) -> Optional[str]:
        return getattr(self, mode.watermark_attr)

    def set_watermark(self, mode: GameMode, match_id: Optional[str]):
        setattr(self, mode.watermark_attr, match_id)

    def copy(self) -> 'TrackedAccount':
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            'puuid': self.puuid,
            'gameName': self.game_name,
            'tagLine': self.tag_line,
            'lastMatchId': self.last_match_id,
            'lastTftMatchId': self.last_tft_match_id,
            'registeredGuildIds': list(self.registered_guild_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'TrackedAccount':
        guild_ids = []
        for raw in data.get('registeredGuildIds') or []:
            guild_id = int(raw)
            if guild_id not in guild_ids:
                guild_ids.append(guild_id)
        return cls(
            puuid=str(data['puuid']),
            game_name=str(data.get('gameName', '')),
            tag_line=str(data.get('tagLine', '')),
            last_match_id=data.get('lastMatchId'),
            last_tft_match_id=data.get('lastTftMatchId'),
            registered_guild_ids=guild_ids,
        )

    @classmethod
    def from_riot_account(cls, payload: dict[str, Any]) -> 'TrackedAccount':
        """从 Riot account-v1 接口的返回值构建，尚未关联任何服务器。"""
        return cls(
            puuid=payload['puuid'],
            game_name=payload.get('gameName', ''),
            tag_line=payload.get('tagLine', ''),
        )


@dataclass
class GuildConfig:
    """单个服务器的配置，目前只有通知频道。"""
    notification_channel_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {'notificationChannelId': self.notification_channel_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'GuildConfig':
        raw = data.get('notificationChannelId')
        # 0 与缺失等价，都表示未配置
        return cls(notification_channel_id=int(raw) if raw else None)


@dataclass
class HealthStatus:
    """机器人运行状态，用于 /lol status 命令和健康检查。"""
    is_healthy: bool
    uptime: timedelta
    connection_state: str
    tracked_users_count: int
    riot_api_rate_limited: bool
