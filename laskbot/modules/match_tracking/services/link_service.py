# laskbot/modules/match_tracking/services/link_service.py

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from laskbot.modules.match_tracking.models import GameMode, RegisterResult, TrackedAccount
from laskbot.modules.match_tracking.services.riot_gateway import ApiStatus, RiotGateway
from laskbot.modules.match_tracking.services.user_registry import UserRegistry

logger = logging.getLogger(__name__)


class LinkStatus(Enum):
    LINKED = 1
    INVALID_INPUT = 2
    ACCOUNT_NOT_FOUND = 3
    API_UNAVAILABLE = 4


@dataclass
class LinkOutcome:
    status: LinkStatus
    result: Optional[RegisterResult] = None
    account: Optional[TrackedAccount] = None


class AccountLinkService:
    """
    处理 Discord 用户与 Riot 账号的绑定。
    新账号在写入注册表之前会预先填充水位线，这样第一次轮询不会把历史比赛当成新比赛推送。
    """

    def __init__(self, gateway: RiotGateway, registry: UserRegistry, seed_modes: Iterable[GameMode] = (GameMode.LOL, GameMode.TFT)):
        self.gateway = gateway
        self.registry = registry
        self.seed_modes = tuple(seed_modes)

    async def _seed_watermarks(self, account: TrackedAccount) -> bool:
        """返回 False 表示 API 暂不可用，无法确定水位线。"""
        for mode in self.seed_modes:
            latest = await self.gateway.get_latest(mode, account.puuid)
            if latest.status is ApiStatus.UNAVAILABLE:
                return False
            # NOT_FOUND 或空列表都说明确实还没有比赛
            account.set_watermark(mode, latest.data if latest.ok else None)
        return True

    async def link_account(self, user_id: int, game_name: str, tag_line: str, guild_id: int) -> LinkOutcome:
        game_name = (game_name or '').strip()
        tag_line = (tag_line or '').strip().lstrip('#')
        if not game_name or not tag_line:
            return LinkOutcome(LinkStatus.INVALID_INPUT)

        log_context = {'user_id': user_id, 'guild_id': guild_id, 'riot_id': f"{game_name}#{tag_line}"}

        response = await self.gateway.get_account(game_name, tag_line)
        if response.status is ApiStatus.NOT_FOUND:
            logger.info("绑定失败：Riot 账号不存在", extra=log_context)
            return LinkOutcome(LinkStatus.ACCOUNT_NOT_FOUND)
        if not response.ok or not response.data:
            logger.warning("绑定失败：Riot API 暂不可用", extra=log_context)
            return LinkOutcome(LinkStatus.API_UNAVAILABLE)

        account = TrackedAccount.from_riot_account(response.data)
        existing = await self.registry.get(user_id)
        if existing is None or existing.puuid != account.puuid:
            if not await self._seed_watermarks(account):
                logger.warning("绑定失败：无法预填水位线", extra=log_context)
                return LinkOutcome(LinkStatus.API_UNAVAILABLE)

        result = await self.registry.register(user_id, account, guild_id)
        logger.info("用户绑定了 Riot 账号", extra={**log_context, 'result': result.name})
        return LinkOutcome(LinkStatus.LINKED, result, await self.registry.get(user_id))

    async def unlink_account(self, user_id: int, guild_id: int) -> bool:
        return await self.registry.remove_from_guild(user_id, guild_id)
