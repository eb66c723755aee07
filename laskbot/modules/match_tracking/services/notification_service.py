# laskbot/modules/match_tracking/services/notification_service.py

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from laskbot.modules.match_tracking.models import GameMode, TrackedAccount
from laskbot.modules.match_tracking.services.guild_config_registry import GuildConfigRegistry

logger = logging.getLogger(__name__)


class MatchRenderer(Protocol):
    async def render_summary(self, account: TrackedAccount, match: dict) -> bytes:
        ...

    async def render_tft_summary(self, account: TrackedAccount, match: dict) -> bytes:
        ...


class NotificationDelivery(Protocol):
    async def resolve_channel(self, channel_id: int) -> Optional[Any]:
        """返回可发送的频道；频道已被删除时返回 None。"""
        ...

    async def send(self, channel: Any, data: bytes, caption: str) -> None:
        ...

    async def notify_admin(self, guild_id: int, message: str) -> None:
        ...


@dataclass
class FanOutReport:
    match_id: Optional[str]
    rendered: bool = False
    delivered: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    healed: list[int] = field(default_factory=list)


def find_participant(match: dict, puuid: str) -> Optional[dict]:
    participants = (match.get('info') or {}).get('participants') or []
    return next((p for p in participants if p.get('puuid') == puuid), None)


def build_lol_caption(account: TrackedAccount, match: dict) -> str:
    me = find_participant(match, account.puuid)
    if me is None:
        return f"🎮 **{account.riot_id}** 完成了一场比赛！"
    kda = f"{me.get('kills', 0)}/{me.get('deaths', 0)}/{me.get('assists', 0)}"
    champion = me.get('championName', '?')
    if me.get('win'):
        return f"🏆 **{account.riot_id}** 使用 **{champion}** 赢下了一场比赛！({kda})"
    return f"💀 **{account.riot_id}** 使用 **{champion}** 输掉了一场比赛。({kda})"


def build_tft_caption(account: TrackedAccount, match: dict) -> str:
    me = find_participant(match, account.puuid)
    if me is None or not me.get('placement'):
        return f"♟️ **{account.riot_id}** 完成了一场云顶之弈对局！"
    placement = me['placement']
    emoji = '🏆' if placement == 1 else ('✅' if placement <= 4 else '♟️')
    return f"{emoji} **{account.riot_id}** 在云顶之弈中获得第 **{placement}** 名！"


def match_id_of(match: dict) -> Optional[str]:
    metadata = match.get('metadata') or {}
    return metadata.get('matchId') or metadata.get('match_id')


class MatchNotificationService:
    """
    比赛结果的扇出推送：每场比赛只渲染一次，然后发送到账号注册过的每一个服务器。
    单个服务器失败不影响其他服务器；渲染失败则整条通知放弃，不做部分发送。
    """

    def __init__(self, renderer: MatchRenderer, delivery: NotificationDelivery, guild_configs: GuildConfigRegistry):
        self.renderer = renderer
        self.delivery = delivery
        self.guild_configs = guild_configs

    async def notify_lol_match(self, account: TrackedAccount, match: dict) -> FanOutReport:
        return await self._fan_out(
            account, match, GameMode.LOL,
            lambda: self.renderer.render_summary(account, match),
            build_lol_caption(account, match),
        )

    async def notify_tft_match(self, account: TrackedAccount, match: dict) -> FanOutReport:
        return await self._fan_out(
            account, match, GameMode.TFT,
            lambda: self.renderer.render_tft_summary(account, match),
            build_tft_caption(account, match),
        )

    async def _fan_out(
        self,
        account: TrackedAccount,
        match: dict,
        mode: GameMode,
        render: Callable[[], Awaitable[bytes]],
        caption: str,
    ) -> FanOutReport:
        report = FanOutReport(match_id=match_id_of(match))
        log_context = {'riot_id': account.riot_id, 'puuid': account.puuid, 'mode': mode.value, 'match_id': report.match_id}

        if not account.registered_guild_ids:
            logger.warning("账号没有关联任何服务器，放弃通知", extra=log_context)
            return report

        try:
            # 保存为不可变的 bytes，可以重复发送而不必重新渲染
            artifact = bytes(await render())
        except asyncio.CancelledError:
            logger.warning("渲染比赛结果时任务被取消，放弃本次通知", extra=log_context)
            raise
        except Exception:
            logger.error("渲染比赛结果失败，放弃本次通知", extra=log_context, exc_info=True)
            return report
        report.rendered = True

        # 发送过程中的取消会直接向上传播，停止后续发送
        for guild_id in account.registered_guild_ids:
            guild_context = {**log_context, 'guild_id': guild_id}

            channel_id = await self.guild_configs.get_notification_channel(guild_id)
            if channel_id is None:
                logger.info("服务器未配置通知频道，跳过", extra=guild_context)
                report.skipped.append(guild_id)
                continue
            guild_context['channel_id'] = channel_id

            try:
                channel = await self.delivery.resolve_channel(channel_id)
            except Exception:
                logger.error("解析通知频道时发生错误，跳过该服务器", extra=guild_context, exc_info=True)
                report.failed.append(guild_id)
                continue

            if channel is None:
                await self._heal_stale_channel(guild_id, channel_id)
                report.healed.append(guild_id)
                continue

            try:
                await self.delivery.send(channel, artifact, caption)
            except Exception:
                logger.error("发送比赛通知失败", extra=guild_context, exc_info=True)
                report.failed.append(guild_id)
            else:
                logger.info("比赛通知已发送", extra=guild_context)
                report.delivered.append(guild_id)

        return report

    async def _heal_stale_channel(self, guild_id: int, channel_id: int):
        """通知频道已被删除：尽力告知管理员，并清除该服务器的配置。"""
        log_context = {'guild_id': guild_id, 'channel_id': channel_id}
        logger.warning("配置的通知频道已不存在，清除服务器配置", extra=log_context)

        message = (
            "⚠️ 比赛通知频道已被删除，通知已暂停。\n"
            "请使用 `/lol setchannel` 重新设置一个通知频道。"
        )
        try:
            await self.delivery.notify_admin(guild_id, message)
        except Exception:
            logger.warning("无法向服务器管理员发送提醒", extra=log_context, exc_info=True)

        try:
            await self.guild_configs.remove_guild(guild_id)
        except OSError:
            logger.error("清除服务器配置时写盘失败", extra=log_context, exc_info=True)
