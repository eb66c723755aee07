# laskbot/modules/match_tracking/services/delivery_service.py

import io
import logging
from typing import Optional

import discord

from laskbot.core.utils import retry_on_discord_error

logger = logging.getLogger(__name__)


class DiscordDelivery:
    """
    通过 Discord 发送比赛通知。
    """

    def __init__(self, bot: discord.Client, filename: str = 'match.png'):
        self.bot = bot
        self.filename = filename

    async def resolve_channel(self, channel_id: int) -> Optional[discord.abc.Messageable]:
        """先查缓存再请求 API。频道已被删除时返回 None，其他错误向上抛出。"""
        channel = self.bot.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await retry_on_discord_error(
                lambda: self.bot.fetch_channel(channel_id),
                f"获取通知频道 (ID: {channel_id})"
            )
        except discord.NotFound:
            return None

    async def send(self, channel: discord.abc.Messageable, data: bytes, caption: str) -> None:
        # 每次发送都新建 BytesIO，同一份 bytes 可以发送到多个频道
        await retry_on_discord_error(
            lambda: channel.send(content=caption, file=discord.File(io.BytesIO(data), filename=self.filename)),
            f"发送比赛通知到频道 {getattr(channel, 'id', '?')}"
        )

    async def notify_admin(self, guild_id: int, message: str) -> None:
        """依次尝试：系统频道 -> 第一个有发言权限的文字频道 -> 私信服务器所有者。"""
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            logger.warning("无法找到服务器，无法发送管理员提醒", extra={'guild_id': guild_id})
            return

        candidates: list[discord.abc.Messageable] = []
        me = guild.me
        if me:
            if guild.system_channel and guild.system_channel.permissions_for(me).send_messages:
                candidates.append(guild.system_channel)
            first_writable = next(
                (ch for ch in guild.text_channels
                 if ch != guild.system_channel and ch.permissions_for(me).send_messages),
                None
            )
            if first_writable:
                candidates.append(first_writable)

        for channel in candidates:
            try:
                await channel.send(message)
                logger.info("已向服务器发送管理员提醒", extra={'guild_id': guild_id, 'channel_id': channel.id})
                return
            except discord.HTTPException:
                logger.debug("在频道中发送管理员提醒失败，尝试下一个", extra={'guild_id': guild_id, 'channel_id': channel.id})

        owner = guild.owner
        if owner is None and guild.owner_id:
            try:
                owner = await self.bot.fetch_user(guild.owner_id)
            except discord.HTTPException:
                owner = None
        if owner is None:
            logger.warning("没有可用的渠道发送管理员提醒", extra={'guild_id': guild_id})
            return

        try:
            await owner.send(f"**{guild.name}**: {message}")
            logger.info("已私信服务器所有者", extra={'guild_id': guild_id, 'owner_id': owner.id})
        except discord.Forbidden:
            logger.warning("无法私信服务器所有者，他们可能关闭了私信权限。", extra={'guild_id': guild_id})
