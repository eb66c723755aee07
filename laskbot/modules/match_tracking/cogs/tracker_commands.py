# laskbot/modules/match_tracking/cogs/tracker_commands.py

import logging
import discord
from discord import app_commands
from discord.ext import commands
from typing import TYPE_CHECKING

from laskbot.modules.match_tracking.models import GameMode, RegisterResult
from laskbot.modules.match_tracking.services.link_service import LinkStatus

if TYPE_CHECKING:
    from laskbot.bot import LaskBot

logger = logging.getLogger(__name__)

REGISTER_MESSAGES = {
    RegisterResult.CREATED: "✅ **绑定成功**：已绑定 **{riot_id}**，之后的比赛结果会推送到本服务器。",
    RegisterResult.GUILD_ADDED: "✅ **绑定成功**：**{riot_id}** 的比赛结果现在也会推送到本服务器。",
    RegisterResult.ALREADY_REGISTERED: "🤔 **重复操作**：**{riot_id}** 已经在本服务器绑定过了。",
    RegisterResult.REPLACED: "🔄 **已更换账号**：现在追踪的是 **{riot_id}**。",
}


class MatchTrackerCog(commands.Cog):
    """
    英雄联盟 / 云顶之弈账号绑定与比赛通知相关的命令。
    """

    lol = app_commands.Group(name="lol", description="英雄联盟比赛追踪", guild_only=True)

    def __init__(self, bot: 'LaskBot'):
        self.bot = bot

    @lol.command(name="register", description="绑定你的 Riot 账号，在本服务器接收比赛结果")
    @app_commands.describe(nick="游戏内名称", tag="标签 (例如 EUNE、PL1)")
    async def register(self, interaction: discord.Interaction, nick: str, tag: str):
        await interaction.response.defer(ephemeral=True)
        log_context = {'user_id': interaction.user.id, 'guild_id': interaction.guild_id, 'riot_id': f"{nick}#{tag}"}

        try:
            outcome = await self.bot.link_service.link_account(interaction.user.id, nick, tag, interaction.guild_id)
        except OSError:
            logger.error("/lol register 保存数据失败", extra=log_context, exc_info=True)
            await interaction.followup.send("⚙️ **保存失败**：暂时无法保存你的绑定信息，请稍后再试。", ephemeral=True)
            return

        if outcome.status is LinkStatus.INVALID_INPUT:
            await interaction.followup.send("❌ **格式错误**：请同时提供游戏名称和标签。", ephemeral=True)
        elif outcome.status is LinkStatus.ACCOUNT_NOT_FOUND:
            await interaction.followup.send(f"❌ **未找到账号**：**{nick}#{tag}** 不存在。", ephemeral=True)
        elif outcome.status is LinkStatus.API_UNAVAILABLE:
            await interaction.followup.send("⏳ **Riot API 暂时不可用**：请稍后再试。", ephemeral=True)
        else:
            riot_id = outcome.account.riot_id if outcome.account else f"{nick}#{tag}"
            await interaction.followup.send(REGISTER_MESSAGES[outcome.result].format(riot_id=riot_id), ephemeral=True)

            if await self.bot.guild_configs.get_notification_channel(interaction.guild_id) is None:
                await interaction.followup.send(
                    "ℹ️ 本服务器还没有设置通知频道，请管理员使用 `/lol setchannel` 进行设置。", ephemeral=True
                )

    @lol.command(name="unregister", description="在本服务器取消绑定你的 Riot 账号")
    async def unregister(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        try:
            removed = await self.bot.link_service.unlink_account(interaction.user.id, interaction.guild_id)
        except OSError:
            logger.error("/lol unregister 保存数据失败", extra={'user_id': interaction.user.id, 'guild_id': interaction.guild_id}, exc_info=True)
            await interaction.followup.send("⚙️ **保存失败**：请稍后再试。", ephemeral=True)
            return

        if removed:
            await interaction.followup.send("✅ **操作成功**：已在本服务器取消绑定。", ephemeral=True)
        else:
            await interaction.followup.send("🤔 **无需操作**：你在本服务器没有绑定账号。", ephemeral=True)

    @lol.command(name="setchannel", description="设置本服务器的比赛通知频道（需要管理服务器权限）")
    @app_commands.describe(channel="用于发送比赛结果的文字频道")
    async def setchannel(self, interaction: discord.Interaction, channel: discord.TextChannel):
        await interaction.response.defer(ephemeral=True)
        if not interaction.user.guild_permissions.manage_guild:
            await interaction.followup.send("❌ **权限不足**：只有拥有“管理服务器”权限的成员可以设置通知频道。", ephemeral=True)
            return

        try:
            await self.bot.guild_configs.set_notification_channel(interaction.guild_id, channel.id)
        except OSError:
            logger.error("/lol setchannel 保存数据失败", extra={'guild_id': interaction.guild_id, 'channel_id': channel.id}, exc_info=True)
            await interaction.followup.send("⚙️ **保存失败**：请稍后再试。", ephemeral=True)
            return
        await interaction.followup.send(f"✅ 比赛通知将发送到 {channel.mention}。", ephemeral=True)

    @lol.command(name="lastmatch", description="立即推送你最近一场比赛的结果")
    @app_commands.describe(mode="游戏模式")
    @app_commands.choices(mode=[
        app_commands.Choice(name="英雄联盟", value=GameMode.LOL.value),
        app_commands.Choice(name="云顶之弈", value=GameMode.TFT.value),
    ])
    async def lastmatch(self, interaction: discord.Interaction, mode: str = GameMode.LOL.value):
        await interaction.response.defer(ephemeral=True)
        try:
            found = await self.bot.polling_service.check_user_now(interaction.user.id, GameMode(mode))
        except Exception:
            logger.error("/lol lastmatch 命令出错", extra={'user_id': interaction.user.id}, exc_info=True)
            await interaction.followup.send("⚙️ **发生未知错误**，请稍后再试或联系管理员。", ephemeral=True)
            return

        if found:
            await interaction.followup.send("✅ 已推送你最近一场比赛的结果。", ephemeral=True)
        else:
            await interaction.followup.send("🤔 没有找到比赛：你可能还没有绑定账号、没有比赛记录，或 Riot API 暂时不可用。", ephemeral=True)

    @lol.command(name="status", description="查看机器人运行状态")
    async def status(self, interaction: discord.Interaction):
        health = await self.bot.get_health_status()
        hours, remainder = divmod(int(health.uptime.total_seconds()), 3600)
        embed = discord.Embed(
            title="🤖 运行状态",
            color=discord.Color.green() if health.is_healthy else discord.Color.red()
        )
        embed.add_field(name="运行时间", value=f"{hours} 小时 {remainder // 60} 分钟", inline=True)
        embed.add_field(name="连接状态", value=health.connection_state, inline=True)
        embed.add_field(name="追踪账号数", value=str(health.tracked_users_count), inline=True)
        embed.add_field(name="Riot API", value="⏳ 限流中" if health.riot_api_rate_limited else "✅ 正常", inline=True)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @commands.Cog.listener()
    async def on_guild_remove(self, guild: discord.Guild):
        """机器人离开服务器时，清理该服务器的配置和所有账号关联。"""
        log_context = {'guild_id': guild.id}
        try:
            await self.bot.guild_configs.remove_guild(guild.id)
            affected = await self.bot.user_registry.remove_guild_everywhere(guild.id)
            logger.info(f"机器人已离开服务器，清理了 {affected} 个账号关联。", extra=log_context)
        except OSError:
            logger.error("离开服务器后清理数据失败", extra=log_context, exc_info=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(MatchTrackerCog(bot))
