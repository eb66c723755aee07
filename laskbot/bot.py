import discord
from discord.ext import commands
import asyncio
import pathlib
import signal
import logging
from datetime import datetime, timezone
from dotenv import load_dotenv, find_dotenv
from laskbot.core.config import AppSettings, ConfigurationError
from laskbot.core.logging_setup import setup_logging
from laskbot.modules.match_tracking.models import GameMode, HealthStatus
from laskbot.modules.match_tracking.services.delivery_service import DiscordDelivery
from laskbot.modules.match_tracking.services.guild_config_registry import GuildConfigRegistry
from laskbot.modules.match_tracking.services.link_service import AccountLinkService
from laskbot.modules.match_tracking.services.notification_service import MatchNotificationService
from laskbot.modules.match_tracking.services.polling_service import MatchPollingService
from laskbot.modules.match_tracking.services.renderer import PillowMatchRenderer
from laskbot.modules.match_tracking.services.riot_gateway import RiotGateway
from laskbot.modules.match_tracking.services.user_registry import UserRegistry

load_dotenv(find_dotenv())

logger = logging.getLogger(__name__)


class LaskBot(commands.Bot):
    def __init__(self, settings: AppSettings):
        self.settings = settings
        self.guild_ids = settings.guild_ids
        if self.guild_ids:
            logger.info(f"已加载 {len(self.guild_ids)} 个目标服务器 ID。")
        else:
            logger.info("未指定 GUILD_ID，将进行全局同步。")

        intents = discord.Intents.default()
        super().__init__(command_prefix="!", intents=intents)

        self.started_at = datetime.now(timezone.utc)
        self.user_registry: UserRegistry | None = None
        self.guild_configs: GuildConfigRegistry | None = None
        self.riot_gateway: RiotGateway | None = None
        self.link_service: AccountLinkService | None = None
        self.notification_service: MatchNotificationService | None = None
        self.polling_service: MatchPollingService | None = None
        self.close_task: asyncio.Task | None = None

    async def setup_hook(self) -> None:
        """Bot 启动时执行的异步初始化，只做最核心、最快的初始化。"""
        settings = self.settings
        logger.info("--- 🚀 1. 初始化核心服务 ---")
        self.user_registry = UserRegistry(settings.data_path)
        self.guild_configs = GuildConfigRegistry(settings.data_path)
        self.riot_gateway = RiotGateway(
            settings.riot_token,
            settings.riot_region,
            min_request_interval=settings.riot_min_request_interval,
            default_retry_after=settings.riot_default_retry_after,
        )

        modes = [GameMode.LOL, GameMode.TFT] if settings.tft_notifications_enabled else [GameMode.LOL]
        self.link_service = AccountLinkService(self.riot_gateway, self.user_registry, seed_modes=modes)
        self.notification_service = MatchNotificationService(
            PillowMatchRenderer(), DiscordDelivery(self), self.guild_configs
        )
        self.polling_service = MatchPollingService(
            self.riot_gateway,
            self.user_registry,
            self.notification_service,
            interval_seconds=settings.poll_interval_seconds,
            startup_delay_seconds=settings.poll_startup_delay_seconds,
            concurrency=settings.poll_concurrency,
            pacing_seconds=settings.riot_min_request_interval,
            include_tft=settings.tft_notifications_enabled,
        )
        logger.info("✅ 核心服务初始化完成。")

        logger.info("--- 🧩 2. 加载功能模块 (Cogs) ---")
        await self.load_all_cogs()

        logger.info("--- 🛰️ 3. 同步应用命令 ---")
        if self.guild_ids:
            for guild_id in self.guild_ids:
                guild = discord.Object(id=guild_id)
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                logger.info(f"✅ 命令已同步到服务器: {guild_id}")
        else:
            await self.tree.sync()
            logger.info("✅ 命令已全局同步。")

    async def on_ready(self):
        logger.info(f"--- ✅ 已成功连接到 Discord ---,以 {self.user} (ID: {self.user.id}) 的身份登录")
        # on_ready 在断线重连后会再次触发，start() 自身会忽略重复启动
        self.polling_service.start()

    async def get_health_status(self) -> HealthStatus:
        connection_state = "已断开" if self.is_closed() else ("已连接" if self.is_ready() else "连接中")
        rate_limited = self.riot_gateway.is_rate_limited if self.riot_gateway else False
        return HealthStatus(
            is_healthy=self.is_ready() and not self.is_closed(),
            uptime=datetime.now(timezone.utc) - self.started_at,
            connection_state=connection_state,
            tracked_users_count=await self.user_registry.count() if self.user_registry else 0,
            riot_api_rate_limited=rate_limited,
        )

    def request_close(self) -> asyncio.Task:
        """供信号处理器调用：调度一次关闭，并保留任务引用直到关闭完成。"""
        if self.close_task is None or self.close_task.done():
            self.close_task = asyncio.create_task(self.close())
        return self.close_task

    async def close(self):
        """在机器人关闭时，优雅地清理资源。"""
        logger.info("正在关闭机器人并清理资源...")

        # 先停止轮询，避免在断开连接后继续发送通知
        if self.polling_service:
            await self.polling_service.close()

        await super().close()
        logger.info("Discord 客户端已成功关闭。")

        if self.riot_gateway:
            await self.riot_gateway.close()

        logger.info("所有自定义资源已成功清理，机器人已完全关闭。")

    async def load_all_cogs(self):
        """查找并加载 modules 目录下所有 cogs 子文件夹中的模块。"""
        project_root = pathlib.Path(__file__).parent.parent
        modules_root = project_root / "laskbot" / "modules"

        for path in modules_root.rglob("cogs/*.py"):
            if path.name == "__init__.py":
                continue
            # 例如: .../laskbot/modules/match_tracking/cogs/tracker_commands.py -> laskbot.modules.match_tracking.cogs.tracker_commands
            module_path = ".".join(path.relative_to(project_root).parts).removesuffix(".py")
            try:
                await self.load_extension(module_path)
                logger.info(f"✅ 已加载: {module_path}")
            except Exception as e:
                logger.error(f"❌ 加载 {module_path} 失败: {e}", exc_info=True)


async def main():
    try:
        settings = AppSettings.from_env()
    except ConfigurationError as e:
        # 配置不完整时仍然按默认位置初始化日志，保证错误被记录
        setup_logging()
        logger.critical(f"配置错误，机器人无法启动: {e}")
        return

    setup_logging(settings.log_path)

    bot = LaskBot(settings)

    # SIGTERM（例如 docker stop）与 Ctrl+C 一样走优雅关闭流程
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, bot.request_close)
    except NotImplementedError:
        logger.debug("当前平台不支持 add_signal_handler，跳过 SIGTERM 处理。")

    try:
        await bot.start(settings.discord_token)
    except discord.errors.LoginFailure:
        logger.critical("错误：提供的 DISCORD_TOKEN 无效。")
    except Exception as e:
        logger.critical(f"机器人启动时发生致命错误: {e}", exc_info=True)
    finally:
        if not bot.is_closed():
            logger.info("检测到程序即将退出，正在优雅地关闭机器人...")
            await bot.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("程序已干净地退出。")


if __name__ == "__main__":
    run()
