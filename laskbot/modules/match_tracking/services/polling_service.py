# laskbot/modules/match_tracking/services/polling_service.py

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from laskbot.modules.match_tracking.models import GameMode, TrackedAccount
from laskbot.modules.match_tracking.services.riot_gateway import RiotGateway
from laskbot.modules.match_tracking.services.user_registry import UserRegistry

logger = logging.getLogger(__name__)


class MatchNotificationSink(Protocol):
    """检测到新比赛后的通知接收方，每种模式一个方法。"""

    async def notify_lol_match(self, account: TrackedAccount, match: dict) -> Any:
        ...

    async def notify_tft_match(self, account: TrackedAccount, match: dict) -> Any:
        ...


@dataclass(frozen=True)
class WatchedMode:
    mode: GameMode
    notify: Callable[[TrackedAccount, dict], Awaitable[Any]]


class PollerState(Enum):
    IDLE = 1
    SCANNING = 2
    STOPPED = 3


class MatchPollingService:
    """
    周期性扫描所有被追踪的账号，发现新比赛后先推进水位线，再交给通知接收方。

    状态: IDLE -(启动延迟)-> SCANNING -> IDLE -> SCANNING ... -> STOPPED
    STOPPED 只会因为显式取消进入，且不可重新启动。
    """

    def __init__(
        self,
        gateway: RiotGateway,
        registry: UserRegistry,
        sink: MatchNotificationSink,
        *,
        interval_seconds: float = 120.0,
        startup_delay_seconds: float = 30.0,
        concurrency: int = 3,
        pacing_seconds: float = 1.2,
        include_tft: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self.concurrency = max(1, concurrency)
        # 每个批次的总节奏平摊到并发数上，作为网关自身限流之上的一层礼让
        self.spawn_delay = pacing_seconds / self.concurrency
        self._sleep = sleep

        self.modes: list[WatchedMode] = [WatchedMode(GameMode.LOL, sink.notify_lol_match)]
        if include_tft:
            self.modes.append(WatchedMode(GameMode.TFT, sink.notify_tft_match))

        self.state = PollerState.IDLE
        self.task: Optional[asyncio.Task] = None
        logger.info(
            f"比赛轮询服务已配置：间隔={interval_seconds}s, 启动延迟={startup_delay_seconds}s, "
            f"并发数={self.concurrency}, 模式={[m.mode.value for m in self.modes]}"
        )

    # ----------------------------------------------------------------
    # 单个账号
    # ----------------------------------------------------------------

    async def _check_mode(self, user_id: int, account: TrackedAccount, watched: WatchedMode) -> bool:
        """比较并通知。返回 True 表示发出了一次通知。"""
        mode = watched.mode
        latest = await self.gateway.get_latest(mode, account.puuid)
        if not latest.ok or not latest.data:
            return False

        match_id = latest.data
        if match_id == account.get_watermark(mode):
            return False

        log_context = {'user_id': user_id, 'riot_id': account.riot_id, 'mode': mode.value, 'match_id': match_id}
        logger.info("检测到新比赛", extra=log_context)

        details = await self.gateway.get_details(mode, match_id)
        if not details.ok or not details.data:
            logger.warning("无法获取比赛详情，本轮跳过", extra=log_context)
            return False

        # 先推进水位线再通知：通知过程中崩溃只会漏发，不会在重启后重复发送
        # 只推进本轮扫描时看到的那个账号的水位线，用户中途换号则放弃
        if not await self.registry.update_watermark(user_id, mode, match_id, expected_puuid=account.puuid):
            logger.info("用户在检测期间已取消注册或更换账号，跳过通知", extra=log_context)
            return False

        current = await self.registry.get(user_id)
        if current is None or current.puuid != account.puuid:
            logger.info("用户在检测期间已取消注册或更换账号，跳过通知", extra=log_context)
            return False

        await watched.notify(current, details.data)
        return True

    async def _check_account(self, semaphore: asyncio.Semaphore, user_id: int, account: TrackedAccount) -> int:
        notified = 0
        async with semaphore:
            for watched in self.modes:
                # 两种模式互不影响，一种失败不妨碍另一种
                try:
                    if await self._check_mode(user_id, account, watched):
                        notified += 1
                except Exception:
                    logger.error(
                        "检查账号比赛时发生错误",
                        extra={'user_id': user_id, 'puuid': account.puuid, 'riot_id': account.riot_id, 'mode': watched.mode.value},
                        exc_info=True
                    )
        return notified

    # ----------------------------------------------------------------
    # 单轮扫描
    # ----------------------------------------------------------------

    async def run_tick(self) -> int:
        """执行一轮扫描，返回本轮发出的通知数量。"""
        if self.gateway.is_rate_limited:
            logger.debug(f"Riot API 冷却中（剩余 {self.gateway.cooldown_remaining():.0f}s），跳过本轮扫描。")
            return 0

        snapshot = await self.registry.snapshot_all()
        if not snapshot:
            logger.debug("没有被追踪的账号，跳过本轮扫描。")
            return 0

        self.state = PollerState.SCANNING
        logger.debug(f"开始扫描 {len(snapshot)} 个账号的新比赛...")
        semaphore = asyncio.Semaphore(self.concurrency)
        tasks: list[asyncio.Task] = []
        try:
            for index, (user_id, account) in enumerate(snapshot):
                if index:
                    await self._sleep(self.spawn_delay)
                tasks.append(asyncio.create_task(self._check_account(semaphore, user_id, account)))
            results = await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        finally:
            if self.state is PollerState.SCANNING:
                self.state = PollerState.IDLE

        total = sum(results)
        logger.debug(f"本轮扫描完成，共发出 {total} 条通知。")
        return total

    # ----------------------------------------------------------------
    # 按需查询
    # ----------------------------------------------------------------

    async def check_user_now(self, user_id: int, mode: GameMode = GameMode.LOL) -> bool:
        """
        立即获取某个用户的最新比赛并推送通知，不修改水位线。
        返回 False 表示用户未注册、没有比赛或 API 暂不可用。
        """
        watched = next((m for m in self.modes if m.mode is mode), None)
        if watched is None:
            return False

        account = await self.registry.get(user_id)
        if account is None:
            return False

        latest = await self.gateway.get_latest(mode, account.puuid)
        if not latest.ok or not latest.data:
            return False

        details = await self.gateway.get_details(mode, latest.data)
        if not details.ok or not details.data:
            return False

        await watched.notify(account, details.data)
        return True

    # ----------------------------------------------------------------
    # 生命周期
    # ----------------------------------------------------------------

    async def _polling_loop(self):
        try:
            logger.info(f"比赛轮询将在 {self.startup_delay_seconds:.0f} 秒后开始。")
            await self._sleep(self.startup_delay_seconds)
            while True:
                try:
                    await self.run_tick()
                except Exception:
                    logger.error("比赛轮询循环中发生未知错误", exc_info=True)
                await self._sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("比赛轮询任务被取消，循环终止。")
            raise
        finally:
            self.state = PollerState.STOPPED

    def start(self):
        if self.state is PollerState.STOPPED:
            logger.warning("比赛轮询服务已停止，不能重新启动。")
            return
        if self.task and not self.task.done():
            logger.warning("比赛轮询任务已在运行中。")
            return
        self.task = asyncio.create_task(self._polling_loop())

    def stop(self):
        if self.task and not self.task.done():
            self.task.cancel()
            logger.info("比赛轮询任务已取消。")
        self.state = PollerState.STOPPED

    async def close(self):
        """停止并等待后台任务真正结束。"""
        self.stop()
        if self.task:
            try:
                await self.task
            except asyncio.CancelledError:
                pass
