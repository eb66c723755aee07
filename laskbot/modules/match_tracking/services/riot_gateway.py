# laskbot/modules/match_tracking/services/riot_gateway.py

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import quote

import aiohttp

from laskbot.modules.match_tracking.models import GameMode

logger = logging.getLogger(__name__)


class ApiStatus(Enum):
    OK = 1
    NOT_FOUND = 2
    # 限流、凭证错误、重试耗尽等情况，调用方只需知道“暂时拿不到”
    UNAVAILABLE = 3


@dataclass(frozen=True)
class ApiResponse:
    status: ApiStatus
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.status is ApiStatus.OK


NOT_FOUND = ApiResponse(ApiStatus.NOT_FOUND)
UNAVAILABLE = ApiResponse(ApiStatus.UNAVAILABLE)

RATE_LIMIT_HEADER_PAIRS = (
    ('X-App-Rate-Limit', 'X-App-Rate-Limit-Count'),
    ('X-Method-Rate-Limit', 'X-Method-Rate-Limit-Count'),
    ('X-Rate-Limit-Limit', 'X-Rate-Limit-Count'),
)


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """
    从 429 响应头中解析建议的等待秒数。
    优先使用 Retry-After；没有时根据 Riot 的 "limit:window" 计数头找出已耗尽的最长窗口。
    """
    if not headers:
        return None

    retry_after = headers.get('Retry-After')
    if retry_after:
        try:
            value = float(retry_after)
        except ValueError:
            value = None
        if value is not None and value >= 0:
            return value

    def parse_pairs(raw: str) -> dict[int, int]:
        pairs: dict[int, int] = {}
        for part in raw.split(','):
            part = part.strip()
            if not part:
                continue
            value, window = part.split(':')
            pairs[int(window)] = int(value)
        return pairs

    wait_seconds = 0
    for limit_key, count_key in RATE_LIMIT_HEADER_PAIRS:
        limit_header = headers.get(limit_key)
        count_header = headers.get(count_key)
        if not limit_header or not count_header:
            continue
        try:
            limits = parse_pairs(limit_header)
            counts = parse_pairs(count_header)
        except ValueError:
            logger.debug("无法解析 Riot 限流响应头", extra={'header': limit_key})
            continue
        for window, limit in limits.items():
            if counts.get(window, 0) >= limit:
                wait_seconds = max(wait_seconds, window)

    return float(wait_seconds) if wait_seconds > 0 else None


class RiotGateway:
    """
    Riot API 的唯一出口。

    - 全局同一时间只有一个请求在途（self._gate）
    - 相邻两次请求之间至少间隔 min_request_interval 秒
    - 收到 429 后进入共享冷却期，冷却期内的请求不会访问网络
    - 5xx / 408 / 网络错误按指数退避重试

    所有公开方法都返回 ApiResponse，“不存在”和“暂时不可用”都不是异常。
    时间与等待函数可以注入，便于在测试中使用假时钟。
    """

    def __init__(
        self,
        api_key: str,
        region: str = 'europe',
        *,
        session: Optional[aiohttp.ClientSession] = None,
        min_request_interval: float = 1.2,
        default_retry_after: float = 60.0,
        max_retries: int = 3,
        initial_backoff: float = 2.0,
        backoff_factor: float = 2.0,
        request_timeout: float = 30.0,
        wait_out_cooldown: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.base_url = f"https://{region}.api.riotgames.com"
        self.min_request_interval = min_request_interval
        self.default_retry_after = default_retry_after
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.backoff_factor = backoff_factor
        self.request_timeout = request_timeout
        self.wait_out_cooldown = wait_out_cooldown
        self._clock = clock
        self._sleep = sleep

        self._session = session
        self._owns_session = session is None
        self._gate = asyncio.Lock()
        self._last_request_at = float('-inf')
        self._cooldown_until = float('-inf')

    # ----------------------------------------------------------------
    # 限流状态
    # ----------------------------------------------------------------

    @property
    def is_rate_limited(self) -> bool:
        return self._clock() < self._cooldown_until

    def cooldown_remaining(self) -> float:
        return max(0.0, self._cooldown_until - self._clock())

    def _enter_cooldown(self, seconds: float):
        deadline = self._clock() + seconds
        # 多个 429 叠加时取更晚的截止时间
        self._cooldown_until = max(self._cooldown_until, deadline)

    # ----------------------------------------------------------------
    # HTTP
    # ----------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={'X-Riot-Token': self.api_key},
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("Riot API 会话已关闭。")

    async def _send(self, url: str, params: Optional[dict]) -> tuple[int, Mapping[str, str], Any]:
        session = self._get_session()
        async with session.get(url, params=params) as resp:
            payload = None
            if 200 <= resp.status < 300:
                payload = await resp.json(content_type=None)
            return resp.status, resp.headers, payload

    async def _wait_for_spacing(self):
        elapsed = self._clock() - self._last_request_at
        if elapsed < self.min_request_interval:
            await self._sleep(self.min_request_interval - elapsed)

    async def _request(self, path: str, operation: str, params: Optional[dict] = None) -> ApiResponse:
        # 先在门外检查冷却，避免排队的调用者无意义地串行等待
        remaining = self.cooldown_remaining()
        if remaining > 0:
            if not self.wait_out_cooldown:
                logger.debug(f"Riot API 冷却中（剩余 {remaining:.1f}s），跳过请求 '{operation}'。")
                return UNAVAILABLE
            logger.debug(f"Riot API 冷却中，等待 {remaining:.1f}s 后执行 '{operation}'。")
            await self._sleep(remaining)

        url = f"{self.base_url}{path}"
        log_context = {'operation': operation, 'url': url}

        async with self._gate:
            # 排队期间可能有其他请求触发了 429
            remaining = self.cooldown_remaining()
            if remaining > 0:
                if not self.wait_out_cooldown:
                    logger.debug(f"Riot API 冷却中（剩余 {remaining:.1f}s），跳过请求 '{operation}'。")
                    return UNAVAILABLE
                await self._sleep(remaining)

            delay = self.initial_backoff
            attempts = self.max_retries + 1
            for attempt in range(1, attempts + 1):
                await self._wait_for_spacing()
                self._last_request_at = self._clock()

                try:
                    status, headers, payload = await self._send(url, params)
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                    reason = f"{type(e).__name__}: {e}"
                else:
                    if 200 <= status < 300:
                        return ApiResponse(ApiStatus.OK, payload)

                    if status == 404:
                        return NOT_FOUND

                    if status == 429:
                        retry_after = parse_retry_after(headers)
                        if retry_after is None:
                            retry_after = self.default_retry_after
                        self._enter_cooldown(retry_after)
                        logger.warning(
                            f"Riot API 返回 429，进入 {retry_after:.0f}s 冷却期。",
                            extra={**log_context, 'retry_after': retry_after}
                        )
                        return UNAVAILABLE

                    if status in (401, 403):
                        logger.error(
                            f"Riot API 拒绝了请求 (HTTP {status})，请检查 RIOT_TOKEN 是否有效或权限是否足够。",
                            extra={**log_context, 'status': status}
                        )
                        return UNAVAILABLE

                    if status < 500 and status != 408:
                        logger.warning(f"Riot API 请求失败，状态码 {status}。", extra={**log_context, 'status': status})
                        return UNAVAILABLE

                    reason = f"HTTP {status}"

                if attempt == attempts:
                    logger.warning(
                        f"Riot API 请求 '{operation}' 在 {attempts} 次尝试后仍然失败。最后一次错误: {reason}",
                        extra=log_context
                    )
                    return UNAVAILABLE

                logger.warning(
                    f"Riot API 请求 '{operation}' 失败 (尝试 {attempt}/{attempts})，原因: {reason}。将在 {delay:.1f} 秒后重试...",
                    extra=log_context
                )
                await self._sleep(delay)
                delay *= self.backoff_factor

        return UNAVAILABLE

    # ----------------------------------------------------------------
    # 公开接口
    # ----------------------------------------------------------------

    async def get_account(self, game_name: str, tag_line: str) -> ApiResponse:
        """通过 Riot ID 查询账号，返回 {puuid, gameName, tagLine}。"""
        path = f"/riot/account/v1/accounts/by-riot-id/{quote(game_name, safe='')}/{quote(tag_line, safe='')}"
        return await self._request(path, f"查询账号 {game_name}#{tag_line}")

    async def _latest_id(self, path: str, operation: str) -> ApiResponse:
        response = await self._request(path, operation, params={'start': 0, 'count': 1})
        if not response.ok:
            return response
        match_ids = response.data if isinstance(response.data, list) else []
        # OK + None 表示账号还没有任何比赛
        return ApiResponse(ApiStatus.OK, match_ids[0] if match_ids else None)

    async def get_latest_match_id(self, puuid: str) -> ApiResponse:
        return await self._latest_id(f"/lol/match/v5/matches/by-puuid/{puuid}/ids", "获取最新 LoL 比赛 ID")

    async def get_match_details(self, match_id: str) -> ApiResponse:
        return await self._request(f"/lol/match/v5/matches/{match_id}", f"获取 LoL 比赛详情 {match_id}")

    async def get_latest_tft_match_id(self, puuid: str) -> ApiResponse:
        return await self._latest_id(f"/tft/match/v1/matches/by-puuid/{puuid}/ids", "获取最新 TFT 比赛 ID")

    async def get_tft_match_details(self, match_id: str) -> ApiResponse:
        return await self._request(f"/tft/match/v1/matches/{match_id}", f"获取 TFT 比赛详情 {match_id}")

    async def get_latest(self, mode: GameMode, puuid: str) -> ApiResponse:
        if mode is GameMode.TFT:
            return await self.get_latest_tft_match_id(puuid)
        return await self.get_latest_match_id(puuid)

    async def get_details(self, mode: GameMode, match_id: str) -> ApiResponse:
        if mode is GameMode.TFT:
            return await self.get_tft_match_details(match_id)
        return await self.get_match_details(match_id)
