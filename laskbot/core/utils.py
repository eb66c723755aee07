# laskbot/core/utils.py
import asyncio
import logging
import discord
from typing import Coroutine, Any, TypeVar, Callable

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def retry_on_discord_error(
    coro_func: Callable[[], Coroutine[Any, Any, T]],
    operation_name: str,
    max_retries: int = 3,
    initial_delay: float = 2.0,
    backoff_factor: float = 2.0,
    sleep: Callable[[float], Coroutine[Any, Any, None]] = asyncio.sleep,
) -> T:
    """
    当发生 DiscordServerError (5xx) 时，使用指数退避策略重试一个协程。
    其他异常（Forbidden、NotFound 等）不属于瞬时错误，直接抛出给调用方。

    :param coro_func: 返回需要执行的协程的函数 (例如: lambda: channel.send(...))
    :param operation_name: 操作的描述性名称，用于日志记录
    :param max_retries: 最大尝试次数
    :param initial_delay: 初始延迟秒数
    :param backoff_factor: 每次重试后延迟时间增加的倍数
    :param sleep: 等待函数，测试时可替换
    :return: 如果成功，返回协程的结果
    :raises: 如果所有重试都失败，则抛出最后一个异常
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    delay = initial_delay
    for attempt in range(1, max_retries + 1):
        try:
            return await coro_func()
        except discord.errors.DiscordServerError as e:
            if attempt == max_retries:
                logger.error(
                    f"操作 '{operation_name}' 在 {max_retries} 次尝试后最终失败。最后一次错误: {e}",
                    extra={'operation': operation_name, 'status': e.status}
                )
                raise

            logger.warning(
                f"操作 '{operation_name}' 失败 (尝试 {attempt}/{max_retries})，状态码: {e.status}。将在 {delay:.2f} 秒后重试...",
                extra={'operation': operation_name, 'status': e.status, 'attempt': attempt}
            )
            await sleep(delay)
            delay *= backoff_factor

    raise RuntimeError(f"操作 '{operation_name}' 的重试逻辑出现意外错误。")
