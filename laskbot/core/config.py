# laskbot/core/config.py
import os
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """缺少必需配置或配置无效，启动时即失败，不重试。"""


def _required(key: str) -> str:
    value = os.getenv(key)
    if not value or not value.strip():
        logger.error(f"必需的环境变量 {key} 未设置。")
        raise ConfigurationError(f"Required environment variable '{key}' is not set.")
    return value.strip()


def _float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"环境变量 {key}='{raw}' 不是有效数字，使用默认值 {default}。")
        return default


def _int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"环境变量 {key}='{raw}' 不是有效整数，使用默认值 {default}。")
        return default


def _bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _id_list(key: str) -> list[int]:
    """通过逗号分割字符串，忽略无法解析的项。"""
    raw = os.getenv(key, '')
    ids = []
    for part in raw.split(','):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            logger.warning(f"环境变量 {key} 中的 '{part}' 不是有效的 ID，已忽略。")
    return ids


@dataclass(frozen=True)
class AppSettings:
    """
    应用配置，创建后不可变。
    通过 AppSettings.from_env() 从环境变量（.env）加载。
    """
    discord_token: str
    riot_token: str
    riot_region: str = 'europe'
    data_path: str = 'data'
    log_path: str = 'logs'
    guild_ids: list[int] = field(default_factory=list)
    poll_interval_seconds: float = 120.0
    poll_startup_delay_seconds: float = 30.0
    poll_concurrency: int = 3
    riot_min_request_interval: float = 1.2
    riot_default_retry_after: float = 60.0
    tft_notifications_enabled: bool = True

    @classmethod
    def from_env(cls) -> 'AppSettings':
        concurrency = _int('MATCH_POLL_CONCURRENCY', 3)
        if concurrency < 1:
            logger.warning(f"MATCH_POLL_CONCURRENCY={concurrency} 无效，使用 1。")
            concurrency = 1

        return cls(
            discord_token=_required('DISCORD_TOKEN'),
            riot_token=_required('RIOT_TOKEN'),
            riot_region=os.getenv('RIOT_REGION', 'europe').strip() or 'europe',
            data_path=os.getenv('DATA_PATH', 'data'),
            log_path=os.getenv('LOG_PATH', 'logs'),
            guild_ids=_id_list('GUILD_ID'),
            poll_interval_seconds=_float('MATCH_POLL_INTERVAL_SECONDS', 120.0),
            poll_startup_delay_seconds=_float('MATCH_POLL_STARTUP_DELAY_SECONDS', 30.0),
            poll_concurrency=concurrency,
            riot_min_request_interval=_float('RIOT_MIN_REQUEST_INTERVAL_SECONDS', 1.2),
            riot_default_retry_after=_float('RIOT_DEFAULT_RETRY_AFTER_SECONDS', 60.0),
            tft_notifications_enabled=_bool('TFT_NOTIFICATIONS_ENABLED', True),
        )
