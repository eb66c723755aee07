import logging
import sys
import os
from logging.handlers import TimedRotatingFileHandler
from pythonjsonlogger import jsonlogger


def setup_logging(log_path: str | None = None):
    """
    配置日志系统，确保处理器不重复添加。
    控制台输出人类可读文本，文件输出 JSON。
    """
    root_logger = logging.getLogger()

    if root_logger.hasHandlers():
        # 如果已经有处理器，假设已经配置过，直接返回
        return

    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    log_dir = log_path or os.getenv('LOG_PATH', 'logs')

    # 根logger放行所有级别，由处理器过滤
    root_logger.setLevel(logging.DEBUG)

    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S'
    )

    # extra={...} 中的字段会作为独立的 JSON 键写入
    json_formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(levelname)s %(name)s %(message)s',
        rename_fields={
            'asctime': 'timestamp',
            'levelname': 'level',
            'name': 'logger'
        },
        json_ensure_ascii=False
    )

    os.makedirs(log_dir, exist_ok=True)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(log_level)
    root_logger.addHandler(console_handler)

    log_interval = int(os.getenv('LOG_ROTATION_INTERVAL_DAYS', '1'))
    log_backup_count = int(os.getenv('LOG_BACKUP_COUNT', '7'))
    file_handler = TimedRotatingFileHandler(
        os.path.join(log_dir, 'bot.log'), when='midnight', interval=log_interval,
        backupCount=log_backup_count, encoding='utf-8'
    )
    file_handler.setFormatter(json_formatter)
    file_handler.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)

    logging.getLogger('discord').setLevel(logging.WARNING)
    logging.getLogger('discord.http').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
    # Pillow 在 DEBUG 级别会输出大量插件加载信息
    logging.getLogger('PIL').setLevel(logging.INFO)

    root_logger.info("日志系统初始化完成 (控制台: text, 文件: json)", extra={'log_dir': log_dir})
