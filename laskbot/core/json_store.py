# laskbot/core/json_store.py
import asyncio
import json
import logging
import os
import pathlib
import tempfile

logger = logging.getLogger(__name__)


class JsonFileStore:
    """
    单个 JSON 文件的持久化。
    写入流程：先完整写入临时文件，再通过 os.replace 原子替换正式文件，
    这样读者看到的永远是旧版本或完整的新版本。
    """

    def __init__(self, data_path: str, file_name: str):
        self.directory = pathlib.Path(data_path)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / file_name

    def load(self) -> dict:
        """读取文件内容。文件缺失或损坏时返回空字典，不抛出异常。"""
        if not self.path.exists():
            logger.info("持久化文件不存在，将使用空数据启动", extra={'path': str(self.path)})
            return {}

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.warning("无法读取持久化文件，将使用空数据启动", extra={'path': str(self.path)}, exc_info=True)
            return {}

        if not isinstance(data, dict):
            logger.warning("持久化文件格式不正确（根节点不是对象），将使用空数据启动", extra={'path': str(self.path)})
            return {}
        return data

    @staticmethod
    def dumps(payload: dict) -> str:
        return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True)

    def _new_temp_path(self) -> str:
        """每次保存使用独立的临时文件，被取消的写入不会与下一次写入混在一起。"""
        fd, temp_path = tempfile.mkstemp(dir=self.directory, prefix=f"{self.path.name}.", suffix='.tmp')
        os.close(fd)
        return temp_path

    @staticmethod
    def _write_temp(temp_path: str, text: str):
        with open(temp_path, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _discard_temp(temp_path: str):
        try:
            os.unlink(temp_path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("清理临时文件失败", extra={'path': temp_path}, exc_info=True)

    async def save(self, payload: dict):
        """
        原子地保存数据。
        序列化在调用方的协程中完成，磁盘写入放到工作线程中执行。
        在重命名之前被取消或失败时，正式文件保持不变，临时文件被删除。
        """
        text = self.dumps(payload)
        temp_path = self._new_temp_path()
        try:
            await asyncio.to_thread(self._write_temp, temp_path, text)
        except asyncio.CancelledError:
            # 工作线程可能仍在写入，删除后它只会写到已解除链接的文件上
            self._discard_temp(temp_path)
            raise
        except OSError:
            self._discard_temp(temp_path)
            logger.error("写入临时文件失败", extra={'path': temp_path}, exc_info=True)
            raise
        # os.replace 在同一文件系统内是原子操作，且这里没有挂起点
        try:
            os.replace(temp_path, self.path)
        except OSError:
            self._discard_temp(temp_path)
            logger.error("替换持久化文件失败", extra={'path': str(self.path)}, exc_info=True)
            raise
        logger.debug("持久化文件已更新", extra={'path': str(self.path)})
