# laskbot/core/rwlock.py
import asyncio
from contextlib import asynccontextmanager


class AsyncReaderWriterLock:
    """
    协程级别的读写锁。
    任意数量的读者可以同时持有读锁，写者独占。
    有写者在排队时，新的读者需要等待，避免写者饿死。
    """

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writer_active(self) -> bool:
        return self._writer_active

    async def acquire_read(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer_active and self._writers_waiting == 0)
            self._readers += 1

    async def release_read(self):
        async with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    async def acquire_write(self):
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer_active and self._readers == 0)
            except asyncio.CancelledError:
                # 等待中被取消时要撤销排队计数，否则读者会永远阻塞
                self._writers_waiting -= 1
                self._cond.notify_all()
                raise
            self._writers_waiting -= 1
            self._writer_active = True

    async def release_write(self):
        async with self._cond:
            self._writer_active = False
            self._cond.notify_all()

    @asynccontextmanager
    async def read(self):
        await self.acquire_read()
        try:
            yield
        finally:
            await self.release_read()

    @asynccontextmanager
    async def write(self):
        await self.acquire_write()
        try:
            yield
        finally:
            await self.release_write()
