import asyncio
import unittest

from laskbot.core.rwlock import AsyncReaderWriterLock


class AsyncReaderWriterLockTests(unittest.IsolatedAsyncioTestCase):
    async def test_readers_do_not_block_each_other(self):
        lock = AsyncReaderWriterLock()
        inside = asyncio.Event()
        release = asyncio.Event()
        max_readers = 0

        async def reader():
            nonlocal max_readers
            async with lock.read():
                max_readers = max(max_readers, lock.readers)
                if lock.readers == 3:
                    inside.set()
                await release.wait()

        tasks = [asyncio.create_task(reader()) for _ in range(3)]
        await asyncio.wait_for(inside.wait(), timeout=1)
        release.set()
        await asyncio.gather(*tasks)
        self.assertEqual(max_readers, 3)

    async def test_writer_waits_for_readers_and_excludes_new_readers(self):
        lock = AsyncReaderWriterLock()
        order = []
        reader_holding = asyncio.Event()
        release_reader = asyncio.Event()

        async def first_reader():
            async with lock.read():
                order.append("reader-1")
                reader_holding.set()
                await release_reader.wait()

        async def writer():
            async with lock.write():
                order.append("writer")

        async def late_reader():
            async with lock.read():
                order.append("reader-2")

        t1 = asyncio.create_task(first_reader())
        await reader_holding.wait()
        t2 = asyncio.create_task(writer())
        await asyncio.sleep(0)
        t3 = asyncio.create_task(late_reader())
        await asyncio.sleep(0)
        release_reader.set()
        await asyncio.gather(t1, t2, t3)

        self.assertEqual(order, ["reader-1", "writer", "reader-2"])

    async def test_cancelled_writer_does_not_block_readers(self):
        lock = AsyncReaderWriterLock()
        await lock.acquire_read()
        writer = asyncio.create_task(lock.acquire_write())
        await asyncio.sleep(0)
        writer.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await writer
        await lock.release_read()

        async with lock.read():
            self.assertEqual(lock.readers, 1)
        self.assertFalse(lock.writer_active)
