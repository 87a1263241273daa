"""Tests for the thread-to-loop event queue."""

import asyncio
import threading

import pytest

from filetrace.capture.scrubber import build_record
from filetrace.pipeline.queue import EventQueue


@pytest.fixture()
def make_record(make_raw_event, identity):
    def _make(path="/data/report.docx"):
        return build_record(make_raw_event(path=path), identity)

    return _make


class TestEventQueue:
    async def test_put_then_get(self, make_record):
        queue = EventQueue(asyncio.get_running_loop())
        record = make_record()

        assert queue.put_threadsafe(record) is True
        got = await asyncio.wait_for(queue.get(), timeout=1)

        assert got is record
        stats = queue.stats()
        assert stats.enqueued == 1
        assert stats.dequeued == 1
        assert stats.depth == 0

    async def test_concurrent_producers_exactly_once_in_order(self, make_record):
        queue = EventQueue(asyncio.get_running_loop())
        producers = 4
        per_producer = 50
        records = {
            p: [make_record(f"/data/p{p}/file{i}.txt") for i in range(per_producer)]
            for p in range(producers)
        }

        def produce(p):
            for record in records[p]:
                queue.put_threadsafe(record)

        threads = [threading.Thread(target=produce, args=(p,)) for p in range(producers)]
        for t in threads:
            t.start()
        await asyncio.to_thread(lambda: [t.join() for t in threads])

        received = []
        for _ in range(producers * per_producer):
            received.append(await asyncio.wait_for(queue.get(), timeout=2))

        assert queue.get_nowait() is None
        assert len(received) == producers * per_producer
        assert len({id(r) for r in received}) == producers * per_producer
        for p in range(producers):
            mine = [r for r in received if any(r is x for x in records[p])]
            assert [id(r) for r in mine] == [id(r) for r in records[p]]

    async def test_closed_queue_drops(self, make_record):
        queue = EventQueue(asyncio.get_running_loop())
        queue.close()

        assert queue.put_threadsafe(make_record()) is False
        await asyncio.sleep(0)

        assert queue.qsize() == 0
        assert queue.stats().dropped == 1

    async def test_close_before_accept_drops(self, make_record):
        queue = EventQueue(asyncio.get_running_loop())
        assert queue.put_threadsafe(make_record()) is True
        # the hand-off has not run on the loop yet
        queue.close()
        await asyncio.sleep(0)

        assert queue.get_nowait() is None
        assert queue.stats().dropped == 1

    async def test_records_queued_before_close_stay_available(self, make_record):
        queue = EventQueue(asyncio.get_running_loop())
        queue.put_threadsafe(make_record())
        await asyncio.sleep(0)
        queue.close()

        assert queue.closed
        assert queue.get_nowait() is not None

    async def test_cancelled_get_leaves_queue_intact(self, make_record):
        queue = EventQueue(asyncio.get_running_loop())
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        record = make_record()
        queue.put_threadsafe(record)
        assert await asyncio.wait_for(queue.get(), timeout=1) is record

    async def test_high_water_mark(self, make_record):
        queue = EventQueue(asyncio.get_running_loop())
        for i in range(3):
            queue.put_threadsafe(make_record(f"/data/{i}.txt"))
        await asyncio.sleep(0)
        queue.get_nowait()

        stats = queue.stats()
        assert stats.high_water == 3
        assert stats.depth == 2

    def test_put_after_loop_closed_drops(self, make_record):
        loop = asyncio.new_event_loop()
        queue = EventQueue(loop)
        loop.close()

        assert queue.put_threadsafe(make_record()) is False
        assert queue.stats().dropped == 1
