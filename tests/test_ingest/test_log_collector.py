"""UDP/Unix 로그 수신기 테스트 (실제 소켓 사용)."""

from __future__ import annotations

import asyncio
import os
import socket
import stat
import threading
import time
from unittest.mock import MagicMock

import pytest

from scanwatcher.detection.stats import LINES_DROPPED, EngineStats
from scanwatcher.ingest.collector import UdpLogCollector, UnixLogCollector, WorkerPool


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_worker_pool_runs_batches_off_loop():
    processor = MagicMock()
    pool = WorkerPool(processor, workers=2)
    try:
        future = pool.submit(["a", "b"])
        await future
        await pool.drain()
        processor.on_lines.assert_called_once_with(["a", "b"], None)
        assert pool.submit([]) is None
    finally:
        pool.shutdown()


@pytest.mark.asyncio
async def test_udp_collector_splits_datagram_lines():
    processor = MagicMock()
    pool = WorkerPool(processor, workers=1)
    collector = UdpLogCollector(pool, host="127.0.0.1", port=0)
    await collector.start()
    try:
        host, port = collector.local_address
        assert port != 0

        sent_at = time.time()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.sendto(b"src=203.0.113.5 dpt=1\nsrc=203.0.113.5 dpt=2\n\n", (host, port))
        finally:
            sock.close()

        await _wait_for(lambda: processor.on_lines.called)
        await pool.drain()
        processor.on_lines.assert_called_once()
        lines, received_at = processor.on_lines.call_args.args
        assert lines == ["src=203.0.113.5 dpt=1", "src=203.0.113.5 dpt=2"]
        # 데이터그램 수신 시각이 묶음 전체에 붙는다
        assert sent_at <= received_at <= time.time()
    finally:
        collector.stop()
        pool.shutdown()
    assert collector.local_address is None


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="requires Unix domain sockets")
async def test_unix_collector_batches_lines(tmp_path):
    processor = MagicMock()
    pool = WorkerPool(processor, workers=1)
    path = str(tmp_path / "sw.sock")
    collector = UnixLogCollector(pool, path=path, batch_size=2)
    await collector.start()
    try:
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o666

        reader, writer = await asyncio.open_unix_connection(path)
        writer.write(b"line-1\nline-2\nline-3\n")
        await writer.drain()
        writer.close()
        await writer.wait_closed()

        await _wait_for(lambda: processor.on_lines.call_count >= 2)
        await pool.drain()
        batches = [c.args[0] for c in processor.on_lines.call_args_list]
        assert batches == [["line-1", "line-2"], ["line-3"]]
        stamps = [c.args[1] for c in processor.on_lines.call_args_list]
        assert [len(s) for s in stamps] == [2, 1]
        assert stamps[0][0] <= stamps[0][1] <= stamps[1][0]
    finally:
        await collector.stop()
        pool.shutdown()
    assert not os.path.exists(path)


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="requires Unix domain sockets")
async def test_unix_collector_flushes_partial_batch_on_idle(tmp_path):
    processor = MagicMock()
    pool = WorkerPool(processor, workers=1)
    path = str(tmp_path / "idle.sock")
    collector = UnixLogCollector(pool, path=path, batch_size=50, flush_interval=0.05)
    await collector.start()
    try:
        reader, writer = await asyncio.open_unix_connection(path)
        writer.write(b"only-line\n")
        await writer.drain()

        await _wait_for(lambda: processor.on_lines.called)
        processor.on_lines.assert_called_once()
        assert processor.on_lines.call_args.args[0] == ["only-line"]

        writer.close()
        await writer.wait_closed()
    finally:
        await collector.stop()
        pool.shutdown()


class _GatedProcessor:
    """첫 묶음을 gate가 열릴 때까지 붙잡아 두는 처리기."""

    def __init__(self) -> None:
        self.stats = EngineStats()
        self.gate  = threading.Event()
        self.order: list[str] = []
        self._lock = threading.Lock()

    def on_lines(self, lines, received_at=None):
        if lines[0] == "first":
            self.gate.wait(5)
        with self._lock:
            self.order.append(lines[0])
        return []


@pytest.mark.asyncio
async def test_worker_pool_drops_batches_when_full():
    processor = _GatedProcessor()
    pool = WorkerPool(processor, workers=1, queue_size=3)
    try:
        results = [pool.submit(["first"])] + [pool.submit([f"b{i}", "x"]) for i in range(4)]
        assert all(r is not None for r in results[:3])
        assert results[3] is None and results[4] is None
        assert pool.pending() == 3
        assert pool.dropped_count == 2
        assert processor.stats.get(LINES_DROPPED) == 4

        processor.gate.set()
        await pool.drain()
        assert pool.pending() == 0
        assert processor.order == ["first", "b0", "b1"]
        # 여유가 생기면 다시 받는다
        assert pool.submit(["again"]) is not None
        await pool.drain()
    finally:
        processor.gate.set()
        pool.shutdown()


@pytest.mark.asyncio
async def test_worker_pool_keeps_stream_order():
    processor = _GatedProcessor()
    pool = WorkerPool(processor, workers=4)
    try:
        pool.submit(["first"], stream="fw01")
        pool.submit(["second"], stream="fw01")
        pool.submit(["other"], stream="fw02")

        # 다른 스트림은 막힌 묶음과 무관하게 진행된다
        await _wait_for(lambda: "other" in processor.order)
        await asyncio.sleep(0.05)
        assert "second" not in processor.order

        processor.gate.set()
        await pool.drain()
        assert processor.order.index("first") < processor.order.index("second")
    finally:
        processor.gate.set()
        pool.shutdown()
