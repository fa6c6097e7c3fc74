"""로그 라인 수신기: asyncio UDP 데이터그램, Unix 도메인 스트림 소켓.

수신은 이벤트 루프에서, 정규화/탐지는 WorkerPool 스레드에서 실행된다.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import time
from collections.abc import Hashable
from concurrent.futures import ThreadPoolExecutor

from scanwatcher import metrics
from scanwatcher.detection.stats import LINES_DROPPED
from scanwatcher.ingest.processor import LineProcessor

logger = logging.getLogger("scanwatcher.ingest.collector")

_MAX_LINE_BYTES = 65536


def _split_lines(data: bytes) -> list[str]:
    text = data.decode("utf-8", errors="replace")
    return [line for line in text.splitlines() if line.strip()]


class WorkerPool:
    """라인 묶음을 스레드 풀에서 LineProcessor.on_lines로 처리한다.

    - 처리 대기 중인 묶음은 queue_size개로 제한된다. 가득 차면 새 묶음은
      경고와 함께 버려지고 lines_dropped 카운터가 증가한다.
    - 같은 stream 키로 제출된 묶음은 제출 순서대로 하나씩 실행된다.
      서로 다른 stream 사이에는 순서를 보장하지 않는다.
    """

    def __init__(self, processor: LineProcessor, workers: int = 4, queue_size: int = 1000) -> None:
        self._processor  = processor
        self._workers    = max(1, workers)
        self._queue_size = max(1, queue_size)
        self._executor   = ThreadPoolExecutor(
            max_workers=self._workers, thread_name_prefix="scanwatcher-worker",
        )
        self._pending: set[asyncio.Future] = set()
        # stream 키 → 해당 stream에 마지막으로 제출된 future
        self._tails: dict[Hashable, asyncio.Future] = {}
        self._dropped = 0

    @property
    def workers(self) -> int:
        return self._workers

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def pending(self) -> int:
        return len(self._pending)

    def submit(
        self,
        lines: list[str],
        received_at: float | list[float] | None = None,
        stream: Hashable | None = None,
    ) -> asyncio.Future | None:
        """이벤트 루프 스레드에서 호출한다. 묶음 하나를 워커에 넘긴다.

        빈 묶음이거나 대기열이 가득 차 버려진 경우 None을 반환한다.
        """
        if not lines:
            return None
        if len(self._pending) >= self._queue_size:
            self._dropped += 1
            metrics.ingest_batches_dropped.inc()
            self._processor.stats.incr(LINES_DROPPED, len(lines))
            logger.warning("Worker queue full, dropping batch of %d lines", len(lines))
            return None

        loop = asyncio.get_running_loop()
        previous = self._tails.get(stream) if stream is not None else None
        if previous is None or previous.done():
            future = loop.run_in_executor(
                self._executor, self._processor.on_lines, lines, received_at,
            )
        else:
            future = asyncio.ensure_future(self._run_after(previous, lines, received_at))

        self._pending.add(future)
        future.add_done_callback(self._on_done)
        if stream is not None:
            self._tails[stream] = future
            future.add_done_callback(functools.partial(self._release_stream, stream))
        return future

    async def _run_after(
        self,
        previous: asyncio.Future,
        lines: list[str],
        received_at: float | list[float] | None,
    ) -> list:
        # 앞선 묶음의 성공/실패와 무관하게 끝날 때까지만 기다린다
        await asyncio.wait({previous})
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self._processor.on_lines, lines, received_at,
        )

    def _release_stream(self, stream: Hashable, future: asyncio.Future) -> None:
        if self._tails.get(stream) is future:
            del self._tails[stream]

    def _on_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Worker batch failed: %r", exc)

    async def drain(self) -> None:
        """제출된 묶음이 모두 끝날 때까지 기다린다."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class _LineDatagramProtocol(asyncio.DatagramProtocol):
    """asyncio UDP DatagramProtocol. 데이터그램 하나에 여러 줄이 올 수 있다."""

    def __init__(self, pool: WorkerPool) -> None:
        self._pool = pool

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        logger.debug("UDP log collector started")

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        # 송신 주소 하나를 하나의 전달 스트림으로 본다
        self._pool.submit(_split_lines(data), time.time(), stream=addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning("UDP log collector error: %s", exc)

    def connection_lost(self, exc: Exception | None) -> None:
        logger.info("UDP log collector stopped")


class UdpLogCollector:
    """UDP로 로그 라인을 수신하여 WorkerPool로 전달하는 서비스.

    app.py에서 start() / stop()으로 수명주기를 관리한다.
    """

    def __init__(self, pool: WorkerPool, host: str = "0.0.0.0", port: int = 5555) -> None:
        self._pool      = pool
        self._host      = host
        self._port      = port
        self._transport: asyncio.DatagramTransport | None = None

    @property
    def local_address(self) -> tuple[str, int] | None:
        """실제 바인딩된 (host, port). port=0으로 시작한 경우 확인용."""
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[:2]

    async def start(self) -> None:
        """UDP 소켓을 열고 수신을 시작한다."""
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _LineDatagramProtocol(self._pool),
            local_addr=(self._host, self._port),
        )
        self._transport = transport
        host, port = self.local_address
        logger.info("UDP log collector listening on %s:%d", host, port)

    def stop(self) -> None:
        """UDP 소켓을 닫는다."""
        if self._transport is not None:
            self._transport.close()
            self._transport = None


class UnixLogCollector:
    """Unix 도메인 스트림 소켓에서 줄 단위 로그를 받아 묶음으로 전달한다.

    batch_size 줄이 모이거나 flush_interval 동안 새 줄이 없으면 묶음을 넘긴다.
    """

    def __init__(
        self,
        pool: WorkerPool,
        path: str,
        batch_size: int = 50,
        flush_interval: float = 1.0,
        mode: int = 0o666,
    ) -> None:
        self._pool           = pool
        self._path           = path
        self._batch_size     = max(1, batch_size)
        self._flush_interval = flush_interval
        self._mode           = mode
        self._server: asyncio.AbstractServer | None = None

    @property
    def path(self) -> str:
        return self._path

    async def start(self) -> None:
        """소켓 파일을 만들고 연결 수락을 시작한다. 남아 있는 이전 소켓 파일은 지운다."""
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if os.path.exists(self._path):
            os.unlink(self._path)

        self._server = await asyncio.start_unix_server(
            self._handle_client, path=self._path, limit=_MAX_LINE_BYTES,
        )
        os.chmod(self._path, self._mode)
        logger.info("Unix log collector listening on %s", self._path)

    async def stop(self) -> None:
        """서버를 닫고 소켓 파일을 제거한다."""
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            if os.path.exists(self._path):
                os.unlink(self._path)
            logger.info("Unix log collector stopped")

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
    ) -> None:
        # 연결 하나가 하나의 전달 스트림. 묶음은 이 연결 안에서 순서대로 처리된다
        stream = object()
        batch: list[str] = []
        stamps: list[float] = []
        try:
            while True:
                try:
                    if batch:
                        raw = await asyncio.wait_for(reader.readline(), timeout=self._flush_interval)
                    else:
                        raw = await reader.readline()
                except asyncio.TimeoutError:
                    self._pool.submit(batch, stamps, stream=stream)
                    batch, stamps = [], []
                    continue
                except ValueError:
                    logger.warning("Dropped oversized line on %s", self._path)
                    continue

                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line.strip():
                    batch.append(line)
                    stamps.append(time.time())
                if len(batch) >= self._batch_size:
                    self._pool.submit(batch, stamps, stream=stream)
                    batch, stamps = [], []
        except ConnectionError as exc:
            logger.debug("Unix log client disconnected: %s", exc)
        finally:
            if batch:
                self._pool.submit(batch, stamps, stream=stream)
            writer.close()
