"""출발지 주소별 활동 상태 저장소 (ActivityStore).

인제스트 경로는 여러 워커 스레드가 동시에 호출하므로, 전역 락 하나 대신
샤드별 락(lock striping)과 항목별 락을 사용한다.

락 순서는 항상 샤드 락 → 항목 락이다. 워커는 항목 락을 잡은 상태에서
샤드 락을 요청하지 않으므로 교착이 발생하지 않는다.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

logger = logging.getLogger("scanwatcher.detection.store")

SATURATION_REJECT = "reject"
SATURATION_EVICT_OLDEST = "evict_oldest"


class StoreSaturated(Exception):
    """추적 가능한 출발지 수가 상한에 도달하여 새 항목을 만들 수 없음."""

    def __init__(self, address: str, capacity: int) -> None:
        super().__init__(f"activity store saturated ({capacity} sources), rejected {address}")
        self.address  = address
        self.capacity = capacity


@dataclass
class SourceActivity:
    """단일 출발지 주소의 활동 기록.

    ActivityStore가 소유하며, 필드 변경은 반드시 lock을 잡은 상태에서 한다.
    port_events는 (port, timestamp) 쌍을 도착 순서대로 저장하며,
    타임스탬프는 last_seen 이상으로 보정되므로 항상 오름차순이다.
    """
    address: str
    first_seen: float
    last_seen: float
    port_events: deque[tuple[int, float]] = field(default_factory=deque)
    connection_count: int = 0
    alerted_at: float | None = None
    last_host: str | None = None
    evicted: bool = field(default=False, repr=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def alert_emitted(self) -> bool:
        return self.alerted_at is not None

    def add_port(self, port: int, timestamp: float) -> float:
        """포트 접근을 기록하고 실제로 기록된 타임스탬프를 반환한다.

        시계 역행(이전 이벤트보다 과거 시각)은 last_seen으로 보정한다.
        """
        ts = max(timestamp, self.last_seen)
        self.port_events.append((port, ts))
        self.last_seen = ts
        self.connection_count += 1
        return ts

    def cleanup(self, window: float, now: float) -> int:
        """window보다 오래된 이벤트를 제거하고 제거한 개수를 반환한다."""
        cutoff = now - max(0.0, window)
        removed = 0
        events = self.port_events
        while events and events[0][1] <= cutoff:
            events.popleft()
            removed += 1
        return removed

    def unique_ports_in_window(self, window: float, now: float) -> int:
        """now - window 이후(경계 제외) 관찰된 고유 포트 수."""
        cutoff = now - max(0.0, window)
        ports: set[int] = set()
        for port, ts in reversed(self.port_events):
            if ts <= cutoff:
                break
            ports.add(port)
        return len(ports)

    def events_in_window(self, window: float, now: float) -> int:
        """now - window 이후(경계 제외) 기록된 접근 횟수."""
        cutoff = now - max(0.0, window)
        count = 0
        for _, ts in reversed(self.port_events):
            if ts <= cutoff:
                break
            count += 1
        return count

    def ports_in_window(self, window: float, now: float) -> list[int]:
        """윈도우 내 고유 포트를 정렬된 리스트로 반환한다."""
        cutoff = now - max(0.0, window)
        return sorted({port for port, ts in self.port_events if ts > cutoff})

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "connection_count": self.connection_count,
            "tracked_events": len(self.port_events),
            "alerted_at": self.alerted_at,
            "last_host": self.last_host,
        }


class _Shard:
    """entries는 접근 순서를 유지한다 (맨 앞이 가장 오래 접근되지 않은 항목)."""
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: OrderedDict[str, SourceActivity] = OrderedDict()


class ActivityStore:
    """출발지 주소 → SourceActivity 동시성 매핑.

    - get_or_create: 원자적 조회/생성. 상한 도달 시 StoreSaturated.
    - locked: 항목 락을 잡은 상태로 SourceActivity를 넘겨주는 컨텍스트 매니저.
    - evict_older_than: last_seen < cutoff 항목 일괄 제거.

    saturation_policy가 "evict_oldest"이면 상한 도달 시 거부 대신
    가장 오래 접근되지 않은 항목을 교체한다.
    """

    def __init__(
        self,
        max_sources: int = 100_000,
        shards: int = 64,
        saturation_policy: str = SATURATION_REJECT,
    ) -> None:
        if saturation_policy not in (SATURATION_REJECT, SATURATION_EVICT_OLDEST):
            raise ValueError(f"Unknown saturation policy: {saturation_policy!r}")
        self._max_sources = max_sources
        self._policy      = saturation_policy
        self._shards      = [_Shard() for _ in range(max(1, shards))]

        # 크기/카운터 전용 락 (짧은 임계 구역만 보호)
        self._size_lock = threading.Lock()
        self._size      = 0
        self._rejected  = 0
        self._evicted   = 0
        self._replaced  = 0

    # ── 조회/생성 ────────────────────────────────────────────────────

    def _shard_for(self, address: str) -> _Shard:
        return self._shards[hash(address) % len(self._shards)]

    def _reserve_slot(self) -> bool:
        with self._size_lock:
            if self._size >= self._max_sources:
                return False
            self._size += 1
            return True

    def _release_slots(self, count: int = 1) -> None:
        with self._size_lock:
            self._size -= count

    def get_or_create(self, address: str, timestamp: float | None = None) -> SourceActivity:
        """주소의 SourceActivity를 반환하고, 없으면 새로 만든다.

        Raises:
            StoreSaturated: 상한에 도달했고 교체 정책이 아닌 경우.
        """
        shard = self._shard_for(address)
        with shard.lock:
            entry = shard.entries.get(address)
            if entry is not None:
                shard.entries.move_to_end(address)
                return entry

        if not self._reserve_slot():
            replaced = self._policy == SATURATION_EVICT_OLDEST and self._evict_oldest()
            if not replaced or not self._reserve_slot():
                with self._size_lock:
                    self._rejected += 1
                raise StoreSaturated(address, self._max_sources)

        now = time.time() if timestamp is None else timestamp
        with shard.lock:
            entry = shard.entries.get(address)
            if entry is None:
                entry = SourceActivity(address=address, first_seen=now, last_seen=now)
                shard.entries[address] = entry
                return entry

        # 다른 워커가 먼저 생성함. 예약한 슬롯 반환
        self._release_slots()
        return entry

    @contextmanager
    def locked(self, address: str, timestamp: float | None = None) -> Iterator[SourceActivity]:
        """항목 락을 잡은 상태로 SourceActivity를 제공한다.

        조회와 락 획득 사이에 축출된 항목이면 새 항목으로 다시 시도한다.
        """
        while True:
            entry = self.get_or_create(address, timestamp)
            entry.lock.acquire()
            if not entry.evicted:
                break
            entry.lock.release()
        try:
            yield entry
        finally:
            entry.lock.release()

    def get(self, address: str) -> SourceActivity | None:
        shard = self._shard_for(address)
        with shard.lock:
            return shard.entries.get(address)

    def snapshot(self, address: str) -> dict[str, Any] | None:
        """항목의 현재 상태 사본을 반환한다 (관리/조회용)."""
        entry = self.get(address)
        if entry is None:
            return None
        with entry.lock:
            return entry.to_dict()

    def clear_suppression(self, address: str) -> bool:
        """관리자 조치: 출발지의 알림 억제 상태를 해제한다."""
        entry = self.get(address)
        if entry is None:
            return False
        with entry.lock:
            if entry.evicted:
                return False
            entry.alerted_at = None
        logger.info("Suppression cleared for %s", address)
        return True

    # ── 축출 ─────────────────────────────────────────────────────────

    def evict_older_than(self, cutoff: float) -> int:
        """last_seen이 cutoff보다 이전인 항목을 모두 제거하고 제거 수를 반환한다."""
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = []
                for address, entry in shard.entries.items():
                    with entry.lock:
                        if entry.last_seen < cutoff:
                            entry.evicted = True
                            stale.append(address)
                for address in stale:
                    del shard.entries[address]
            removed += len(stale)

        if removed:
            with self._size_lock:
                self._size    -= removed
                self._evicted += removed
        return removed

    def _evict_oldest(self) -> bool:
        """가장 오래 접근되지 않은 항목 하나를 제거한다 (LRU 교체).

        샤드마다 맨 앞 항목만 비교하므로 비용은 샤드 수에 비례한다.
        """
        oldest: tuple[float, str] | None = None
        for shard in self._shards:
            with shard.lock:
                if not shard.entries:
                    continue
                address, entry = next(iter(shard.entries.items()))
                if oldest is None or entry.last_seen < oldest[0]:
                    oldest = (entry.last_seen, address)
        if oldest is None:
            return False

        address = oldest[1]
        shard = self._shard_for(address)
        with shard.lock:
            entry = shard.entries.get(address)
            if entry is None:
                return False
            with entry.lock:
                entry.evicted = True
            del shard.entries[address]

        with self._size_lock:
            self._size     -= 1
            self._replaced += 1
        logger.debug("Replaced oldest tracked source %s", address)
        return True

    # ── 상태 ─────────────────────────────────────────────────────────

    def __len__(self) -> int:
        with self._size_lock:
            return self._size

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.get(address) is not None

    @property
    def capacity(self) -> int:
        return self._max_sources

    @property
    def rejected_count(self) -> int:
        with self._size_lock:
            return self._rejected

    @property
    def evicted_count(self) -> int:
        with self._size_lock:
            return self._evicted

    @property
    def replaced_count(self) -> int:
        with self._size_lock:
            return self._replaced

    def clear(self) -> None:
        """모든 항목을 제거한다 (종료 시)."""
        for shard in self._shards:
            with shard.lock:
                for entry in shard.entries.values():
                    with entry.lock:
                        entry.evicted = True
                shard.entries.clear()
        with self._size_lock:
            self._size = 0
