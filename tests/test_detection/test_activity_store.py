"""ActivityStore / SourceActivity 테스트."""

from __future__ import annotations

import threading

import pytest

from scanwatcher.detection.store import (
    SATURATION_EVICT_OLDEST,
    ActivityStore,
    SourceActivity,
    StoreSaturated,
)


class TestSourceActivity:
    def setup_method(self):
        self.activity = SourceActivity(address="203.0.113.5", first_seen=1000.0, last_seen=1000.0)

    def test_add_port_updates_counters(self):
        self.activity.add_port(80, 1000.0)
        self.activity.add_port(443, 1001.0)
        assert self.activity.connection_count == 2
        assert self.activity.last_seen == 1001.0
        assert self.activity.unique_ports_in_window(60, 1001.0) == 2

    def test_clock_skew_is_clamped(self):
        self.activity.add_port(80, 1010.0)
        recorded = self.activity.add_port(81, 990.0)
        assert recorded == 1010.0
        assert self.activity.last_seen == 1010.0
        assert [ts for _, ts in self.activity.port_events] == [1010.0, 1010.0]

    def test_window_boundary_is_exclusive(self):
        self.activity.add_port(1, 1000.0)
        self.activity.add_port(2, 1030.0)
        assert self.activity.unique_ports_in_window(60, 1060.0) == 1
        assert self.activity.unique_ports_in_window(60, 1059.9) == 2

    def test_duplicate_ports_counted_once(self):
        for _ in range(5):
            self.activity.add_port(22, 1000.0)
        assert self.activity.unique_ports_in_window(60, 1000.0) == 1
        assert self.activity.events_in_window(60, 1000.0) == 5

    def test_cleanup_removes_old_events(self):
        self.activity.add_port(1, 1000.0)
        self.activity.add_port(2, 1100.0)
        removed = self.activity.cleanup(60, 1100.0)
        assert removed == 1
        assert list(self.activity.port_events) == [(2, 1100.0)]

    def test_ports_in_window_sorted(self):
        for port in (443, 22, 80, 22):
            self.activity.add_port(port, 1000.0)
        assert self.activity.ports_in_window(60, 1000.0) == [22, 80, 443]


class TestActivityStore:
    def test_get_or_create_returns_same_entry(self):
        store = ActivityStore(max_sources=10)
        first = store.get_or_create("203.0.113.5", 1000.0)
        second = store.get_or_create("203.0.113.5", 2000.0)
        assert first is second
        assert first.first_seen == 1000.0
        assert len(store) == 1

    def test_saturation_rejects_new_sources(self):
        store = ActivityStore(max_sources=2)
        store.get_or_create("203.0.113.1", 1000.0)
        store.get_or_create("203.0.113.2", 1000.0)
        with pytest.raises(StoreSaturated):
            store.get_or_create("203.0.113.3", 1000.0)
        # 기존 출발지는 계속 갱신 가능
        store.get_or_create("203.0.113.1", 1001.0)
        assert len(store) == 2
        assert store.rejected_count == 1

    def test_evict_oldest_policy_replaces_lru(self):
        store = ActivityStore(max_sources=2, saturation_policy=SATURATION_EVICT_OLDEST)
        store.get_or_create("203.0.113.1", 1000.0)
        store.get_or_create("203.0.113.2", 2000.0)
        store.get_or_create("203.0.113.3", 3000.0)
        assert "203.0.113.1" not in store
        assert "203.0.113.3" in store
        assert len(store) == 2
        assert store.replaced_count == 1

    def test_evict_oldest_uses_access_recency(self):
        store = ActivityStore(max_sources=2, shards=1, saturation_policy=SATURATION_EVICT_OLDEST)
        with store.locked("203.0.113.1", 1000.0) as activity:
            activity.add_port(80, 1000.0)
        with store.locked("203.0.113.2", 2000.0) as activity:
            activity.add_port(80, 2000.0)
        with store.locked("203.0.113.1", 3000.0) as activity:
            activity.add_port(81, 3000.0)

        store.get_or_create("203.0.113.3", 4000.0)
        assert "203.0.113.2" not in store
        assert "203.0.113.1" in store
        assert "203.0.113.3" in store

    def test_evict_oldest_compares_shard_heads(self):
        store = ActivityStore(max_sources=3, shards=8, saturation_policy=SATURATION_EVICT_OLDEST)
        for i, ts in enumerate((1000.0, 2000.0, 3000.0), start=1):
            with store.locked(f"203.0.113.{i}", ts) as activity:
                activity.add_port(80, ts)
        with store.locked("203.0.113.1", 4000.0) as activity:
            activity.add_port(81, 4000.0)

        store.get_or_create("203.0.113.9", 5000.0)
        assert "203.0.113.2" not in store
        assert len(store) == 3

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            ActivityStore(saturation_policy="drop_everything")

    def test_evict_older_than_uses_strict_cutoff(self):
        store = ActivityStore()
        with store.locked("203.0.113.1", 1000.0) as activity:
            activity.add_port(80, 1000.0)
        with store.locked("203.0.113.2", 2000.0) as activity:
            activity.add_port(80, 2000.0)

        assert store.evict_older_than(1000.0) == 0
        assert store.evict_older_than(1500.0) == 1
        assert "203.0.113.1" not in store
        assert "203.0.113.2" in store
        assert store.evicted_count == 1

    def test_locked_recreates_evicted_entry(self):
        store = ActivityStore()
        stale = store.get_or_create("203.0.113.1", 1000.0)
        store.evict_older_than(5000.0)
        assert stale.evicted

        with store.locked("203.0.113.1", 6000.0) as activity:
            assert activity is not stale
            assert activity.first_seen == 6000.0

    def test_clear_suppression(self):
        store = ActivityStore()
        with store.locked("203.0.113.1", 1000.0) as activity:
            activity.alerted_at = 1000.0
        assert store.clear_suppression("203.0.113.1") is True
        assert store.get("203.0.113.1").alert_emitted is False
        assert store.clear_suppression("198.51.100.1") is False

    def test_snapshot(self):
        store = ActivityStore()
        with store.locked("203.0.113.1", 1000.0) as activity:
            activity.add_port(443, 1000.0)
        snap = store.snapshot("203.0.113.1")
        assert snap["connection_count"] == 1
        assert snap["tracked_events"] == 1
        assert store.snapshot("198.51.100.1") is None

    def test_concurrent_updates_are_not_lost(self):
        """여러 스레드가 같은 출발지들을 동시에 갱신해도 카운트가 유실되지 않는다."""
        store = ActivityStore(max_sources=1000, shards=4)
        addresses = [f"203.0.113.{i}" for i in range(1, 9)]
        per_thread = 500
        evictor_stop = threading.Event()

        def worker(offset: int) -> None:
            for i in range(per_thread):
                address = addresses[(i + offset) % len(addresses)]
                with store.locked(address, 1000.0 + i) as activity:
                    activity.add_port(i % 1024, 1000.0 + i)

        def evictor() -> None:
            # 모든 항목보다 이전 cutoff: 동시 실행되지만 아무것도 제거하지 않아야 함
            while not evictor_stop.is_set():
                store.evict_older_than(0.0)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        ev = threading.Thread(target=evictor)
        ev.start()
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        evictor_stop.set()
        ev.join()

        total = sum(store.get(a).connection_count for a in addresses)
        assert total == 8 * per_thread
        assert len(store) == len(addresses)
