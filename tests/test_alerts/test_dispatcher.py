"""Tests for AlertDispatcher."""

from __future__ import annotations

import asyncio
import threading

import pytest

from scanwatcher.alerts.dispatcher import AlertDispatcher
from scanwatcher.alerts.sinks.base import AlertSink
from scanwatcher.alerts.sinks.http import HttpSink
from scanwatcher.alerts.sinks.syslog import SyslogSink
from scanwatcher.detection.models import Alert, AlertKind, Severity
from scanwatcher.utils.config import Config


def _make_alert(source="203.0.113.5", severity=Severity.LOW, kind=AlertKind.RAPID_SCAN):
    return Alert(
        kind=kind,
        source_address=source,
        unique_port_count=10,
        window_seconds=60,
        severity=severity,
        message="test alert",
    )


class _RecordingSink(AlertSink):
    """테스트용: 받은 알림을 기록하는 싱크."""
    name = "recording"

    def __init__(self, config=None, delay: float = 0.0, fail: bool = False, result: bool = True):
        super().__init__(config or {"enabled": True})
        self.received: list[Alert] = []
        self.delay  = delay
        self.fail   = fail
        self.result = result
        self.closed = False

    async def send(self, alert: Alert) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("collector unreachable")
        self.received.append(alert)
        return self.result

    async def close(self) -> None:
        self.closed = True


def test_sinks_built_from_config():
    config = Config.from_dict({
        "alerts": {"sinks": {
            "syslog": {"enabled": True, "host": "127.0.0.1", "port": 5514},
            "http": {"enabled": True, "url": "http://127.0.0.1:1/cef"},
        }},
    })
    dispatcher = AlertDispatcher(config)
    kinds = {type(s) for s in dispatcher.sinks}
    assert kinds == {SyslogSink, HttpSink}


def test_no_sinks_when_disabled(config):
    assert AlertDispatcher(config).sinks == []


@pytest.mark.asyncio
async def test_enqueue_and_process(config):
    sink = _RecordingSink()
    dispatcher = AlertDispatcher(config, sinks=[sink])
    await dispatcher.start()
    try:
        alert = _make_alert()
        dispatcher.enqueue(alert)
        await asyncio.sleep(0.1)
        assert sink.received == [alert]
    finally:
        await dispatcher.stop()
    assert sink.closed


@pytest.mark.asyncio
async def test_min_severity_filter(config):
    sink = _RecordingSink({"enabled": True, "min_severity": "high"})
    dispatcher = AlertDispatcher(config, sinks=[sink])
    await dispatcher.process_alert(_make_alert(severity=Severity.MEDIUM))
    await dispatcher.process_alert(_make_alert(severity=Severity.CRITICAL))
    assert [a.severity for a in sink.received] == [Severity.CRITICAL]


@pytest.mark.asyncio
async def test_failed_sink_does_not_block_others(config):
    """한 싱크의 실패/타임아웃이 다른 싱크 전송을 막지 않는다."""
    failing = _RecordingSink(fail=True)
    slow    = _RecordingSink(delay=5.0)
    good    = _RecordingSink()
    dispatcher = AlertDispatcher(
        Config.from_dict({"alerts": {"send_timeout_seconds": 0.05}}),
        sinks=[failing, slow, good],
    )
    alert = _make_alert()
    await asyncio.wait_for(dispatcher.process_alert(alert), timeout=2.0)
    assert good.received == [alert]
    assert failing.received == []
    assert slow.received == []


@pytest.mark.asyncio
async def test_queue_full_drops_alert(config):
    dispatcher = AlertDispatcher(Config.from_dict({"alerts": {"queue_size": 1}}), sinks=[])
    dispatcher.enqueue(_make_alert(source="203.0.113.1"))
    dispatcher.enqueue(_make_alert(source="203.0.113.2"))
    assert dispatcher.pending() == 1
    assert dispatcher.dropped_count == 1


@pytest.mark.asyncio
async def test_enqueue_from_worker_thread(config):
    sink = _RecordingSink()
    dispatcher = AlertDispatcher(config, sinks=[sink])
    await dispatcher.start()
    try:
        alerts = [_make_alert(source=f"203.0.113.{i}") for i in range(1, 6)]

        def worker():
            for alert in alerts:
                dispatcher.enqueue(alert)

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()
        await asyncio.sleep(0.2)
        assert sink.received == alerts
    finally:
        await dispatcher.stop()


@pytest.mark.asyncio
async def test_stop_drains_pending_alerts(config):
    sink = _RecordingSink()
    dispatcher = AlertDispatcher(config, sinks=[sink])
    await dispatcher.start()
    for i in range(1, 4):
        dispatcher.enqueue(_make_alert(source=f"198.51.100.{i}"))
    await dispatcher.stop()
    assert len(sink.received) == 3
