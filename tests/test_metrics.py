"""Tests for the metrics publisher and the psutil-backed collector."""

import asyncio

import pytest

from userland_panel.metrics import MetricsPublisher, SystemCollector


class Recorder:
    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)


async def make_snapshot():
    return {"cpu": {"percent": 1.0}}


async def test_subscribe_pushes_immediately():
    sent = Recorder()
    publisher = MetricsPublisher(make_snapshot, sent, interval=10)
    publisher.subscribe()
    await asyncio.sleep(0.05)
    publisher.unsubscribe()

    assert sent.messages == [{"type": "system:data", "data": {"cpu": {"percent": 1.0}}}]


async def test_pushes_repeat_until_unsubscribed():
    sent = Recorder()
    publisher = MetricsPublisher(make_snapshot, sent, interval=0.05)
    publisher.subscribe()
    await asyncio.sleep(0.23)
    publisher.unsubscribe()
    count = len(sent.messages)
    assert count >= 3

    await asyncio.sleep(0.15)
    assert len(sent.messages) == count
    assert not publisher.active


async def test_failed_snapshot_keeps_timer_running():
    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("collector hiccup")
        return {"sample": calls}

    sent = Recorder()
    publisher = MetricsPublisher(flaky, sent, interval=0.05)
    publisher.subscribe()
    await asyncio.sleep(0.18)
    assert publisher.active
    publisher.unsubscribe()

    assert calls >= 3
    assert sent.messages[0]["data"] == {"sample": 2}


async def test_failed_send_keeps_timer_running():
    attempts = 0

    async def broken_send(message):
        nonlocal attempts
        attempts += 1
        raise ConnectionError("socket gone")

    publisher = MetricsPublisher(make_snapshot, broken_send, interval=0.05)
    publisher.subscribe()
    await asyncio.sleep(0.13)
    assert publisher.active
    publisher.unsubscribe()
    assert attempts >= 2


async def test_resubscribe_leaves_one_timer():
    sent = Recorder()
    publisher = MetricsPublisher(make_snapshot, sent, interval=10)
    publisher.subscribe()
    first = publisher._task
    publisher.subscribe()
    second = publisher._task
    await asyncio.sleep(0.05)

    assert first is not second
    assert first.cancelled()
    assert not second.done()
    # Only the surviving timer has pushed
    assert len(sent.messages) == 1
    publisher.unsubscribe()


async def test_unsubscribe_without_subscription_is_noop():
    publisher = MetricsPublisher(make_snapshot, Recorder(), interval=1)
    publisher.unsubscribe()
    publisher.unsubscribe()
    assert not publisher.active


class TestSystemCollector:

    async def test_snapshot_sections(self, tmp_path):
        collector = SystemCollector(thermal_root=tmp_path)
        data = await collector.snapshot()

        for key in ("cpu", "memory", "disk", "network", "processes", "device",
                    "battery", "temperatures", "uptime", "timestamp"):
            assert key in data
        assert 0 <= data["cpu"]["percent"] <= 100 * (data["cpu"]["count_logical"] or 1)
        assert data["memory"]["total"] > 0
        assert isinstance(data["processes"], list)

    async def test_process_limit(self):
        collector = SystemCollector(process_limit=2)
        assert len(await collector.processes()) <= 2

    async def test_ports_always_empty(self):
        assert await SystemCollector().ports() == []

    async def test_thermal_zone_fallback(self, tmp_path):
        zone = tmp_path / "thermal_zone0"
        zone.mkdir()
        (zone / "temp").write_text("42500\n")
        (zone / "type").write_text("cpu-thermal\n")
        broken = tmp_path / "thermal_zone1"
        broken.mkdir()
        (broken / "temp").write_text("n/a\n")

        collector = SystemCollector(thermal_root=tmp_path)
        assert await collector._thermal_zones() == [{"name": "cpu-thermal", "celsius": 42.5}]

    async def test_missing_thermal_root(self, tmp_path):
        collector = SystemCollector(thermal_root=tmp_path / "absent")
        assert await collector._thermal_zones() == []
