from __future__ import annotations

import asyncio
import logging

import pytest

from next_track.events import SESSION_ENDED, Debouncer, EventChannel
from next_track.notifications import NotificationCenter, PromptFlags


def test_channel_delivers_in_subscription_order():
    channel = EventChannel()
    seen = []
    channel.subscribe(SESSION_ENDED, lambda p: seen.append(("a", p)))
    channel.subscribe(SESSION_ENDED, lambda p: seen.append(("b", p)))
    channel.subscribe("other", lambda p: seen.append(("other", p)))

    channel.publish(SESSION_ENDED, 1)

    assert seen == [("a", 1), ("b", 1)]


def test_unsubscribe_stops_delivery():
    channel = EventChannel()
    seen = []
    unsubscribe = channel.subscribe(SESSION_ENDED, seen.append)
    unsubscribe()
    unsubscribe()
    channel.publish(SESSION_ENDED, 1)
    assert seen == []


def test_failing_handler_does_not_block_others(caplog):
    channel = EventChannel()
    seen = []

    def boom(_payload):
        raise RuntimeError("boom")

    channel.subscribe(SESSION_ENDED, boom)
    channel.subscribe(SESSION_ENDED, seen.append)
    with caplog.at_level(logging.ERROR):
        channel.publish(SESSION_ENDED, "s")

    assert seen == ["s"]
    assert "session_ended" in caplog.text


def test_debouncer_outside_loop_runs_immediately():
    calls = []
    Debouncer(5.0, lambda: calls.append(1)).trigger()
    assert calls == [1]


@pytest.mark.asyncio
async def test_debouncer_coalesces_bursts():
    calls = []
    debouncer = Debouncer(0.05, lambda: calls.append(1))

    for _ in range(3):
        debouncer.trigger()
        await asyncio.sleep(0.01)
    assert debouncer.pending
    assert calls == []

    await asyncio.sleep(0.1)
    assert calls == [1]
    assert not debouncer.pending


@pytest.mark.asyncio
async def test_debouncer_cancel():
    calls = []
    debouncer = Debouncer(0.01, lambda: calls.append(1))
    debouncer.trigger()
    debouncer.cancel()
    await asyncio.sleep(0.05)
    assert calls == []


def test_notification_center_keeps_order_and_survives_delivery_errors(clock, caplog):
    def deliver(_n):
        raise OSError("no notification service")

    center = NotificationCenter(deliver, clock=clock)
    with caplog.at_level(logging.WARNING):
        first = center.post("📍 Tracking Started", "body", identifier="auto-start-tracking")
        second = center.post("📍 Left Home", "Starting location tracking...")

    assert [n.identifier for n in center.posted] == ["auto-start-tracking", second.identifier]
    assert first.posted_at == clock.now
    assert second.identifier
    assert "Failed to deliver notification" in caplog.text


def test_prompt_flags_notify_on_change_only():
    flags = PromptFlags()
    changes = []
    flags.observe(lambda name, value: changes.append((name, value)))

    flags.raise_prompt("interrupted_tracking")
    flags.raise_prompt("interrupted_tracking")
    flags.dismiss("interrupted_tracking")
    flags.dismiss("session_recovery")

    assert changes == [("interrupted_tracking", True), ("interrupted_tracking", False)]
    assert not flags.is_set("interrupted_tracking")
