"""Tests for the in-process event bus."""

from __future__ import annotations

import asyncio

import pytest

from cogs.services.bus import EventBus, Topic
from cogs.state.models import Claim


@pytest.mark.asyncio
async def test_subscribers_run_in_registration_order() -> None:
    bus = EventBus()
    seen: list[tuple[str, int]] = []

    async def first(claim: Claim) -> None:
        await asyncio.sleep(0)
        seen.append(("first", claim.pid))

    async def second(claim: Claim) -> None:
        seen.append(("second", claim.pid))

    bus.subscribe(Topic.CLAIM_OBSERVED, first)
    bus.subscribe(Topic.CLAIM_OBSERVED, second)

    for pid in (1, 2):
        await bus.publish(Topic.CLAIM_OBSERVED, Claim(device_number=0, pid=pid))

    assert seen == [("first", 1), ("second", 1), ("first", 2), ("second", 2)]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_stop_delivery(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    delivered: list[object] = []

    async def broken(event: object) -> None:
        raise RuntimeError("handler bug")

    async def healthy(event: object) -> None:
        delivered.append(event)

    bus.subscribe(Topic.DEVICE_UPDATED, broken)
    bus.subscribe(Topic.DEVICE_UPDATED, healthy)

    with caplog.at_level("ERROR"):
        await bus.publish(Topic.DEVICE_UPDATED, "event")

    assert delivered == ["event"]
    assert "failed handling" in caplog.text


@pytest.mark.asyncio
async def test_topics_are_independent_and_unsubscribe() -> None:
    bus = EventBus()
    delivered: list[object] = []

    async def handler(event: object) -> None:
        delivered.append(event)

    bus.subscribe(Topic.DEVICE_UPDATED, handler)
    await bus.publish(Topic.CLAIM_OBSERVED, "ignored")
    assert bus.subscribers(Topic.DEVICE_UPDATED) == 1
    assert bus.subscribers(Topic.CLAIM_OBSERVED) == 0

    bus.unsubscribe(Topic.DEVICE_UPDATED, handler)
    bus.unsubscribe(Topic.DEVICE_UPDATED, handler)
    await bus.publish(Topic.DEVICE_UPDATED, "dropped")
    assert delivered == []
