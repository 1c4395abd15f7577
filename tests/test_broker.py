"""Tests for admission control."""

from __future__ import annotations

import asyncio

import pytest

from cogs.errors import ClaimTimeout, InsufficientDevices, PermissionDenied
from cogs.services.bus import Topic
from cogs.state.context import RuntimeState
from cogs.state.models import Claim

from tests.mocks import Clock, FakeIdentifier, build_broker, make_devices, seed


@pytest.mark.asyncio
async def test_grant_is_immediate_and_ascending(identifier: FakeIdentifier, runtime_state: RuntimeState) -> None:
    store, _, broker = build_broker(identifier, runtime_state)
    await seed(store, list(reversed(make_devices(3))))

    granted = await asyncio.wait_for(broker.reserve(2, "alice@example.com", -1), 0.5)

    assert [device.number for device in granted] == [0, 1]
    snapshot = await store.snapshot()
    owners = {status.info.number: status.claim.user for status in snapshot.devices.values()}
    assert owners == {0: "alice@example.com", 1: "alice@example.com", 2: ""}
    assert runtime_state.counters.grants == 1
    assert runtime_state.counters.devices_granted == 2
    assert broker.pending_waiters == 0


@pytest.mark.asyncio
async def test_zero_timeout_fails_immediately(identifier: FakeIdentifier, runtime_state: RuntimeState) -> None:
    store, _, broker = build_broker(identifier, runtime_state, poll_interval=10.0)
    await seed(store, make_devices(1))
    await store.set_claim(0, "bob@example.com")

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(ClaimTimeout):
        await broker.reserve(1, "alice@example.com", 0)
    assert loop.time() - started < 0.5
    assert runtime_state.counters.timeouts == 1
    assert broker.pending_waiters == 0


@pytest.mark.asyncio
async def test_bad_counts(identifier: FakeIdentifier, runtime_state: RuntimeState) -> None:
    store, _, broker = build_broker(identifier, runtime_state)
    await seed(store, make_devices(2))

    with pytest.raises(ValueError):
        await broker.reserve(0, "alice@example.com", 0)
    with pytest.raises(InsufficientDevices):
        await broker.reserve(3, "alice@example.com", -1)
    assert runtime_state.counters.rejections == 1


@pytest.mark.asyncio
async def test_concurrent_requests_for_one_device(identifier: FakeIdentifier) -> None:
    store, _, broker = build_broker(identifier)
    await seed(store, make_devices(1))

    results = await asyncio.gather(
        broker.reserve(1, "alice@example.com", 0.2),
        broker.reserve(1, "bob@example.com", 0.2),
        return_exceptions=True,
    )

    granted = [result for result in results if isinstance(result, list)]
    failed = [result for result in results if isinstance(result, ClaimTimeout)]
    assert len(granted) == 1 and len(failed) == 1
    assert [device.number for device in granted[0]] == [0]


@pytest.mark.asyncio
async def test_many_concurrent_requests_never_share_devices(identifier: FakeIdentifier) -> None:
    store, _, broker = build_broker(identifier)
    await seed(store, make_devices(5))

    results = await asyncio.gather(
        *(broker.reserve(2, f"user{index}@example.com", 0.1) for index in range(6)),
        return_exceptions=True,
    )

    granted = [[device.number for device in result] for result in results if isinstance(result, list)]
    flattened = [number for numbers in granted for number in numbers]
    assert len(granted) == 2
    assert len(flattened) == len(set(flattened)) == 4
    assert sum(isinstance(result, ClaimTimeout) for result in results) == 4


@pytest.mark.asyncio
async def test_waiter_is_woken_by_release(identifier: FakeIdentifier) -> None:
    store, _, broker = build_broker(identifier, poll_interval=10.0)
    await seed(store, make_devices(1))
    await store.set_claim(0, "bob@example.com")

    waiter = asyncio.create_task(broker.reserve(1, "alice@example.com", 5))
    await asyncio.sleep(0.01)
    assert broker.pending_waiters == 1
    status = (await store.snapshot()).devices[make_devices(1)[0].uuid]
    assert status.claim.user == "bob@example.com"

    assert await broker.release([0], "bob@example.com") == [0]
    granted = await asyncio.wait_for(waiter, 1.0)
    assert [device.number for device in granted] == [0]
    assert broker.pending_waiters == 0


@pytest.mark.asyncio
async def test_claimant_exit_reported_by_telemetry_frees_device(
    identifier: FakeIdentifier, runtime_state: RuntimeState
) -> None:
    store, bus, broker = build_broker(identifier, runtime_state, poll_interval=10.0)
    await seed(store, make_devices(1))
    await broker.reserve(1, "bob@example.com", 0)
    identifier.add(55, "bob@example.com")
    await bus.publish(Topic.CLAIM_OBSERVED, Claim(device_number=0, pid=55))

    waiter = asyncio.create_task(broker.reserve(1, "alice@example.com", 5))
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await bus.publish(Topic.CLAIM_OBSERVED, Claim(device_number=0, pid=0))
    granted = await asyncio.wait_for(waiter, 1.0)

    assert [device.number for device in granted] == [0]
    status = (await store.snapshot()).devices[make_devices(1)[0].uuid]
    assert status.claim.user == "alice@example.com"
    assert status.processes == []
    assert runtime_state.counters.releases == 1


@pytest.mark.asyncio
async def test_idle_report_before_claimant_starts_keeps_the_grant(identifier: FakeIdentifier) -> None:
    store, bus, broker = build_broker(identifier)
    await seed(store, make_devices(1))
    await broker.reserve(1, "bob@example.com", 0)

    await bus.publish(Topic.CLAIM_OBSERVED, Claim(device_number=0, pid=0))

    assert await store.free_numbers() == []


@pytest.mark.asyncio
async def test_unused_grant_expires(identifier: FakeIdentifier, runtime_state: RuntimeState, clock: Clock) -> None:
    store, _, broker = build_broker(identifier, runtime_state, clock=clock, lease=30.0)
    await seed(store, make_devices(1))
    await broker.reserve(1, "bob@example.com", 0)

    clock.advance(29)
    assert await broker.expire_leases() == []
    clock.advance(1)
    assert await broker.expire_leases() == [0]
    assert runtime_state.counters.lease_expirations == 1
    assert await store.free_numbers() == [0]


@pytest.mark.asyncio
async def test_release_by_other_user_is_denied(identifier: FakeIdentifier) -> None:
    store, _, broker = build_broker(identifier)
    await seed(store, make_devices(1))
    await broker.reserve(1, "bob@example.com", 0)

    with pytest.raises(PermissionDenied):
        await broker.release([0], "mallory@example.com")
    assert await store.free_numbers() == []


@pytest.mark.asyncio
async def test_cancelled_wait_deregisters(identifier: FakeIdentifier) -> None:
    store, _, broker = build_broker(identifier, poll_interval=10.0)
    await seed(store, make_devices(1))
    await store.set_claim(0, "bob@example.com")

    waiter = asyncio.create_task(broker.reserve(1, "alice@example.com", -1))
    await asyncio.sleep(0.01)
    assert broker.pending_waiters == 1

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert broker.pending_waiters == 0
    assert (await store.snapshot()).devices[make_devices(1)[0].uuid].claim.user == "bob@example.com"


@pytest.mark.asyncio
async def test_timed_out_wait_deregisters(identifier: FakeIdentifier) -> None:
    store, _, broker = build_broker(identifier, poll_interval=0.01)
    await seed(store, make_devices(1))
    await store.set_claim(0, "bob@example.com")

    with pytest.raises(ClaimTimeout):
        await broker.reserve(1, "alice@example.com", 0.05)
    assert broker.pending_waiters == 0


@pytest.mark.asyncio
async def test_reaper_loop_expires_leases(identifier: FakeIdentifier, clock: Clock) -> None:
    store, _, broker = build_broker(identifier, clock=clock, poll_interval=0.01, lease=5.0)
    await seed(store, make_devices(1))
    await broker.reserve(1, "bob@example.com", 0)
    clock.advance(6)

    reaper = asyncio.create_task(broker.run())
    try:
        for _ in range(100):
            if await store.free_numbers() == [0]:
                break
            await asyncio.sleep(0.01)
    finally:
        reaper.cancel()
        with pytest.raises(asyncio.CancelledError):
            await reaper
    assert await store.free_numbers() == [0]


@pytest.mark.asyncio
async def test_other_users_process_exit_keeps_the_grant(identifier: FakeIdentifier, runtime_state: RuntimeState) -> None:
    store, bus, broker = build_broker(identifier, runtime_state)
    await seed(store, make_devices(1))
    await broker.reserve(1, "bob@example.com", 0)
    identifier.add(77, "root")

    await bus.publish(Topic.CLAIM_OBSERVED, Claim(device_number=0, pid=77))
    await bus.publish(Topic.CLAIM_OBSERVED, Claim(device_number=0, pid=0))

    assert await store.free_numbers() == []
    assert (await store.snapshot()).devices[make_devices(1)[0].uuid].claim.user == "bob@example.com"
    assert runtime_state.counters.releases == 0


@pytest.mark.asyncio
async def test_grant_and_release_logs_carry_context(
    identifier: FakeIdentifier, caplog: pytest.LogCaptureFixture
) -> None:
    store, _, broker = build_broker(identifier)
    await seed(store, make_devices(2))

    with caplog.at_level("INFO", logger="cogs.broker"):
        await broker.reserve(2, "alice@example.com", 0)
        await broker.release([1], "alice@example.com")

    granted, released = [record for record in caplog.records if record.name == "cogs.broker"]
    assert (granted.devices, granted.identity) == ([0, 1], "alice@example.com")
    assert (released.devices, released.identity) == ([1], "alice@example.com")
