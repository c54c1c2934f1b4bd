import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from marketsync.domain.sync import (
    ChangeKind,
    ControllerState,
    ControllerStateError,
    FeedScope,
    RecordStore,
    SyncController,
    TransportError,
)

SCOPE = FeedScope("items", "owner_id", "u1")
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Item:
    id: str
    owner_id: str
    value: int
    created_at: datetime


def parse_item(row):
    return Item(id=str(row["id"]), owner_id=str(row["owner_id"]), value=int(row["value"]), created_at=row["created_at"])


def item_row(item_id, value, minutes=0, owner_id="u1"):
    return {"id": item_id, "owner_id": owner_id, "value": value, "created_at": T0 + timedelta(minutes=minutes)}


def make_controller(gateway, transport):
    return SyncController(
        query=gateway,
        transport=transport,
        store=RecordStore(lambda item: item.id),
        parser=parse_item,
        user_id="u1",
    )


def values(controller):
    return {item.id: item.value for item in controller.snapshot()}


@pytest.mark.asyncio
async def test_activate_subscribes_before_fetching(gateway, transport):
    seen = []
    original_fetch = gateway.fetch

    async def fetch(scope, **kwargs):
        seen.append(transport.subscriber_count(scope))
        return await original_fetch(scope, **kwargs)

    gateway.fetch = fetch
    gateway.seed("items", item_row("a", 1))
    controller = make_controller(gateway, transport)

    await controller.activate(SCOPE)

    assert seen == [1]
    assert controller.state is ControllerState.ACTIVE
    assert values(controller) == {"a": 1}


@pytest.mark.asyncio
async def test_push_during_fetch_is_not_lost_or_overwritten(gateway, transport, flush):
    gateway.seed("items", item_row("a", 1))
    gateway.fetch_gate = asyncio.Event()
    controller = make_controller(gateway, transport)

    task = asyncio.create_task(controller.activate(SCOPE))
    await flush()
    assert controller.is_loading

    await transport.publish(SCOPE, ChangeKind.UPDATE, item_row("a", 2))
    await transport.publish(SCOPE, ChangeKind.INSERT, item_row("b", 5, minutes=1))
    await flush()
    assert controller.snapshot() == ()

    gateway.fetch_gate.set()
    await task

    assert values(controller) == {"a": 2, "b": 5}
    assert [item.id for item in controller.snapshot()] == ["a", "b"]


@pytest.mark.asyncio
async def test_events_for_one_key_apply_in_arrival_order(gateway, transport, flush):
    controller = make_controller(gateway, transport)
    await controller.activate(SCOPE)

    await transport.publish(SCOPE, ChangeKind.INSERT, item_row("a", 1))
    await transport.publish(SCOPE, ChangeKind.UPDATE, item_row("a", 2))
    await transport.publish(SCOPE, ChangeKind.UPDATE, item_row("a", 3))
    await flush()

    assert values(controller) == {"a": 3}


@pytest.mark.asyncio
async def test_update_for_unknown_key_is_merged_as_insert(gateway, transport, flush):
    controller = make_controller(gateway, transport)
    await controller.activate(SCOPE)

    await transport.publish(SCOPE, ChangeKind.UPDATE, item_row("ghost", 7))
    await flush()

    assert values(controller) == {"ghost": 7}


@pytest.mark.asyncio
async def test_deactivate_during_fetch_discards_result(gateway, transport, flush):
    gateway.seed("items", item_row("a", 1))
    gateway.fetch_gate = asyncio.Event()
    controller = make_controller(gateway, transport)

    task = asyncio.create_task(controller.activate(SCOPE))
    await flush()
    await controller.deactivate()
    gateway.fetch_gate.set()
    await task

    assert controller.state is ControllerState.SUSPENDED
    assert controller.snapshot() == ()
    assert transport.subscriber_count(SCOPE) == 0


@pytest.mark.asyncio
async def test_failed_initial_fetch_returns_to_idle(gateway, transport, failure):
    gateway.fetch_error = failure
    controller = make_controller(gateway, transport)

    with pytest.raises(TransportError):
        await controller.activate(SCOPE)

    assert controller.state is ControllerState.IDLE
    assert transport.subscriber_count(SCOPE) == 0

    gateway.fetch_error = None
    gateway.seed("items", item_row("a", 1))
    await controller.activate(SCOPE)
    assert values(controller) == {"a": 1}


@pytest.mark.asyncio
async def test_events_after_deactivate_are_ignored(gateway, transport, flush):
    controller = make_controller(gateway, transport)
    await controller.activate(SCOPE)
    await transport.publish(SCOPE, ChangeKind.INSERT, item_row("a", 1))
    await controller.deactivate()
    await flush()
    controller._handle_event(parse_change(item_row("b", 2)))

    assert controller.snapshot() == ()
    await controller.deactivate()
    assert controller.state is ControllerState.SUSPENDED


def parse_change(row):
    from marketsync.domain.sync import ChangeEvent

    return ChangeEvent(ChangeKind.INSERT, parse_item(row))


@pytest.mark.asyncio
async def test_reconnect_triggers_single_resync(gateway, transport):
    gateway.seed("items", item_row("a", 1))
    controller = make_controller(gateway, transport)
    await controller.activate(SCOPE)

    gateway.seed("items", item_row("b", 2, minutes=1))
    transport.simulate_reconnect(SCOPE)
    transport.simulate_reconnect(SCOPE)
    await controller._scheduler.drain()

    assert len(gateway.fetch_calls) == 2
    assert values(controller) == {"a": 1, "b": 2}
    assert controller.is_active


@pytest.mark.asyncio
async def test_refetch_requires_active_controller(gateway, transport):
    controller = make_controller(gateway, transport)
    with pytest.raises(ControllerStateError):
        await controller.refetch()

    await controller.activate(SCOPE)
    gateway.seed("items", item_row("a", 4))
    await controller.refetch()
    assert values(controller) == {"a": 4}


@pytest.mark.asyncio
async def test_failed_refetch_keeps_existing_records(gateway, transport, failure):
    gateway.seed("items", item_row("a", 1))
    controller = make_controller(gateway, transport)
    await controller.activate(SCOPE)

    gateway.fetch_error = failure
    with pytest.raises(TransportError):
        await controller.refetch()

    assert controller.is_active
    assert values(controller) == {"a": 1}


@pytest.mark.asyncio
async def test_switching_scope_clears_previous_records(gateway, transport):
    gateway.seed("items", item_row("a", 1), item_row("z", 9, owner_id="u2"))
    controller = make_controller(gateway, transport)
    await controller.activate(SCOPE)
    await controller.activate(FeedScope("items", "owner_id", "u2"))

    assert values(controller) == {"z": 9}
    assert transport.subscriber_count(SCOPE) == 0


@pytest.mark.asyncio
async def test_malformed_fetched_rows_are_skipped(gateway, transport):
    gateway.seed("items", item_row("a", 1), {"id": "broken", "owner_id": "u1", "created_at": T0})
    controller = make_controller(gateway, transport)
    await controller.activate(SCOPE)
    assert values(controller) == {"a": 1}
