import pytest

from marketsync.domain.notifications import NotificationSync
from marketsync.domain.sync import FeedScope, TransportError, ValidationError
from marketsync.infra.tables import TableGateway, _where_clause, memory_tables, scopes_for


class RecordingPublisher:
    def __init__(self, fail: bool = False) -> None:
        self.events = []
        self.fail = fail

    async def publish(self, scope, kind, row):
        if self.fail:
            raise TransportError("feed_publish_failed")
        self.events.append((scope.channel, kind.value, row.get("id") or row.get("user_id")))


def test_where_clause_builds_parameterised_filters():
    params = []
    clause = _where_clause({"id": ["a", "b"], "is_read": False, "category": None}, params)
    assert clause == '"id" = ANY($1) AND "is_read" = $2 AND "category" IS NULL'
    assert params == [["a", "b"], False]
    assert _where_clause({}, []) == "TRUE"


def test_where_clause_rejects_unsafe_identifiers():
    with pytest.raises(ValidationError):
        _where_clause({"id; drop table": 1}, [])


def test_scopes_for_routes_rows_to_channels():
    assert scopes_for("messages", {"booking_id": "b1"}) == [FeedScope("messages", "booking_id", "b1")]
    assert scopes_for("user_presence", {"user_id": "u1"}) == [FeedScope("user_presence")]
    assert scopes_for("notifications", {"user_id": None}) == []


@pytest.mark.asyncio
async def test_insert_fills_server_columns_and_publishes():
    publisher = RecordingPublisher()
    gateway = TableGateway(publisher=publisher)

    row = await gateway.insert(
        "messages",
        {"booking_id": "b1", "sender_id": "u1", "receiver_id": "u2", "content": "hi"},
    )

    assert row["id"]
    assert row["created_at"] is not None
    assert row["is_read"] is False
    assert publisher.events == [("messages:booking_id=b1", "insert", row["id"])]


@pytest.mark.asyncio
async def test_duplicate_insert_is_a_validation_error():
    gateway = TableGateway()
    await gateway.insert("messages", {"id": "m1", "booking_id": "b1", "content": "x"})
    with pytest.raises(ValidationError):
        await gateway.insert("messages", {"id": "m1", "booking_id": "b1", "content": "y"})


@pytest.mark.asyncio
async def test_update_returns_count_and_publishes_each_row(notification_row):
    memory_tables().seed(
        "notifications",
        [notification_row("a"), notification_row("b"), notification_row("c", user_id="u2")],
    )
    publisher = RecordingPublisher()
    gateway = TableGateway(publisher=publisher)

    count = await gateway.update("notifications", {"id": ["a", "c"]}, {"is_read": True})

    assert count == 2
    assert publisher.events == [
        ("notifications:user_id=u1", "update", "a"),
        ("notifications:user_id=u2", "update", "c"),
    ]
    assert await gateway.update("notifications", {"id": "a"}, {}) == 0


@pytest.mark.asyncio
async def test_upsert_reports_insert_then_update():
    publisher = RecordingPublisher()
    gateway = TableGateway(publisher=publisher)

    await gateway.upsert("user_presence", {"user_id": "u1", "status": "online"}, conflict="user_id")
    row = await gateway.upsert("user_presence", {"user_id": "u1", "status": "away"}, conflict="user_id")

    assert row["status"] == "away"
    assert [kind for _, kind, _ in publisher.events] == ["insert", "update"]
    rows = await gateway.fetch(FeedScope("user_presence"), order_by=None)
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_fetch_orders_limits_and_filters(notification_row):
    memory_tables().seed(
        "notifications",
        [notification_row(f"n{idx}", minutes=idx) for idx in range(5)] + [notification_row("x", user_id="u2")],
    )
    gateway = TableGateway()

    rows = await gateway.fetch(FeedScope("notifications", "user_id", "u1"), descending=True, limit=3)

    assert [row["id"] for row in rows] == ["n4", "n3", "n2"]
    filtered = await gateway.fetch(FeedScope("notifications", "user_id", "u1"), filters={"id": ["n0", "n1"]})
    assert [row["id"] for row in filtered] == ["n0", "n1"]


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_the_write():
    gateway = TableGateway(publisher=RecordingPublisher(fail=True))
    row = await gateway.insert("messages", {"booking_id": "b1", "content": "x"})
    assert row["id"]


@pytest.mark.asyncio
async def test_controller_sees_rows_written_through_gateway(transport, flush, notification_row):
    gateway = TableGateway(publisher=transport)
    sync = NotificationSync(gateway=gateway, transport=transport, user_id="u1")
    await sync.activate()

    values = notification_row("n1")
    values.pop("created_at")
    await gateway.insert("notifications", values)
    await flush()
    assert sync.unread_count == 1

    await sync.mark_all_read()
    await flush()
    assert sync.unread_count == 0
    rows = await gateway.fetch(sync.default_scope())
    assert rows[0]["is_read"] is True
