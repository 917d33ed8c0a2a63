import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from autofix.errors import MalformedEventError
from autofix.models import ChangeEvent, Customer, Mechanic, Message, ServiceRequest
from autofix.services.collection_store import LocalCollectionStore
from autofix.services.kv_store import MemoryKeyValueStore
from autofix.services.notification_store import NotificationStore
from autofix.services.reconciler import RealtimeReconciler
from autofix.services.remote import LocalRemote
from autofix.services.table_store import TableStore

CUSTOMER = Customer(id="c1", full_name="Alex Rivera", car_type="Civic")
MECHANIC = Mechanic(id="m1", full_name="Mike Torres", services=["Battery"])


async def _setup(tmp_path, with_request=True):
    remote = LocalRemote(TableStore(db_path=str(tmp_path / "remote.sqlite3")))
    store = LocalCollectionStore(MemoryKeyValueStore())
    await store.load_all()
    await store.add("mechanics", MECHANIC)
    if with_request:
        request = ServiceRequest(id="req_1", customer_id="c1", mechanic_id="m1", description="Dead battery")
        await remote.insert("requests", request.to_remote_row())
        await store.add("requests", request)
    notifications = NotificationStore()
    reconciler = RealtimeReconciler(store, remote, notifications)
    return remote, store, notifications, reconciler


def test_acceptance_notifies_customer_once(tmp_path):
    async def scenario():
        remote, store, notifications, reconciler = await _setup(tmp_path)
        await reconciler.follow(CUSTOMER)
        await remote.update("requests", {"id": "req_1"}, {"status": "accepted"})
        await reconciler.drain()
        await reconciler.stop()
        return store, notifications

    store, notifications = asyncio.run(scenario())
    assert store.get("requests", "req_1").status == "accepted"
    feed = notifications.list_for_user("c1")
    assert [n.type for n in feed] == ["acceptance"]
    assert feed[0].title == "Request Accepted!"
    assert "Mike Torres" in feed[0].body
    assert feed[0].deep_link == "request:req_1"


def test_duplicate_delivery_is_idempotent(tmp_path):
    async def scenario():
        _, store, notifications, reconciler = await _setup(tmp_path)
        await reconciler.follow(CUSTOMER)
        event = ChangeEvent(
            collection="requests",
            event_type="UPDATE",
            new={"id": "req_1", "customer_id": "c1", "mechanic_id": "m1", "mechanic_arrived": True},
            old={"id": "req_1", "mechanic_arrived": False},
        )
        first = await reconciler.handle_event(event)
        second = await reconciler.handle_event(event)
        await reconciler.stop()
        return store, notifications, first, second

    store, notifications, first, second = asyncio.run(scenario())
    assert first is not None and first.type == "arrival"
    assert second is None
    assert len(notifications.list_for_user("c1")) == 1
    assert store.get("requests", "req_1").mechanic_arrived is True


def test_rules_fall_back_to_local_old_value(tmp_path):
    async def scenario():
        _, _, notifications, reconciler = await _setup(tmp_path)
        await reconciler.follow(CUSTOMER)
        event = ChangeEvent(
            collection="requests",
            event_type="UPDATE",
            new={"id": "req_1", "customer_id": "c1", "mechanic_id": "m1", "status": "rejected"},
        )
        record = await reconciler.handle_event(event)
        await reconciler.stop()
        return record

    record = asyncio.run(scenario())
    assert record.type == "rejection"
    assert record.title == "Request Declined"


def test_update_for_unknown_request_is_ignored(tmp_path):
    async def scenario():
        _, store, notifications, reconciler = await _setup(tmp_path, with_request=False)
        await reconciler.follow(CUSTOMER)
        event = ChangeEvent(
            collection="requests",
            event_type="UPDATE",
            new={"id": "req_9", "customer_id": "c1", "mechanic_id": "m1", "status": "accepted"},
            old={"status": "pending"},
        )
        record = await reconciler.handle_event(event)
        await reconciler.stop()
        return store, notifications, record

    store, notifications, record = asyncio.run(scenario())
    assert record is None
    assert store.requests == ()
    assert notifications.list_for_user("c1") == []


def test_malformed_payload_is_dropped_and_loop_continues(tmp_path):
    async def scenario():
        remote, store, notifications, reconciler = await _setup(tmp_path)
        await reconciler.follow(CUSTOMER)
        with pytest.raises(MalformedEventError):
            await reconciler.handle_event(
                ChangeEvent(collection="requests", event_type="UPDATE", new={"customer_id": "c1"})
            )
        remote.hub.publish(ChangeEvent(collection="requests", event_type="UPDATE", new={"customer_id": "c1"}))
        remote.hub.publish(
            ChangeEvent(
                collection="requests",
                event_type="UPDATE",
                new={"id": "req_1", "customer_id": "c1", "status": "not-a-status"},
            )
        )
        await remote.update("requests", {"id": "req_1"}, {"status": "accepted"})
        await reconciler.drain()
        await reconciler.stop()
        return store, notifications

    store, notifications = asyncio.run(scenario())
    assert store.get("requests", "req_1").status == "accepted"
    assert [n.type for n in notifications.list_for_user("c1")] == ["acceptance"]


def test_follow_replaces_subscription_and_drops_stale_events(tmp_path):
    async def scenario():
        remote, store, notifications, reconciler = await _setup(tmp_path)
        await reconciler.follow(CUSTOMER)
        stale = reconciler.subscriptions[0]
        await reconciler.follow(MECHANIC)
        current = reconciler.subscriptions
        stale.callback(
            ChangeEvent(
                collection="requests",
                event_type="UPDATE",
                new={"id": "req_1", "customer_id": "c1", "mechanic_id": "m1", "status": "accepted"},
                old={"status": "pending"},
            )
        )
        await reconciler.drain()
        subscribers = remote.hub.subscriber_count()
        await reconciler.follow(None)
        after_logout = remote.hub.subscriber_count()
        await reconciler.stop()
        return store, notifications, stale, current, subscribers, after_logout

    store, notifications, stale, current, subscribers, after_logout = asyncio.run(scenario())
    assert stale.active is False
    assert len(current) == 1
    assert current[0].filters == {"mechanic_id": "m1"}
    assert current[0].event_types == frozenset({"INSERT", "UPDATE"})
    assert subscribers == 1
    assert after_logout == 0
    assert store.get("requests", "req_1").status == "pending"
    assert notifications.list_for_user("c1") == []


def test_customer_subscribes_to_updates_only(tmp_path):
    async def scenario():
        _, _, _, reconciler = await _setup(tmp_path)
        await reconciler.follow(CUSTOMER)
        subscription = reconciler.subscriptions[0]
        await reconciler.stop()
        return subscription

    subscription = asyncio.run(scenario())
    assert subscription.filters == {"customer_id": "c1"}
    assert subscription.event_types == frozenset({"UPDATE"})


def test_insert_for_mechanic_adds_request_with_customer_view(tmp_path):
    async def scenario():
        remote, store, notifications, reconciler = await _setup(tmp_path, with_request=False)
        await remote.insert("profiles", CUSTOMER.model_dump(mode="json"))
        await reconciler.follow(MECHANIC)
        row = await remote.insert(
            "requests",
            ServiceRequest(customer_id="c1", mechanic_id="m1", description="Flat tire").to_remote_row(),
        )
        await reconciler.drain()
        await reconciler.stop()
        return row, store, notifications

    row, store, notifications = asyncio.run(scenario())
    request = store.get("requests", row["id"])
    assert request is not None
    assert request.customer.full_name == "Alex Rivera"
    feed = notifications.list_for_user("m1")
    assert [n.type for n in feed] == ["request-received"]
    assert feed[0].body == "You have a new request from Alex Rivera"


def test_insert_for_known_request_does_not_notify_again(tmp_path):
    async def scenario():
        _, store, notifications, reconciler = await _setup(tmp_path)
        await reconciler.follow(MECHANIC)
        event = ChangeEvent(
            collection="requests",
            event_type="INSERT",
            new={"id": "req_1", "customer_id": "c1", "mechanic_id": "m1", "description": "Dead battery"},
        )
        record = await reconciler.handle_event(event)
        await reconciler.stop()
        return store, notifications, record

    store, notifications, record = asyncio.run(scenario())
    assert record is None
    assert len(store.requests) == 1
    assert notifications.list_for_user("m1") == []


def test_watched_conversation_merges_existing_and_new_messages(tmp_path):
    async def scenario():
        remote, store, _, reconciler = await _setup(tmp_path)
        await remote.insert("messages", Message(request_id="req_1", sender_id="c1", text="Where are you?").model_dump())
        await remote.insert("messages", Message(request_id="req_9", sender_id="c9", text="Not for us").model_dump())
        await reconciler.follow(MECHANIC)
        existing = await reconciler.watch_conversation("req_1")
        await remote.insert("messages", Message(request_id="req_1", sender_id="c1", text="Blue door").model_dump())
        await remote.insert("messages", Message(request_id="req_9", sender_id="c9", text="Still not").model_dump())
        await reconciler.drain()
        texts = sorted(m.text for m in store.messages)
        watched = reconciler.conversations
        await reconciler.follow(None)
        remaining = remote.hub.subscriber_count()
        await reconciler.stop()
        return existing, texts, watched, reconciler.conversations, remaining

    existing, texts, watched, after_logout, remaining = asyncio.run(scenario())
    assert [m.text for m in existing] == ["Where are you?"]
    assert texts == ["Blue door", "Where are you?"]
    assert watched == ("req_1",)
    assert after_logout == ()
    assert remaining == 0


def test_load_requests_attaches_counterpart_and_skips_bad_rows(tmp_path):
    async def scenario():
        remote, store, _, reconciler = await _setup(tmp_path, with_request=False)
        await remote.insert("profiles", CUSTOMER.model_dump(mode="json"))
        await remote.insert(
            "requests",
            ServiceRequest(id="req_old", customer_id="c1", mechanic_id="m1", created_at="2026-01-01T00:00:00+00:00").to_remote_row(),
        )
        await remote.insert(
            "requests",
            ServiceRequest(id="req_new", customer_id="c1", mechanic_id="m1", created_at="2026-02-01T00:00:00+00:00").to_remote_row(),
        )
        await remote.insert("requests", {"id": "req_bad", "mechanic_id": "m1", "status": "unknown"})
        await reconciler.follow(MECHANIC)
        loaded = await reconciler.load_requests()
        await reconciler.stop()
        return store, loaded

    store, loaded = asyncio.run(scenario())
    assert [r.id for r in loaded] == ["req_old", "req_new"]
    assert [r.id for r in store.requests] == ["req_new", "req_old"]
    assert all(r.customer.full_name == "Alex Rivera" for r in store.requests)
