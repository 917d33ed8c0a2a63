import asyncio
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from autofix.client import AutoFixClient, request_status_label
from autofix.errors import ValidationError
from autofix.models import Location, ServiceRequest
from autofix.services.collection_store import LocalCollectionStore
from autofix.services.kv_store import CURRENT_USER_KEY, MemoryKeyValueStore
from autofix.services.notification_store import NotificationStore
from autofix.services.object_store import ObjectStore
from autofix.services.remote import LocalRemote, NullRemote
from autofix.services.table_store import TableStore

HOME = Location(latitude=37.7749, longitude=-122.4194, address="Market St, San Francisco")
GARAGE = Location(latitude=37.7793, longitude=-122.4192, address="Civic Center, San Francisco")


def _client(remote):
    store = LocalCollectionStore(MemoryKeyValueStore())
    return AutoFixClient(store, remote, NotificationStore(remote))


def test_customer_and_mechanic_full_service_flow(tmp_path):
    async def scenario():
        remote = LocalRemote(
            TableStore(db_path=str(tmp_path / "remote.sqlite3")),
            objects=ObjectStore(base_dir=str(tmp_path / "objects"), public_base_url="http://testserver"),
        )
        customer = _client(remote)
        mechanic = _client(remote)
        await customer.start()
        await mechanic.start()

        mike = await mechanic.sign_up_mechanic("Mike Torres", "+1 415 555 0101", ["Battery", "Tire Change"], GARAGE)
        alex = await customer.sign_up_customer("Alex Rivera", "+1 415 555 0199", "2016 Honda Civic", location=HOME)

        request = await customer.create_request(mike.id, "Car will not start", service_type="Battery")
        await mechanic.reconciler.drain()
        incoming = mechanic.store.get("requests", request.id)
        assert incoming is not None
        assert incoming.customer.full_name == "Alex Rivera"
        assert [n.type for n in mechanic.notifications.list_for_user(mike.id)] == ["request-received"]

        await mechanic.accept_request(request.id)
        await customer.reconciler.drain()
        assert customer.store.get("requests", request.id).status == "accepted"
        assert request_status_label(customer.active_request()) == "Accepted - On the way"

        with pytest.raises(ValidationError, match="meters away"):
            await mechanic.confirm_arrival(request.id, (37.8024, -122.4058))
        await mechanic.confirm_arrival(request.id, (HOME.latitude, HOME.longitude))
        await customer.reconciler.drain()
        assert customer.store.get("requests", request.id).mechanic_arrived is True

        assert await customer.open_conversation(request.id) == []
        await mechanic.open_conversation(request.id)
        await customer.send_message(request.id, "I'm by the blue door")
        await mechanic.reconciler.drain()
        assert [m.text for m in mechanic.conversation(request.id)] == ["I'm by the blue door"]
        notice = await mechanic.send_system_message(request.id, "Mechanic has arrived")
        await customer.reconciler.drain()
        assert notice.is_system
        assert notice.type == "system"
        assert [m.text for m in customer.conversation(request.id)] == ["I'm by the blue door", "Mechanic has arrived"]
        assert [m.text for m in mechanic.conversation(request.id)] == ["I'm by the blue door", "Mechanic has arrived"]
        assert len(customer.store.messages) == 2
        assert await mechanic.mark_messages_read(request.id) == 2
        assert all(m.read for m in mechanic.conversation(request.id))
        await mechanic.close_conversation(request.id)
        assert mechanic.reconciler.conversations == ()
        await mechanic.complete_service(request.id)
        await customer.reconciler.drain()
        done = customer.store.get("requests", request.id)
        assert done.status == "completed"
        assert done.service_completed is True
        assert done.completed_at

        review = await customer.add_review(request.id, 5, "Quick and friendly")
        with pytest.raises(ValidationError):
            await customer.add_review(request.id, 4)

        feed = customer.notifications.list_for_user(alex.id)
        stored = await remote.select("notifications", {"user_id": alex.id})
        url = await customer.upload_avatar(b"\x89PNG", "image/png")

        await customer.close()
        await mechanic.close()
        return feed, stored, review, customer, url

    feed, stored, review, customer, url = asyncio.run(scenario())
    assert [n.type for n in feed] == ["completion", "arrival", "acceptance"]
    assert len(stored) == 3
    assert review.rating == 5
    assert url.startswith("http://testserver/storage/avatars/")
    assert customer.current_user.profile_picture == url


def test_log_out_and_back_in_restores_session(tmp_path):
    async def scenario():
        remote = LocalRemote(TableStore(db_path=str(tmp_path / "remote.sqlite3")))
        client = _client(remote)
        await client.start()
        alex = await client.sign_up_customer("Alex Rivera", "+1 415 555 0199", "Civic", location=HOME)
        await client.log_out()
        logged_out = client.current_user
        subscriptions = client.reconciler.subscriptions

        other = _client(remote)
        await other.start()
        restored = await other.log_in(alex.id)
        with pytest.raises(ValidationError):
            await other.log_in("usr_missing")
        await client.close()
        await other.close()
        return logged_out, subscriptions, restored, other

    logged_out, subscriptions, restored, other = asyncio.run(scenario())
    assert logged_out is None
    assert subscriptions == ()
    assert restored.full_name == "Alex Rivera"
    assert other.store.get("customers", restored.id) is not None


def test_demo_mode_works_without_a_remote():
    async def scenario():
        client = AutoFixClient.from_env(kv=MemoryKeyValueStore())
        assert isinstance(client.remote, NullRemote)
        await client.start()
        with pytest.raises(ValidationError):
            await client.sign_up_mechanic("Mike Torres", "+1 415 555 0101", [" "], GARAGE)
        with pytest.raises(ValidationError):
            await client.sign_up_customer("", "+1 415 555 0199", "Civic")
        alex = await client.sign_up_customer("Alex Rivera", "+1 415 555 0199", "Civic", location=HOME)
        await client.store.add("mechanics", {"id": "m1", "full_name": "Mike Torres", "services": ["Battery"]})
        request = await client.create_request("m1", "Dead battery")
        await client.close()
        return alex, request, client

    alex, request, client = asyncio.run(scenario())
    assert alex.id
    assert request.id
    assert request.customer_id == alex.id
    assert request.mechanic.full_name == "Mike Torres"
    assert client.store.state == "closed"


def test_find_mechanics_sorts_by_distance_and_filters(tmp_path):
    async def scenario():
        client = _client(NullRemote())
        await client.start()
        for row in (
            {"id": "far", "full_name": "Dan", "services": ["Battery"], "rating": 5.0,
             "location": {"latitude": 37.8024, "longitude": -122.4058}},
            {"id": "near", "full_name": "Mike", "services": ["battery"], "rating": 4.0,
             "location": GARAGE.model_dump()},
            {"id": "busy", "full_name": "Sara", "services": ["Battery"], "is_available": False,
             "location": GARAGE.model_dump()},
            {"id": "towing", "full_name": "Lee", "services": ["Towing"], "location": GARAGE.model_dump()},
        ):
            await client.store.add("mechanics", row)
        found = client.find_mechanics("Battery", near=HOME)
        close_only = client.find_mechanics("Battery", near=HOME, max_distance_km=1.0)
        await client.close()
        return found, close_only

    found, close_only = asyncio.run(scenario())
    assert [m.id for m, _ in found] == ["near", "far"]
    assert found[0][1] < found[1][1]
    assert [m.id for m, _ in close_only] == ["near"]


async def _seed_remote(remote):
    await remote.insert("profiles", {"id": "c1", "user_type": "customer", "full_name": "Alex Rivera", "car_type": "Civic"})
    await remote.insert("profiles", {"id": "m1", "user_type": "mechanic", "full_name": "Mike Torres", "services": ["Battery"]})
    await remote.insert(
        "requests",
        ServiceRequest(id="req_1", customer_id="c1", mechanic_id="m1", description="Dead battery").to_remote_row(),
    )


def test_log_in_on_fresh_device_loads_existing_requests(tmp_path):
    async def scenario():
        remote = LocalRemote(TableStore(db_path=str(tmp_path / "remote.sqlite3")))
        await _seed_remote(remote)
        mechanic = _client(remote)
        customer = _client(remote)
        await mechanic.start()
        await customer.start()
        await mechanic.log_in("m1")
        await customer.log_in("c1")
        mechanic_requests = mechanic.store.requests
        customer_requests = customer.store.requests

        await mechanic.accept_request("req_1")
        await customer.reconciler.drain()
        feed = customer.notifications.list_for_user("c1")
        accepted = customer.store.get("requests", "req_1")
        await mechanic.close()
        await customer.close()
        return mechanic_requests, customer_requests, accepted, feed

    mechanic_requests, customer_requests, accepted, feed = asyncio.run(scenario())
    assert [r.id for r in mechanic_requests] == ["req_1"]
    assert mechanic_requests[0].customer.full_name == "Alex Rivera"
    assert [r.id for r in customer_requests] == ["req_1"]
    assert customer_requests[0].mechanic.full_name == "Mike Torres"
    assert accepted.status == "accepted"
    assert [n.type for n in feed] == ["acceptance"]
    assert "Mike Torres" in feed[0].body


def test_restored_session_fetches_requests_on_start(tmp_path):
    session = json.dumps({"id": "c1", "user_type": "customer", "full_name": "Alex Rivera"})

    async def scenario():
        remote = LocalRemote(TableStore(db_path=str(tmp_path / "remote.sqlite3")))
        await _seed_remote(remote)
        await remote.insert(
            "requests",
            ServiceRequest(id="req_2", customer_id="c1", mechanic_id="m1", description="Flat tire").to_remote_row(),
        )
        await remote.insert(
            "requests",
            ServiceRequest(id="req_3", customer_id="c9", mechanic_id="m1", description="Someone else").to_remote_row(),
        )
        client = AutoFixClient(
            LocalCollectionStore(MemoryKeyValueStore({CURRENT_USER_KEY: session})),
            remote,
            NotificationStore(remote),
        )
        await client.start()
        requests = client.store.requests
        await client.close()
        return requests

    requests = asyncio.run(scenario())
    assert sorted(r.id for r in requests) == ["req_1", "req_2"]


def test_review_updates_rating_but_not_job_count():
    async def scenario():
        client = _client(NullRemote())
        await client.start()
        alex = await client.sign_up_customer("Alex Rivera", "+1 415 555 0199", "Civic", location=HOME)
        await client.store.add(
            "mechanics",
            {"id": "m1", "full_name": "Mike Torres", "services": ["Battery"], "rating": 4.8, "total_jobs": 12},
        )
        await client.store.add(
            "requests",
            ServiceRequest(id="r1", customer_id=alex.id, mechanic_id="m1", status="completed", service_completed=True),
        )
        await client.add_review("r1", 4, "Fine")
        mechanic = client.store.get("mechanics", "m1")
        await client.close()
        return mechanic

    mechanic = asyncio.run(scenario())
    assert mechanic.rating == 4.0
    assert mechanic.total_jobs == 12
