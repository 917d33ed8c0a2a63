import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as SchemaError

from autofix.errors import MalformedEventError, RemoteRequestError
from autofix.models import ChangeEvent, Customer, Mechanic, Message, NotificationRecord, PublicProfile, ServiceRequest
from autofix.services.change_hub import Subscription
from autofix.services.collection_store import LocalCollectionStore
from autofix.services.notification_store import NotificationStore
from autofix.services.remote import RemoteDataService

logger = logging.getLogger(__name__)

# (field, old value, new value, notification type); evaluated in order, first match wins.
TRANSITION_RULES: Tuple[Tuple[str, Any, Any, str], ...] = (
    ("status", "pending", "accepted", "acceptance"),
    ("status", "pending", "rejected", "rejection"),
    ("mechanic_arrived", False, True, "arrival"),
    ("service_completed", False, True, "completion"),
)

NOTIFICATION_COPY = {
    "acceptance": (
        "Request Accepted!",
        "{mechanic} has accepted your service request and is on the way to your location!",
    ),
    "rejection": (
        "Request Declined",
        "{mechanic} is unable to accept your service request at this time.",
    ),
    "arrival": (
        "Mechanic Arrived!",
        "{mechanic} has arrived at your location and is ready to assist you.",
    ),
    "completion": (
        "Service Completed!",
        "Service has been completed by {mechanic}. Thank you for using our service!",
    ),
}

SessionUser = Optional[Union[Customer, Mechanic]]


class RealtimeReconciler:
    """Applies the remote change feed for the signed-in user's requests to the local store.

    Subscription callbacks only enqueue events; a single loop task applies
    them in delivery order. Each call to `follow` starts a new generation,
    and events queued by an older generation's subscription are dropped.
    Local mutations are never sent over this channel.

    Open conversations get their own `messages` INSERT subscription, torn
    down with the rest on the next `follow`.
    """

    def __init__(
        self,
        store: LocalCollectionStore,
        remote: RemoteDataService,
        notifications: NotificationStore,
    ) -> None:
        self._store = store
        self._remote = remote
        self._notifications = notifications
        self._queue: asyncio.Queue = asyncio.Queue()
        self._generation = 0
        self._user: SessionUser = None
        self._subscriptions: List[Subscription] = []
        self._conversations: Dict[str, Subscription] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def user(self) -> SessionUser:
        return self._user

    @property
    def subscriptions(self) -> Tuple[Subscription, ...]:
        return tuple(self._subscriptions)

    @property
    def conversations(self) -> Tuple[str, ...]:
        return tuple(self._conversations)

    async def follow(self, user: SessionUser) -> None:
        await self._close_subscriptions()
        self._generation += 1
        self._user = user
        if user is None:
            return
        self._ensure_loop()
        generation = self._generation
        if user.user_type == "mechanic":
            column, event_types = "mechanic_id", ["INSERT", "UPDATE"]
        else:
            column, event_types = "customer_id", ["UPDATE"]
        subscription = await self._remote.subscribe(
            "requests",
            event_types,
            {column: user.id},
            self._enqueue_for(generation),
        )
        self._subscriptions.append(subscription)
        logger.info("Following request changes for %s %s", user.user_type, user.id)

    async def load_requests(self) -> List[ServiceRequest]:
        """Fetch the signed-in user's requests and merge them into the local store.

        Call after `follow` so rows committed while the fetch is in flight
        still arrive as change events.
        """
        user = self._user
        if user is None:
            return []
        column = "mechanic_id" if user.user_type == "mechanic" else "customer_id"
        rows = await self._remote.select("requests", {column: user.id}, order_by="created_at", descending=True)
        loaded: List[ServiceRequest] = []
        # Oldest first, so prepending leaves the newest request at the front.
        for row in reversed(rows):
            try:
                request = ServiceRequest.model_validate(row)
            except SchemaError:
                logger.warning("Skipping unreadable request row %s", row.get("id"))
                continue
            request = await self._with_counterpart(user, request)
            loaded.append(await self._store.apply_remote_insert("requests", request))
        logger.info("Loaded %d request(s) for %s %s", len(loaded), user.user_type, user.id)
        return loaded

    async def watch_conversation(self, request_id: str) -> List[Message]:
        """Subscribe to new messages on a request and merge its existing ones."""
        if self._user is None:
            return []
        if request_id not in self._conversations:
            self._ensure_loop()
            self._conversations[request_id] = await self._remote.subscribe(
                "messages",
                ["INSERT"],
                {"request_id": request_id},
                self._enqueue_for(self._generation),
            )
        rows = await self._remote.select("messages", {"request_id": request_id}, order_by="timestamp")
        merged: List[Message] = []
        for row in rows:
            try:
                message = Message.model_validate(row)
            except SchemaError:
                logger.warning("Skipping unreadable message row %s", row.get("id"))
                continue
            merged.append(await self._store.apply_remote_insert("messages", message))
        return merged

    async def unwatch_conversation(self, request_id: str) -> None:
        subscription = self._conversations.pop(request_id, None)
        if subscription is not None:
            await self._unsubscribe(subscription)

    async def drain(self) -> None:
        """Wait until every queued event has been applied."""
        await self._queue.join()

    async def stop(self) -> None:
        await self._close_subscriptions()
        self._generation += 1
        self._user = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def handle_event(self, event: ChangeEvent) -> Optional[NotificationRecord]:
        user = self._user
        if user is None:
            return None
        if event.collection == "messages":
            if event.event_type == "INSERT":
                await self._apply_message(event)
            return None
        if event.collection != "requests":
            return None
        if event.event_type == "INSERT":
            return await self._apply_insert(user, event)
        return await self._apply_update(user, event)

    def _enqueue_for(self, generation: int):
        return lambda event: self._queue.put_nowait((generation, event))

    def _ensure_loop(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _close_subscriptions(self) -> None:
        subscriptions = [*self._subscriptions, *self._conversations.values()]
        self._subscriptions = []
        self._conversations = {}
        for subscription in subscriptions:
            await self._unsubscribe(subscription)
        if subscriptions:
            logger.info("Closed %d realtime subscription(s)", len(subscriptions))

    async def _unsubscribe(self, subscription: Subscription) -> None:
        try:
            await self._remote.unsubscribe(subscription)
        except RemoteRequestError as exc:
            logger.warning("Unsubscribe of %s failed: %s", subscription.id, exc)

    async def _run(self) -> None:
        while True:
            generation, event = await self._queue.get()
            try:
                if generation != self._generation:
                    logger.debug("Ignoring %s event from a previous session", event.event_type)
                    continue
                await self.handle_event(event)
            except MalformedEventError as exc:
                logger.warning("Dropped malformed %s event on %s: %s", event.event_type, event.collection, exc)
            except Exception:
                logger.exception("Failed to apply %s event on %s", event.event_type, event.collection)
            finally:
                self._queue.task_done()

    async def _apply_insert(self, user: Union[Customer, Mechanic], event: ChangeEvent) -> Optional[NotificationRecord]:
        try:
            request = ServiceRequest.model_validate(event.new)
        except SchemaError as exc:
            raise MalformedEventError(f"insert payload rejected ({exc.error_count()} field errors)") from exc
        if not request.id:
            raise MalformedEventError("insert payload has no id")
        if user.id not in (request.customer_id, request.mechanic_id):
            logger.debug("Insert for request %s is not addressed to %s", request.id, user.id)
            return None

        is_mechanic_side = user.id == request.mechanic_id
        already_known = self._store.get("requests", request.id) is not None
        request = await self._store.apply_remote_insert("requests", await self._with_counterpart(user, request))

        if not is_mechanic_side or already_known:
            return None
        profile = request.customer
        name = profile.full_name if profile is not None and profile.full_name else "a customer"
        return await self._notifications.publish(
            user_id=user.id,
            title="New Service Request!",
            body=f"You have a new request from {name}",
            type="request-received",
            request_id=request.id,
            deep_link=f"request:{request.id}",
        )

    async def _apply_message(self, event: ChangeEvent) -> None:
        try:
            message = Message.model_validate(event.new)
        except SchemaError as exc:
            raise MalformedEventError(f"message payload rejected ({exc.error_count()} field errors)") from exc
        if not message.id:
            raise MalformedEventError("message payload has no id")
        await self._store.apply_remote_insert("messages", message)

    async def _with_counterpart(self, user: Union[Customer, Mechanic], request: ServiceRequest) -> ServiceRequest:
        is_mechanic_side = user.id == request.mechanic_id
        profile = await self._fetch_profile(request.customer_id if is_mechanic_side else request.mechanic_id)
        if profile is None:
            return request
        return request.model_copy(update={"customer" if is_mechanic_side else "mechanic": profile})

    async def _apply_update(self, user: Union[Customer, Mechanic], event: ChangeEvent) -> Optional[NotificationRecord]:
        record_id = event.new.get("id")
        if not record_id:
            raise MalformedEventError("update payload has no id")
        record_id = str(record_id)
        if self._store.get("requests", record_id) is None:
            logger.debug("Update for unknown request %s ignored", record_id)
            return None
        try:
            merged = await self._store.apply_remote_update("requests", record_id, event.new)
        except SchemaError as exc:
            raise MalformedEventError(f"update payload rejected ({exc.error_count()} field errors)") from exc
        if merged is None:
            return None
        before, after = merged
        if user.id != after.customer_id:
            return None

        for field, old_value, new_value, kind in TRANSITION_RULES:
            reported_old = event.old.get(field, getattr(before, field))
            if reported_old != old_value or getattr(after, field) != new_value:
                continue
            if getattr(before, field) == new_value:
                # Already applied locally; a redelivered event must not notify twice.
                return None
            return await self._notify_customer(after, kind)
        return None

    async def _notify_customer(self, request: ServiceRequest, kind: str) -> NotificationRecord:
        title, template = NOTIFICATION_COPY[kind]
        return await self._notifications.publish(
            user_id=request.customer_id,
            title=title,
            body=template.format(mechanic=self._mechanic_name(request)),
            type=kind,  # type: ignore[arg-type]
            request_id=request.id,
            deep_link=f"request:{request.id}",
        )

    def _mechanic_name(self, request: ServiceRequest) -> str:
        if request.mechanic is not None and request.mechanic.full_name:
            return request.mechanic.full_name
        mechanic = self._store.get("mechanics", request.mechanic_id)
        if mechanic is not None:
            return mechanic.full_name
        return "Your mechanic"

    async def _fetch_profile(self, user_id: str) -> Optional[PublicProfile]:
        try:
            rows = await self._remote.select("profiles", {"id": user_id}, limit=1)
        except RemoteRequestError as exc:
            logger.warning("Profile lookup for %s failed: %s", user_id, exc)
            rows = []
        for row in rows:
            try:
                return PublicProfile.model_validate(row)
            except SchemaError:
                logger.warning("Profile row for %s is unreadable", user_id)
        for collection in ("customers", "mechanics"):
            local = self._store.get(collection, user_id)
            if local is not None:
                return PublicProfile.model_validate(local.model_dump())
        return None
