import logging
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from autofix import config
from autofix.errors import RemoteRequestError, ValidationError
from autofix.models import (
    Customer,
    Location,
    Mechanic,
    Message,
    PublicProfile,
    Review,
    ServiceRequest,
    parse_user,
    utc_now_iso,
)
from autofix.services.collection_store import LocalCollectionStore
from autofix.services.geo import Coordinates, distance_km, distance_meters
from autofix.services.kv_store import KeyValueStore, SqliteKeyValueStore
from autofix.services.notification_store import NotificationStore
from autofix.services.reconciler import RealtimeReconciler
from autofix.services.remote import NullRemote, RemoteDataService, build_remote

logger = logging.getLogger(__name__)

ACTIVE_REQUEST_STATUSES = ("pending", "accepted", "in_progress")


def _require(fields: Dict[str, Any]) -> None:
    missing = [name for name, value in fields.items() if value is None or (isinstance(value, str) and not value.strip())]
    if missing:
        raise ValidationError(f"Please fill in: {', '.join(missing)}")


def request_status_label(request: ServiceRequest) -> str:
    if request.service_completed:
        return "Service Completed"
    if request.mechanic_arrived:
        return "Mechanic Arrived"
    if request.status == "accepted":
        return "Accepted - On the way"
    if request.status == "rejected":
        return "Declined"
    if request.status == "cancelled":
        return "Cancelled"
    return "Waiting for mechanic"


class AutoFixClient:
    """One signed-in app session: local store, remote service, realtime feed and notifications."""

    def __init__(
        self,
        store: LocalCollectionStore,
        remote: RemoteDataService,
        notifications: Optional[NotificationStore] = None,
        reconciler: Optional[RealtimeReconciler] = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.notifications = notifications or NotificationStore()
        self.reconciler = reconciler or RealtimeReconciler(store, remote, self.notifications)

    @classmethod
    def from_env(cls, kv: Optional[KeyValueStore] = None) -> "AutoFixClient":
        store = LocalCollectionStore(kv or SqliteKeyValueStore(config.KV_DB_PATH))
        remote = build_remote()
        notifications = NotificationStore(None if isinstance(remote, NullRemote) else remote)
        return cls(store, remote, notifications)

    @property
    def current_user(self) -> Optional[Union[Customer, Mechanic]]:
        return self.store.current_user

    async def start(self) -> None:
        await self.store.load_all()
        user = self.store.current_user
        if user is not None:
            await self.reconciler.follow(user)
            await self._load_requests()
            await self._load_notifications(user.id)

    async def close(self) -> None:
        await self.reconciler.stop()
        await self.store.teardown()
        await self.remote.close()

    # Session

    async def sign_up_customer(
        self,
        full_name: str,
        phone: str,
        car_type: str,
        email: str = "",
        location: Optional[Location] = None,
        license_plate: Optional[str] = None,
    ) -> Customer:
        _require({"full name": full_name, "phone": phone, "car type": car_type})
        draft = Customer(
            full_name=full_name.strip(),
            phone=phone.strip(),
            email=email.strip(),
            car_type=car_type.strip(),
            location=location,
            license_plate=license_plate,
        )
        return await self._sign_up("customers", draft)

    async def sign_up_mechanic(
        self,
        full_name: str,
        phone: str,
        services: List[str],
        location: Optional[Location],
        email: str = "",
        hourly_rate: float = 0.0,
        experience: int = 0,
        description: Optional[str] = None,
    ) -> Mechanic:
        _require({"full name": full_name, "phone": phone, "location": location})
        if not [service for service in services if service.strip()]:
            raise ValidationError("Please select at least one service")
        draft = Mechanic(
            full_name=full_name.strip(),
            phone=phone.strip(),
            email=email.strip(),
            services=[service.strip() for service in services if service.strip()],
            hourly_rate=hourly_rate,
            experience=experience,
            location=location,
            description=description,
        )
        return await self._sign_up("mechanics", draft)

    async def _sign_up(self, collection: str, draft: Union[Customer, Mechanic]) -> Any:
        try:
            row = await self.remote.insert("profiles", draft.model_dump(mode="json", exclude={"id"}))
        except RemoteRequestError as exc:
            logger.warning("Signup for %s failed: %s", draft.full_name, exc)
            raise RemoteRequestError("signup", exc.detail) from exc
        user = await self.store.add(collection, {**draft.model_dump(), "id": row.get("id") or ""})
        await self._switch_user(user)
        logger.info("Signed up %s %s", user.user_type, user.id)
        return user

    async def log_in(self, user_id: str) -> Union[Customer, Mechanic]:
        _require({"user id": user_id})
        user = self.store.get("customers", user_id) or self.store.get("mechanics", user_id)
        if user is None:
            try:
                rows = await self.remote.select("profiles", {"id": user_id}, limit=1)
            except RemoteRequestError as exc:
                raise RemoteRequestError("login", exc.detail) from exc
            if not rows:
                raise ValidationError("No account found for that user")
            user = parse_user(rows[0])
            await self.store.add("customers" if user.user_type == "customer" else "mechanics", user)
        await self._switch_user(user)
        return user

    async def log_out(self) -> None:
        await self._switch_user(None)

    async def _switch_user(self, user: Optional[Union[Customer, Mechanic]]) -> None:
        await self.store.set_current_user(user)
        await self.reconciler.follow(user)
        if user is not None:
            await self._load_requests()
            await self._load_notifications(user.id)

    async def _load_requests(self) -> None:
        try:
            await self.reconciler.load_requests()
        except RemoteRequestError as exc:
            logger.warning("Could not load requests: %s", exc)

    async def _load_notifications(self, user_id: str) -> None:
        try:
            await self.notifications.load(user_id)
        except RemoteRequestError as exc:
            logger.warning("Could not load notifications for %s: %s", user_id, exc)

    # Requests

    def _require_user(self, user_type: Optional[str] = None) -> Union[Customer, Mechanic]:
        user = self.store.current_user
        if user is None:
            raise ValidationError("Please log in first")
        if user_type is not None and user.user_type != user_type:
            raise ValidationError(f"Only a {user_type} can do that")
        return user

    async def create_request(
        self,
        mechanic_id: str,
        description: str,
        service_type: str = "",
        urgency: str = "medium",
        location: Optional[Location] = None,
        car_type: Optional[str] = None,
    ) -> ServiceRequest:
        customer = self._require_user("customer")
        _require({"mechanic": mechanic_id, "description": description})
        location = location or customer.location
        if location is None:
            raise ValidationError("Please set your location first")
        draft = ServiceRequest(
            customer_id=customer.id,
            mechanic_id=mechanic_id,
            description=description.strip(),
            service_type=service_type,
            urgency=urgency,  # type: ignore[arg-type]
            location=location,
            car_type=car_type or customer.car_type,
        )
        try:
            row = await self.remote.insert("requests", draft.model_dump(mode="json", exclude={"id", "customer", "mechanic"}))
        except RemoteRequestError as exc:
            raise RemoteRequestError("send request", exc.detail) from exc
        mechanic = self.store.get("mechanics", mechanic_id)
        request = ServiceRequest.model_validate(
            {
                **row,
                "mechanic": PublicProfile.model_validate(mechanic.model_dump()) if mechanic else None,
            }
        )
        return await self.store.add("requests", request)

    async def _change_request(self, action: str, request_id: str, fields: Dict[str, Any]) -> ServiceRequest:
        if self.store.get("requests", request_id) is None:
            raise ValidationError("Request not found")
        try:
            await self.remote.update("requests", {"id": request_id}, fields)
        except RemoteRequestError as exc:
            raise RemoteRequestError(action, exc.detail) from exc
        return await self.store.update("requests", request_id, fields)

    def _mechanic_request(self, request_id: str, pending: bool = False) -> ServiceRequest:
        mechanic = self._require_user("mechanic")
        request = self.store.get("requests", request_id)
        if request is None or request.mechanic_id != mechanic.id:
            raise ValidationError("Request not found")
        if pending and request.status != "pending":
            raise ValidationError(f"Request is already {request.status}")
        return request

    async def accept_request(self, request_id: str) -> ServiceRequest:
        self._mechanic_request(request_id, pending=True)
        return await self._change_request(
            "accept request",
            request_id,
            {"status": "accepted", "accepted_at": utc_now_iso()},
        )

    async def reject_request(self, request_id: str) -> ServiceRequest:
        self._mechanic_request(request_id, pending=True)
        return await self._change_request("decline request", request_id, {"status": "rejected"})

    async def confirm_arrival(self, request_id: str, position: Coordinates) -> ServiceRequest:
        request = self._mechanic_request(request_id)
        target = request.location or (request.customer.location if request.customer else None)
        if target is None:
            raise ValidationError("Customer location is not available")
        meters = distance_meters(position, target)
        if meters > config.ARRIVAL_RADIUS_METERS:
            raise ValidationError(
                f"You are {meters:.0f} meters away from the customer's location. "
                "Please get closer to confirm arrival."
            )
        return await self._change_request("confirm arrival", request_id, {"mechanic_arrived": True})

    async def complete_service(self, request_id: str) -> ServiceRequest:
        self._mechanic_request(request_id)
        return await self._change_request(
            "complete service",
            request_id,
            {"status": "completed", "service_completed": True, "completed_at": utc_now_iso()},
        )

    def active_request(self) -> Optional[ServiceRequest]:
        user = self.store.current_user
        if user is None:
            return None
        mine = [
            request
            for request in self.store.requests
            if user.id in (request.customer_id, request.mechanic_id) and request.status in ACTIVE_REQUEST_STATUSES
        ]
        if not mine:
            return None
        return max(mine, key=lambda request: request.created_at)

    # Chat

    async def send_message(self, request_id: str, text: str) -> Message:
        user = self._require_user()
        _require({"message": text})
        return await self._post_message(Message(request_id=request_id, sender_id=user.id, text=text.strip()))

    async def send_system_message(self, request_id: str, text: str) -> Message:
        return await self._post_message(Message(request_id=request_id, sender_id=None, text=text, type="system"))

    async def _post_message(self, message: Message) -> Message:
        try:
            row = await self.remote.insert("messages", message.model_dump(mode="json", exclude={"id"}))
        except RemoteRequestError as exc:
            raise RemoteRequestError("send message", exc.detail) from exc
        if not row.get("id"):
            return await self.store.add("messages", message)
        # The realtime echo of this insert may already have been applied.
        return await self.store.apply_remote_insert("messages", {**message.model_dump(), "id": str(row["id"])})

    async def open_conversation(self, request_id: str) -> List[Message]:
        """Load a request's messages and follow new ones until the conversation is closed."""
        self._require_user()
        try:
            await self.reconciler.watch_conversation(request_id)
        except RemoteRequestError as exc:
            raise RemoteRequestError("load messages", exc.detail) from exc
        return self.conversation(request_id)

    async def close_conversation(self, request_id: str) -> None:
        await self.reconciler.unwatch_conversation(request_id)

    def conversation(self, request_id: str) -> List[Message]:
        return sorted(
            (message for message in self.store.messages if message.request_id == request_id),
            key=lambda message: message.timestamp,
        )

    async def mark_messages_read(self, request_id: str) -> int:
        user = self._require_user()
        unread = [
            message
            for message in self.store.messages
            if message.request_id == request_id and not message.read and message.sender_id != user.id
        ]
        if not unread:
            return 0
        try:
            await self.remote.update("messages", {"id": [message.id for message in unread]}, {"read": True})
        except RemoteRequestError as exc:
            raise RemoteRequestError("mark messages read", exc.detail) from exc
        for message in unread:
            await self.store.update("messages", message.id, {"read": True})
        return len(unread)

    # Reviews

    async def add_review(self, request_id: str, rating: int, comment: str = "") -> Review:
        customer = self._require_user("customer")
        request = self.store.get("requests", request_id)
        if request is None or request.customer_id != customer.id:
            raise ValidationError("Request not found")
        if request.status != "completed" and not request.service_completed:
            raise ValidationError("You can only review a completed service")
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")
        if any(review.request_id == request_id for review in self.store.reviews):
            raise ValidationError("You already reviewed this service")
        review = await self.store.add(
            "reviews",
            Review(
                mechanic_id=request.mechanic_id,
                customer_id=customer.id,
                request_id=request_id,
                rating=rating,
                comment=comment.strip(),
                customer_name=customer.full_name,
            ),
        )
        ratings = [item.rating for item in self.store.reviews if item.mechanic_id == request.mechanic_id]
        await self.store.update("mechanics", request.mechanic_id, {"rating": round(sum(ratings) / len(ratings), 2)})
        return review

    # Profile

    async def update_location(self, location: Location) -> Union[Customer, Mechanic]:
        user = self._require_user()
        return await self._update_profile("update location", user, {"location": location.model_dump(mode="json")})

    async def upload_avatar(self, data: bytes, content_type: str = "image/jpeg") -> str:
        user = self._require_user()
        if not data:
            raise ValidationError("Please choose an image")
        extension = content_type.split("/")[-1] or "bin"
        key = f"{user.id}/{uuid4().hex[:8]}.{extension}"
        try:
            url = await self.remote.upload("avatars", key, data, content_type)
        except RemoteRequestError as exc:
            raise RemoteRequestError("upload photo", exc.detail) from exc
        await self._update_profile("upload photo", user, {"profile_picture": url})
        return url

    async def _update_profile(
        self,
        action: str,
        user: Union[Customer, Mechanic],
        fields: Dict[str, Any],
    ) -> Union[Customer, Mechanic]:
        try:
            await self.remote.update("profiles", {"id": user.id}, fields)
        except RemoteRequestError as exc:
            raise RemoteRequestError(action, exc.detail) from exc
        collection = "customers" if user.user_type == "customer" else "mechanics"
        updated = await self.store.update(collection, user.id, fields)
        if updated is None:
            updated = parse_user({**user.model_dump(), **fields})
        await self.store.set_current_user(updated)
        return updated

    # Discovery

    def find_mechanics(
        self,
        service: Optional[str] = None,
        near: Optional[Location] = None,
        max_distance_km: Optional[float] = None,
        available_only: bool = True,
    ) -> List[Tuple[Mechanic, Optional[float]]]:
        user = self.store.current_user
        origin = near or (user.location if user is not None else None)
        wanted = service.strip().lower() if service else None
        results: List[Tuple[Mechanic, Optional[float]]] = []
        for mechanic in self.store.mechanics:
            if available_only and not mechanic.is_available:
                continue
            if wanted and wanted not in {item.lower() for item in mechanic.services}:
                continue
            distance = distance_km(origin, mechanic.location)
            if max_distance_km is not None and (distance is None or distance > max_distance_km):
                continue
            results.append((mechanic, distance))
        results.sort(key=lambda item: (item[1] is None, item[1] or 0.0, -item[0].rating))
        return results
