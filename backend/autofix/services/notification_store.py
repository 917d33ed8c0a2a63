import asyncio
import logging
from threading import Lock
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError as SchemaError

from autofix.errors import RemoteRequestError
from autofix.models import NotificationRecord, NotificationType
from autofix.services.push_sender import PushSender, push_sender
from autofix.services.remote import RemoteDataService

logger = logging.getLogger(__name__)


class NotificationStore:
    """Feed of notifications surfaced to the signed-in user.

    Without a remote the feed lives in memory only. With one, every record
    is also written to the remote `notifications` table and `load` lists it
    back from there.
    """

    def __init__(
        self,
        remote: Optional[RemoteDataService] = None,
        sender: Optional[PushSender] = None,
        max_items: int = 100,
    ) -> None:
        self._lock = Lock()
        self._remote = remote
        self._sender = sender or push_sender
        self._max_items = max_items
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    @property
    def persistent(self) -> bool:
        return self._remote is not None

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    async def publish(
        self,
        user_id: str,
        title: str,
        body: str,
        type: NotificationType = "system",
        request_id: Optional[str] = None,
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            type=type,
            request_id=request_id,
            deep_link=deep_link,
        )
        if self._remote is not None:
            try:
                row = await self._remote.insert("notifications", record.model_dump(mode="json"))
                record = NotificationRecord.model_validate(row)
            except (RemoteRequestError, SchemaError) as exc:
                logger.warning("Notification %s kept locally only: %s", record.id, exc)

        with self._lock:
            self._notifications.insert(0, record)
            tokens = list(self._device_tokens.get(user_id, set()))

        if tokens:
            invalid_tokens = await asyncio.to_thread(self._sender.deliver, record, tokens)
            if invalid_tokens:
                with self._lock:
                    current = self._device_tokens.get(user_id, set())
                    for token in invalid_tokens:
                        current.discard(token)
        return record

    async def load(self, user_id: str, limit: int = 50) -> List[NotificationRecord]:
        if self._remote is None:
            return self.list_for_user(user_id)[:limit]
        rows = await self._remote.select(
            "notifications",
            {"user_id": user_id},
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        loaded: List[NotificationRecord] = []
        for row in rows:
            try:
                loaded.append(NotificationRecord.model_validate(row))
            except SchemaError:
                logger.warning("Skipping unreadable notification row %s", row.get("id"))
        with self._lock:
            others = [n for n in self._notifications if n.user_id != user_id]
            self._notifications = loaded + others
        return loaded

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[: self._max_items]

    async def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        if self._remote is not None:
            await self._remote.update("notifications", {"id": notification_id, "user_id": user_id}, {"read": True})
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None
