import asyncio
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Mapping, Optional

from autofix import config
from autofix.errors import RemoteRequestError
from autofix.models import ChangeEvent
from autofix.services.change_hub import ChangeCallback, ChangeHub, Subscription, make_subscription
from autofix.services.filters import Filters
from autofix.services.object_store import ObjectStore
from autofix.services.table_store import TableStore, TableStoreError

logger = logging.getLogger(__name__)

REMOTE_COLLECTIONS = ("profiles", "requests", "messages", "notifications")


class RemoteDataService:
    """Hosted tables, their change feed and object storage, as seen by the client."""

    async def select(
        self,
        collection: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def insert(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def update(self, collection: str, filters: Filters, fields: Mapping[str, Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def subscribe(
        self,
        collection: str,
        event_types: Iterable[str],
        filters: Optional[Filters],
        on_event: ChangeCallback,
    ) -> Subscription:
        raise NotImplementedError

    async def unsubscribe(self, subscription: Subscription) -> None:
        raise NotImplementedError

    async def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class NullRemote(RemoteDataService):
    """Stand-in for local demo mode: nothing leaves the device."""

    async def select(self, collection, filters=None, order_by=None, descending=False, limit=None):
        return []

    async def insert(self, collection, record):
        return dict(record)

    async def update(self, collection, filters, fields):
        return []

    async def subscribe(self, collection, event_types, filters, on_event):
        return make_subscription(collection, event_types, filters, on_event)

    async def unsubscribe(self, subscription):
        subscription.active = False

    async def upload(self, bucket, key, data, content_type):
        return f"local://{bucket}/{key}"


class LocalRemote(RemoteDataService):
    """In-process backend that several clients can share.

    Change events are published synchronously to matching subscribers once
    the write has committed, the way the hosted feed reports committed rows.
    """

    def __init__(
        self,
        tables: TableStore,
        hub: Optional[ChangeHub] = None,
        objects: Optional[ObjectStore] = None,
    ) -> None:
        self.tables = tables
        self.hub = hub or ChangeHub()
        self.objects = objects

    async def select(self, collection, filters=None, order_by=None, descending=False, limit=None):
        try:
            return await asyncio.to_thread(self.tables.select, collection, filters, order_by, descending, limit)
        except (TableStoreError, sqlite3.Error) as exc:
            raise RemoteRequestError(f"select {collection}", str(exc)) from exc

    async def insert(self, collection, record):
        try:
            row = await asyncio.to_thread(self.tables.insert, collection, record)
        except (TableStoreError, sqlite3.Error) as exc:
            raise RemoteRequestError(f"insert {collection}", str(exc)) from exc
        self.hub.publish(ChangeEvent(collection=collection, event_type="INSERT", new=row))
        return row

    async def update(self, collection, filters, fields):
        try:
            changed = await asyncio.to_thread(self.tables.update, collection, filters, fields)
        except (TableStoreError, sqlite3.Error) as exc:
            raise RemoteRequestError(f"update {collection}", str(exc)) from exc
        for old, new in changed:
            self.hub.publish(ChangeEvent(collection=collection, event_type="UPDATE", new=new, old=old))
        return [new for _, new in changed]

    async def subscribe(self, collection, event_types, filters, on_event):
        return self.hub.subscribe(collection, event_types, filters, on_event)

    async def unsubscribe(self, subscription):
        self.hub.unsubscribe(subscription)

    async def upload(self, bucket, key, data, content_type):
        if self.objects is None:
            raise RemoteRequestError(f"upload {bucket}/{key}", "object storage is not configured")
        try:
            return await asyncio.to_thread(self.objects.put, bucket, key, data)
        except (OSError, ValueError) as exc:
            raise RemoteRequestError(f"upload {bucket}/{key}", str(exc)) from exc


def build_remote() -> RemoteDataService:
    if config.REMOTE_URL:
        from autofix.services.http_remote import HttpRemote

        logger.info("Using remote data service at %s", config.REMOTE_URL)
        return HttpRemote(config.REMOTE_URL, api_key=config.REMOTE_API_KEY)
    logger.info("AUTOFIX_REMOTE_URL not set; running in local demo mode")
    return NullRemote()
