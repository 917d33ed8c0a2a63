import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, Union

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from autofix.errors import PersistenceError, StoreNotReadyError, ValidationError
from autofix.models import Customer, Mechanic, Message, Review, ServiceRequest, parse_user
from autofix.services.integrity import check_collection
from autofix.services.kv_store import CURRENT_USER_KEY, KeyValueStore

logger = logging.getLogger(__name__)

COLLECTION_MODELS: Dict[str, Type[BaseModel]] = {
    "customers": Customer,
    "mechanics": Mechanic,
    "requests": ServiceRequest,
    "messages": Message,
    "reviews": Review,
}

STATE_UNINITIALIZED = "uninitialized"
STATE_READY = "ready"
STATE_CLOSED = "closed"

CurrentUser = Optional[Union[Customer, Mechanic]]


class LocalCollectionStore:
    """In-memory mirror of the app's collections, persisted to a key-value store.

    The in-memory copy is the single source of truth for readers and is
    updated before the persistence write is awaited. Writes for a collection
    are serialized, and each write stores the latest in-memory snapshot, so
    the persisted copy converges on the order in which mutations were issued.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._collections: Dict[str, List[BaseModel]] = {name: [] for name in COLLECTION_MODELS}
        self._current_user: CurrentUser = None
        self._write_locks = {name: asyncio.Lock() for name in COLLECTION_MODELS}
        self._user_lock = asyncio.Lock()
        self._state = STATE_UNINITIALIZED
        self._ready = asyncio.Event()

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._ready.is_set()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    @property
    def current_user(self) -> CurrentUser:
        return self._current_user

    @property
    def customers(self) -> Tuple[Customer, ...]:
        return self.list("customers")

    @property
    def mechanics(self) -> Tuple[Mechanic, ...]:
        return self.list("mechanics")

    @property
    def requests(self) -> Tuple[ServiceRequest, ...]:
        return self.list("requests")

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self.list("messages")

    @property
    def reviews(self) -> Tuple[Review, ...]:
        return self.list("reviews")

    def list(self, collection: str) -> Tuple[Any, ...]:
        self._model_for(collection)
        return tuple(self._collections[collection])

    def get(self, collection: str, record_id: str) -> Optional[Any]:
        self._model_for(collection)
        for item in self._collections[collection]:
            if item.id == record_id:
                return item
        return None

    # Lifecycle

    async def load_all(self) -> None:
        if self._state == STATE_CLOSED:
            raise StoreNotReadyError("Cannot load: store has been torn down")
        logger.info("Loading local collections")
        await self._load_current_user()
        for name in COLLECTION_MODELS:
            await self._load_collection(name)
        if self._state == STATE_UNINITIALIZED:
            self._state = STATE_READY
            self._ready.set()
        logger.info(
            "Local store ready: %s",
            ", ".join(f"{name}={len(items)}" for name, items in self._collections.items()),
        )

    async def refresh(self, collection: str) -> Tuple[Any, ...]:
        self._require_ready(f"refresh {collection}")
        self._model_for(collection)
        await self._load_collection(collection)
        return self.list(collection)

    async def teardown(self) -> None:
        if self._state == STATE_CLOSED:
            return
        self._state = STATE_CLOSED
        for lock in [*self._write_locks.values(), self._user_lock]:
            async with lock:
                pass
        logger.info("Local store closed")

    async def clear(self) -> None:
        self._require_ready("clear storage")
        self._collections = {name: [] for name in COLLECTION_MODELS}
        self._current_user = None
        await self._kv.clear()
        logger.info("Local storage cleared")

    # Mutations

    async def add(self, collection: str, record: Union[BaseModel, Mapping[str, Any]]) -> Any:
        self._require_ready(f"add to {collection}")
        model = self._model_for(collection)
        if not isinstance(record, model):
            record = model.model_validate(record)
        items = self._collections[collection]
        if not record.id:
            record = record.model_copy(update={"id": self._next_id(items)})
        elif any(item.id == record.id for item in items):
            raise ValidationError(f"A record with id {record.id} already exists in {collection}")
        self._collections[collection] = [*items, record]
        await self._persist(collection)
        return record

    async def update(self, collection: str, record_id: str, fields: Mapping[str, Any]) -> Optional[Any]:
        self._require_ready(f"update {collection}")
        merged = self._merge(collection, record_id, fields)
        if merged is None:
            logger.debug("Update for unknown %s id %s ignored", collection, record_id)
            return None
        await self._persist(collection)
        return merged[1]

    async def set_current_user(self, user: Union[Customer, Mechanic, Mapping[str, Any], None]) -> CurrentUser:
        self._require_ready("set the current user")
        if user is not None and not isinstance(user, (Customer, Mechanic)):
            user = parse_user(user)
        self._current_user = user
        async with self._user_lock:
            latest = self._current_user
            try:
                if latest is None:
                    await self._kv.remove(CURRENT_USER_KEY)
                else:
                    await self._kv.set(CURRENT_USER_KEY, json.dumps(latest.model_dump(mode="json")))
            except PersistenceError:
                logger.error("Failed to persist current user")
                raise
        return user

    async def apply_remote_insert(self, collection: str, record: Union[BaseModel, Mapping[str, Any]]) -> Any:
        self._require_ready(f"apply insert to {collection}")
        model = self._model_for(collection)
        if not isinstance(record, model):
            record = model.model_validate(record)
        items = self._collections[collection]
        for idx, item in enumerate(items):
            if item.id == record.id:
                self._collections[collection] = [*items[:idx], record, *items[idx + 1:]]
                break
        else:
            self._collections[collection] = [record, *items]
        await self._persist(collection)
        return record

    async def apply_remote_update(
        self,
        collection: str,
        record_id: str,
        fields: Mapping[str, Any],
    ) -> Optional[Tuple[Any, Any]]:
        self._require_ready(f"apply update to {collection}")
        merged = self._merge(collection, record_id, fields)
        if merged is None:
            return None
        await self._persist(collection)
        return merged

    # Internals

    def _require_ready(self, action: str) -> None:
        if self._state != STATE_READY:
            raise StoreNotReadyError(f"Cannot {action}: store is {self._state}")

    def _model_for(self, collection: str) -> Type[BaseModel]:
        try:
            return COLLECTION_MODELS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    def _next_id(self, items: List[BaseModel]) -> str:
        existing = {item.id for item in items}
        candidate = int(time.time() * 1000)
        while str(candidate) in existing:
            candidate += 1
        return str(candidate)

    def _merge(
        self,
        collection: str,
        record_id: str,
        fields: Mapping[str, Any],
    ) -> Optional[Tuple[BaseModel, BaseModel]]:
        model = self._model_for(collection)
        items = self._collections[collection]
        for idx, item in enumerate(items):
            if item.id != record_id:
                continue
            data = item.model_dump()
            data.update({key: value for key, value in fields.items() if key in model.model_fields and key != "id"})
            updated = model.model_validate(data)
            self._collections[collection] = [*items[:idx], updated, *items[idx + 1:]]
            return item, updated
        return None

    async def _persist(self, collection: str) -> None:
        async with self._write_locks[collection]:
            payload = json.dumps([item.model_dump(mode="json") for item in self._collections[collection]])
            try:
                await self._kv.set(collection, payload)
            except PersistenceError:
                logger.error("Failed to persist %s; in-memory copy is ahead of storage", collection)
                raise

    async def _load_current_user(self) -> None:
        try:
            raw = await self._kv.get(CURRENT_USER_KEY)
            if raw:
                self._current_user = parse_user(json.loads(raw))
                logger.info("Current user restored: %s", self._current_user.full_name)
        except (PersistenceError, json.JSONDecodeError, SchemaError):
            logger.exception("Failed to restore current user")
            self._current_user = None

    async def _load_collection(self, name: str) -> None:
        model = COLLECTION_MODELS[name]
        try:
            raw = await self._kv.get(name)
            parsed = json.loads(raw) if raw else None
        except (PersistenceError, json.JSONDecodeError):
            logger.exception("Failed to read %s; starting empty", name)
            self._collections[name] = []
            return

        result = check_collection(name, parsed)
        if result.corrupted:
            self._collections[name] = []
            try:
                await self._kv.set(name, "[]")
            except PersistenceError:
                logger.exception("Failed to overwrite corrupted %s", name)
            return

        try:
            self._collections[name] = [model.model_validate(item) for item in result.records]
        except SchemaError:
            logger.exception("Stored %s failed validation; starting empty", name)
            self._collections[name] = []
            return
        logger.debug("Loaded %d %s", len(self._collections[name]), name)
