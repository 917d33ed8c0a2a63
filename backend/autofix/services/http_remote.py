import asyncio
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError as SchemaError

from autofix import config
from autofix.errors import RemoteRequestError
from autofix.models import ChangeEvent
from autofix.services.change_hub import Subscription, make_subscription
from autofix.services.filters import to_query_params
from autofix.services.remote import RemoteDataService

logger = logging.getLogger(__name__)


def parse_sse_line(line: str) -> Optional[ChangeEvent]:
    if not line.startswith("data:"):
        return None
    raw = line[len("data:"):].strip()
    if not raw:
        return None
    try:
        return ChangeEvent.model_validate(json.loads(raw))
    except (json.JSONDecodeError, SchemaError):
        logger.warning("Dropping unreadable realtime frame: %.200s", raw)
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and "detail" in payload:
        return str(payload["detail"])
    return str(payload)[:200]


class HttpRemote(RemoteDataService):
    """Remote data service client speaking the backend's REST, SSE and storage routes."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = config.REMOTE_TIMEOUT_SECONDS,
        reconnect_delay: float = config.REALTIME_RECONNECT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers: Dict[str, str] = {}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._timeout = timeout
        self._reconnect_delay = reconnect_delay
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._streams: Dict[str, asyncio.Task] = {}

    async def _request(self, action: str, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteRequestError(action, str(exc) or type(exc).__name__) from exc
        if response.status_code >= 400:
            raise RemoteRequestError(action, f"HTTP {response.status_code}: {_error_detail(response)}")
        return response.json()

    async def select(self, collection, filters=None, order_by=None, descending=False, limit=None):
        params = to_query_params(filters)
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        return await self._request(f"select {collection}", "GET", f"/rest/{collection}", params=params)

    async def insert(self, collection, record):
        return await self._request(f"insert {collection}", "POST", f"/rest/{collection}", json=dict(record))

    async def update(self, collection, filters, fields):
        return await self._request(
            f"update {collection}",
            "PATCH",
            f"/rest/{collection}",
            params=to_query_params(filters),
            json=dict(fields),
        )

    async def upload(self, bucket, key, data, content_type):
        payload = await self._request(
            f"upload {bucket}/{key}",
            "PUT",
            f"/storage/{quote(bucket)}/{quote(key)}",
            content=data,
            headers={"Content-Type": content_type},
        )
        return str(payload["url"])

    async def subscribe(self, collection, event_types, filters, on_event):
        subscription = make_subscription(collection, event_types, filters, on_event)
        connected = asyncio.Event()
        self._streams[subscription.id] = asyncio.create_task(self._stream(subscription, connected))
        # Changes committed before the server registers the stream are not replayed.
        try:
            await asyncio.wait_for(connected.wait(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Realtime stream for %s not confirmed within %.1fs; still retrying in the background",
                collection,
                self._timeout,
            )
        return subscription

    async def unsubscribe(self, subscription):
        subscription.active = False
        task = self._streams.pop(subscription.id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        for task in self._streams.values():
            task.cancel()
        for task in list(self._streams.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._streams.clear()
        await self._client.aclose()

    async def _stream(self, subscription: Subscription, connected: asyncio.Event) -> None:
        params = to_query_params(subscription.filters)
        params["events"] = ",".join(sorted(subscription.event_types))
        url = f"/realtime/{subscription.collection}"
        stream_timeout = httpx.Timeout(self._timeout, read=None)
        while subscription.active:
            try:
                async with self._client.stream("GET", url, params=params, timeout=stream_timeout) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise RemoteRequestError(
                            f"subscribe {subscription.collection}",
                            f"HTTP {response.status_code}: {_error_detail(response)}",
                        )
                    logger.info("Realtime stream open for %s %s", subscription.collection, subscription.filters)
                    async for line in response.aiter_lines():
                        if line.startswith(": connected"):
                            connected.set()
                            continue
                        event = parse_sse_line(line)
                        if event is None:
                            continue
                        try:
                            subscription.deliver(event)
                        except Exception:
                            logger.exception("Change subscriber %s failed", subscription.id)
            except (httpx.HTTPError, RemoteRequestError) as exc:
                logger.warning(
                    "Realtime stream for %s dropped (%s); reconnecting in %.1fs",
                    subscription.collection,
                    exc,
                    self._reconnect_delay,
                )
            if subscription.active:
                await asyncio.sleep(self._reconnect_delay)
