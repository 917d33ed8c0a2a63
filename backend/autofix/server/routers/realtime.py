import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from autofix.server import backend
from autofix.server.auth import require_api_key
from autofix.services.filters import parse_query_params
from autofix.services.table_store import ID_PREFIXES

router = APIRouter(prefix="/realtime", tags=["realtime"])

KEEPALIVE_SECONDS = 15.0
SUPPORTED_EVENTS = {"INSERT", "UPDATE"}


@router.get("/{collection}", dependencies=[Depends(require_api_key)])
async def stream_changes(
    collection: str,
    request: Request,
    events: str = Query(default="INSERT,UPDATE"),
):
    if collection not in ID_PREFIXES:
        raise HTTPException(status_code=400, detail=f"Unknown collection {collection!r}")
    event_types = {item.strip().upper() for item in events.split(",") if item.strip()}
    if not event_types or not event_types <= SUPPORTED_EVENTS:
        raise HTTPException(status_code=400, detail="events must be a subset of INSERT,UPDATE")
    try:
        filters = parse_query_params(dict(request.query_params))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    # Writes publish from worker threads; hop back onto this loop.
    subscription = backend.change_hub.subscribe(
        collection,
        event_types,
        filters,
        lambda event: loop.call_soon_threadsafe(queue.put_nowait, event),
    )

    async def event_generator():
        try:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"data: {event.model_dump_json()}\n\n"
        finally:
            backend.change_hub.unsubscribe(subscription)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
