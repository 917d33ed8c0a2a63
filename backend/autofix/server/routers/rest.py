from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from autofix.models import ChangeEvent
from autofix.server import backend
from autofix.server.auth import require_api_key
from autofix.services.filters import parse_query_params
from autofix.services.table_store import TableStoreConflictError, TableStoreError

router = APIRouter(prefix="/rest", tags=["rest"], dependencies=[Depends(require_api_key)])


def _raise_table_http_error(exc: TableStoreError) -> None:
    if isinstance(exc, TableStoreConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def _filters_from(request: Request) -> Dict[str, Any]:
    try:
        return parse_query_params(dict(request.query_params))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _parse_order(order: Optional[str]) -> Tuple[Optional[str], bool]:
    if not order:
        return None, False
    column, _, direction = order.partition(".")
    direction = direction.lower() or "asc"
    if not column or direction not in {"asc", "desc"}:
        raise HTTPException(status_code=400, detail="Invalid order; expected column.asc or column.desc")
    return column, direction == "desc"


@router.get("/{collection}", response_model=List[Dict[str, Any]])
def select_rows(
    collection: str,
    request: Request,
    order: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=0),
):
    filters = _filters_from(request)
    order_by, descending = _parse_order(order)
    try:
        return backend.table_store.select(collection, filters, order_by, descending, limit)
    except TableStoreError as exc:
        _raise_table_http_error(exc)


@router.post("/{collection}", response_model=Dict[str, Any])
def insert_row(collection: str, payload: Dict[str, Any] = Body(...)):
    try:
        row = backend.table_store.insert(collection, payload)
    except TableStoreError as exc:
        _raise_table_http_error(exc)
    backend.change_hub.publish(ChangeEvent(collection=collection, event_type="INSERT", new=row))
    return row


@router.patch("/{collection}", response_model=List[Dict[str, Any]])
def update_rows(collection: str, request: Request, payload: Dict[str, Any] = Body(...)):
    filters = _filters_from(request)
    try:
        changed = backend.table_store.update(collection, filters, payload)
    except TableStoreError as exc:
        _raise_table_http_error(exc)
    for old, new in changed:
        backend.change_hub.publish(ChangeEvent(collection=collection, event_type="UPDATE", new=new, old=old))
    return [new for _, new in changed]
