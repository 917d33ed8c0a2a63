import mimetypes

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse

from autofix.server import backend
from autofix.server.auth import require_api_key

router = APIRouter(prefix="/storage", tags=["storage"])


@router.put("/{bucket}/{key:path}", dependencies=[Depends(require_api_key)])
async def upload_object(bucket: str, key: str, request: Request):
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")
    try:
        url = backend.object_store.put(bucket, key, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "url": url,
        "bucket": bucket,
        "key": key,
        "size": len(data),
        "content_type": request.headers.get("content-type", "application/octet-stream"),
    }


@router.get("/{bucket}/{key:path}")
def download_object(bucket: str, key: str):
    try:
        path = backend.object_store.path_for(bucket, key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if path is None:
        raise HTTPException(status_code=404, detail="Object not found")
    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return FileResponse(path, media_type=media_type)
