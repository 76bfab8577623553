# pyright: reportMissingImports=false
# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import FileResponse

from parley.core.errors import NotFoundError, ValidationError
from parley.storage.objects import get_object_store, guess_content_type


router = APIRouter(prefix="/files", tags=["files"])


@router.get(
    "/{key:path}",
    operation_id="files_get",
    responses={200: {"description": "Stored object bytes"}},
)
def files_get(
    key: str,
    exp: int = Query(...),
    sig: str = Query(..., min_length=1),
) -> FileResponse:
    store = get_object_store()
    # Signature and expiry are the only authorization for object reads.
    if not store.verify(key, exp, sig):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")
    try:
        path = store.local_path(key)
    except (NotFoundError, ValidationError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return FileResponse(path=str(path), media_type=guess_content_type(key))
