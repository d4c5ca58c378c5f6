"""Serve files written by local storage (development only)."""

import mimetypes

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from src.api.deps import PipelineDep
from src.exceptions import StorageError
from src.services.storage_service import LocalStorageService

router = APIRouter()

# Extensions the pipeline writes that mimetypes may not know everywhere
MEDIA_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".gif": "image/gif",
    ".jpg": "image/jpeg",
    ".srt": "application/x-subrip",
}


@router.get("/files/{storage_key:path}")
async def get_file(storage_key: str, pipeline: PipelineDep):
    """Serve a stored object by key."""
    storage = pipeline.storage
    if not isinstance(storage, LocalStorageService):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )

    try:
        file_path = storage.get_file_path(storage_key)
    except StorageError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid storage key")
    if not file_path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    ext = file_path.suffix.lower()
    media_type = MEDIA_TYPES.get(ext) or mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    return FileResponse(path=str(file_path), media_type=media_type, filename=file_path.name)
