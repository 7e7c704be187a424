"""Streaming download responses for stored blobs."""

from urllib.parse import quote

from fastapi.responses import StreamingResponse

from grant_intake.storage import StoredBlob


def content_disposition(filename: str) -> str:
    safe = (filename or "").replace('"', "").replace("\r", "").replace("\n", "") or "download"
    ascii_name = safe.encode("ascii", "ignore").decode() or "download"
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(safe)}"


def blob_download_response(blob: StoredBlob, filename: str) -> StreamingResponse:
    headers = {
        "Content-Disposition": content_disposition(filename),
        "Cache-Control": "no-store",
    }
    if blob.size is not None:
        headers["Content-Length"] = str(blob.size)
    return StreamingResponse(blob.chunks, media_type=blob.content_type, headers=headers)
