"""Release route handlers.

- /api/services/{service}/releases - List releases, upload a bundle
- /api/services/{service}/releases/{release_id}/activate - Activate a release
- /api/services/{service}/releases/{release_id} - Delete a release
"""

import logging

from starlette.datastructures import UploadFile
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ._common import get_engine

logger = logging.getLogger(__name__)

UPLOAD_FIELD = "package"
BUNDLE_EXTENSIONS = (".tgz", ".tar.gz")
GZIP_CONTENT_TYPES = frozenset({"application/gzip", "application/x-gzip", "application/x-tar+gzip"})
READ_CHUNK_SIZE = 1024 * 1024


def _looks_like_bundle(upload: UploadFile) -> bool:
    filename = (upload.filename or "").lower()
    if filename.endswith(BUNDLE_EXTENSIONS):
        return True
    return (upload.content_type or "").lower() in GZIP_CONTENT_TYPES


async def _read_limited(upload: UploadFile, limit: int) -> bytes | None:
    """Read an upload fully; None if it exceeds ``limit`` bytes."""
    chunks: list[bytes] = []
    size = 0
    while True:
        chunk = await upload.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


async def list_releases(request: Request) -> JSONResponse:
    """GET /api/services/{service}/releases - Releases in upload order."""
    releases = get_engine(request).list_releases(request.path_params["service"])
    return JSONResponse([release.to_dict() for release in releases])


async def upload_release(request: Request) -> JSONResponse:
    """POST /api/services/{service}/releases - Upload a bundle as a new release.

    Multipart form with the archive in the ``package`` field. The new
    release becomes active immediately.

    Returns:
        201: The new release.
        400: No file, not a gzip tarball, or unreadable archive.
        404: Service not found.
        413: Upload larger than max_upload_bytes.

    """
    engine = get_engine(request)
    service = request.path_params["service"]
    limit = request.app.state.config.max_upload_bytes

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        return JSONResponse({"error": f"Upload exceeds {limit} bytes"}, status_code=413)

    # Unknown service is reported before the upload is read
    engine.registry.get(service)

    try:
        form = await request.form(max_files=1, max_fields=10)
    except Exception as e:
        return JSONResponse({"error": f"Invalid multipart body: {e}"}, status_code=400)

    try:
        upload = form.get(UPLOAD_FIELD)
        if not isinstance(upload, UploadFile):
            return JSONResponse({"error": "No package file uploaded"}, status_code=400)
        if not _looks_like_bundle(upload):
            return JSONResponse(
                {"error": "Only .tgz (gzip-compressed tar) bundles are accepted"},
                status_code=400,
            )
        data = await _read_limited(upload, limit)
    finally:
        await form.close()

    if data is None:
        return JSONResponse({"error": f"Upload exceeds {limit} bytes"}, status_code=413)

    release = await engine.add_release(service, data)
    return JSONResponse(release.to_dict(), status_code=201)


async def activate_release(request: Request) -> JSONResponse:
    """POST /api/services/{service}/releases/{release_id}/activate - Activate a release.

    Does not restart a running process.

    Returns:
        200: {"activeReleaseId": ...}
        404: Service or release not found.

    """
    active = await get_engine(request).activate_release(
        request.path_params["service"],
        request.path_params["release_id"],
    )
    return JSONResponse({"activeReleaseId": active})


async def delete_release(request: Request) -> JSONResponse:
    """DELETE /api/services/{service}/releases/{release_id} - Delete a release.

    Returns:
        200: {"success": true, "activeReleaseId": ...}
        404: Service or release not found.

    """
    active = await get_engine(request).delete_release(
        request.path_params["service"],
        request.path_params["release_id"],
    )
    return JSONResponse({"success": True, "activeReleaseId": active})


routes = [
    Route("/api/services/{service}/releases", list_releases, methods=["GET"]),
    Route("/api/services/{service}/releases", upload_release, methods=["POST"]),
    Route(
        "/api/services/{service}/releases/{release_id}/activate",
        activate_release,
        methods=["POST"],
    ),
    Route("/api/services/{service}/releases/{release_id}", delete_release, methods=["DELETE"]),
]
