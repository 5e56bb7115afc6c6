"""Object routes backing the local filesystem gateway.

Requests carry the signed query parameters issued by LocalFSGateway
instead of an API key: the signature is the credential.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import FileResponse

from pullagent.server.api.deps import get_local_gateway
from pullagent.server.gateway import (
    GatewayError,
    InvalidSignatureError,
    LocalFSGateway,
    content_disposition,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/objects", tags=["objects"])


def _check_signature(
    gateway: LocalFSGateway,
    method: str,
    object_key: str,
    expires: int,
    signature: str,
    disposition: str,
) -> None:
    try:
        gateway.verify(method, object_key, expires, signature, disposition)
    except InvalidSignatureError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e


@router.put("/{object_key:path}")
async def put_object(
    object_key: str,
    request: Request,
    expires: int = Query(...),
    signature: str = Query(...),
    gateway: LocalFSGateway = Depends(get_local_gateway),
) -> Response:
    """Store an object uploaded with a signed PUT URL."""
    _check_signature(gateway, "PUT", object_key, expires, signature, "")

    expected_length = request.headers.get("content-length")
    existed = gateway.exists(object_key)
    written = 0
    try:
        with gateway.writer(object_key) as f:
            async for block in request.stream():
                if block:
                    f.write(block)
                    written += len(block)
            if expected_length is not None and int(expected_length) != written:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Body length {written} does not match Content-Length {expected_length}",
                )
    except GatewayError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    logger.info("Stored object %s (%d bytes)", object_key, written)
    return Response(status_code=status.HTTP_200_OK if existed else status.HTTP_201_CREATED)


@router.get("/{object_key:path}")
def get_object(
    object_key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    disposition: str = Query(default=""),
    gateway: LocalFSGateway = Depends(get_local_gateway),
) -> FileResponse:
    """Download an object with a signed GET URL."""
    _check_signature(gateway, "GET", object_key, expires, signature, disposition)
    if not gateway.exists(object_key):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Object not found: {object_key}",
        )

    headers = {"Content-Disposition": content_disposition(disposition)} if disposition else None
    return FileResponse(
        gateway.object_path(object_key),
        media_type="application/octet-stream",
        headers=headers,
    )


@router.head("/{object_key:path}")
def head_object(
    object_key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    disposition: str = Query(default=""),
    gateway: LocalFSGateway = Depends(get_local_gateway),
) -> Response:
    """Check an object with a signed GET URL."""
    _check_signature(gateway, "GET", object_key, expires, signature, disposition)
    metadata = gateway.stat_metadata(object_key)
    if metadata is None:
        return Response(status_code=status.HTTP_404_NOT_FOUND)
    return Response(
        status_code=status.HTTP_200_OK,
        headers={"Content-Length": str(metadata.size), "ETag": f'"{metadata.etag}"'},
    )
