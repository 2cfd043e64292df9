from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import JSONResponse, Response

from .blobstore import MemoryBlobStore
from .catalog import InMemoryCatalog, MediaRecord, MediaSlot
from .errors import BlobIOError, NotFoundError
from .gateway import MediaGateway
from .library import MediaLibrary
from .s3store import S3ChunkedBlobStore
from .settings import (
    GatewaySettings,
    load_gateway_settings_from_env,
    load_store_settings_from_env,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .blobstore import BlobStore
    from .catalog import MediaCatalog
    from .library import ThumbnailProvider

LOG = logging.getLogger("media_gateway.app")


def build_store(settings: GatewaySettings) -> BlobStore:
    if settings.backend == "memory":
        return MemoryBlobStore(load_store_settings_from_env().chunk_size)
    return S3ChunkedBlobStore.from_env()


def create_app(
    *,
    settings: GatewaySettings | None = None,
    store: BlobStore | None = None,
    catalog: MediaCatalog | None = None,
    thumbnail_provider: ThumbnailProvider | None = None,
) -> FastAPI:
    """Create the media gateway ASGI application."""
    settings = settings or load_gateway_settings_from_env()
    store = store if store is not None else build_store(settings)
    if catalog is None:
        catalog = InMemoryCatalog.from_mapping(settings.catalog)
    gateway = MediaGateway(
        store, catalog, default_content_type=settings.default_content_type
    )
    library = MediaLibrary(store, catalog, thumbnail_provider=thumbnail_provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await store.startup()
        LOG.info("media gateway ready (backend=%s)", settings.backend)
        try:
            yield
        finally:
            await store.shutdown()

    app = FastAPI(title="media-gateway", lifespan=lifespan)
    app.state.gateway = gateway
    app.state.library = library
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Accept-Ranges", "Content-Length", "Content-Range"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> Response:
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(BlobIOError)
    async def store_failure(request: Request, exc: BlobIOError) -> Response:
        LOG.warning(
            "store failure on %s %s", request.method, request.url.path, exc_info=exc
        )
        return JSONResponse({"error": "Storage failure"}, status_code=500)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.api_route("/media/{record_id}", methods=["GET", "HEAD"])
    async def stream_media(record_id: str, request: Request) -> Response:
        return await gateway.handle(
            record_id,
            slot=MediaSlot.MEDIA,
            range_header=request.headers.get("range"),
            method=request.method,
        )

    @app.api_route("/media/{record_id}/thumbnail", methods=["GET", "HEAD"])
    async def stream_thumbnail(record_id: str, request: Request) -> Response:
        return await gateway.handle(
            record_id,
            slot=MediaSlot.THUMBNAIL,
            range_header=request.headers.get("range"),
            method=request.method,
        )

    @app.post("/media", status_code=201)
    async def upload_media(
        request: Request, title: str | None = None, filename: str | None = None
    ) -> MediaRecord:
        content_type = request.headers.get("content-type") or (
            settings.default_content_type
        )
        return await library.upload(
            request.stream(), content_type, title=title, filename=filename
        )

    @app.put("/media/{record_id}/thumbnail")
    async def replace_thumbnail(
        record_id: str, request: Request, filename: str | None = None
    ) -> MediaRecord:
        content_type = request.headers.get("content-type") or "image/jpeg"
        return await library.replace_thumbnail(
            record_id, request.stream(), content_type, filename=filename
        )

    @app.delete("/media/{record_id}", status_code=204)
    async def delete_media(record_id: str) -> Response:
        await library.delete(record_id)
        return Response(status_code=204)

    return app


app = create_app()
