import asyncio
import logging
import os

import anyio
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from media_service import __version__
from media_service.config import ServiceConfig
from media_service.conversion import (
    CancelToken,
    ConversionError,
    ConversionService,
    Delivery,
    HttpExecutableProvisioner,
    SubprocessRunner,
)
from media_service.conversion.errors import DeliveryError, JobCancelled, ValidationError

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Media Conversion Service",
    version=os.getenv("MEDIA_SERVICE_VERSION", __version__),
    description=(
        "Converts a media URL into an audio or video file using yt-dlp and "
        "streams the result back as an attachment."
    ),
)

DISCONNECT_POLL_SEC = float(os.getenv("DISCONNECT_POLL_SEC", "0.5"))

SERVICE: ConversionService | None = None


def build_service(config: ServiceConfig) -> ConversionService:
    provisioner = HttpExecutableProvisioner(
        config.converter_path,
        config.converter_url,
        min_size_bytes=config.converter_min_bytes,
        max_redirects=config.converter_max_redirects,
        timeout=config.download_timeout_sec,
    )
    runner = SubprocessRunner(
        stderr_lines=config.stderr_lines,
        kill_timeout=config.kill_timeout_sec,
    )
    return ConversionService(
        provisioner,
        runner,
        delivery_mode=config.delivery_mode,
        work_dir=config.work_dir,
        chunk_size=config.chunk_size,
    )


class ArtifactResponse(StreamingResponse):
    """Streams a Delivery and releases its resources however the response ends."""

    def __init__(self, delivery: Delivery) -> None:
        super().__init__(delivery.body(), media_type=delivery.media_type, headers=delivery.headers)
        self.delivery = delivery

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except (OSError, ClientDisconnect) as e:
            # The client is the sink; nothing left to report to it
            logger.info("%s", DeliveryError(f"client went away during download: {e!r}"))
        finally:
            with anyio.CancelScope(shield=True):
                await self.delivery.aclose()


async def _watch_disconnect(request: Request, cancel: CancelToken) -> None:
    while not cancel.cancelled:
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling conversion")
            cancel.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_SEC)


@app.exception_handler(ConversionError)
async def _conversion_error(request: Request, exc: ConversionError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Conversion failed: %s", exc.message)
    else:
        logger.info("Rejected request: %s", exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


@app.on_event("startup")
async def _startup() -> None:
    global SERVICE
    config = ServiceConfig.from_env()
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if SERVICE is None:
        config.work_dir.mkdir(parents=True, exist_ok=True)
        SERVICE = build_service(config)
    logger.info("Media service ready (delivery mode: %s)", SERVICE.delivery_mode.value)


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.get("/health/executable")
def executable_health() -> dict[str, object]:
    """Report whether the converter is installed, without downloading it."""
    assert SERVICE is not None
    state = SERVICE.executable_state()
    if state is None:
        return {"present": False}
    return {"present": True, "path": str(state.path), "size_bytes": state.size_bytes}


@app.post("/api/download", status_code=status.HTTP_200_OK)
async def download(request: Request) -> Response:
    """Convert the media at ``sourceReference`` and stream it back.

    Accepts a JSON body ``{"sourceReference": ..., "outputKind": ...}``.
    The older ``{"url": ..., "type": ...}`` field names are accepted too.
    Errors are returned as ``{"error": message}``.
    """
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")

    assert SERVICE is not None
    cancel = CancelToken()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        delivery = await SERVICE.convert(body, cancel)
    finally:
        watcher.cancel()

    if cancel.cancelled:
        await delivery.aclose()
        raise JobCancelled()
    return ArtifactResponse(delivery)


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("media_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
