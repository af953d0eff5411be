"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

import pillow_heif
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from imgconv import __version__
from imgconv.api.routes import error_status, router
from imgconv.config import BATCH_WORKERS, CORS_ORIGINS, IMAGE_OUTPUT_FORMATS, logger as config_logger
from imgconv.conversion.errors import ConversionError
from imgconv.conversion.service import get_conversion_service
from imgconv.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)

# Headers the browser client reads off converted downloads
EXPOSED_HEADERS = [
    "Content-Disposition",
    "X-Session-ID",
    "X-Batch-ID",
    "X-Output-Quality",
    "X-Target-Met",
    "X-Converted-Count",
    "X-Failed-Count",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    get_conversion_service()
    config_logger.info(
        "Image converter API started: formats=%s, batch workers=%d, libheif %s",
        ",".join(IMAGE_OUTPUT_FORMATS),
        BATCH_WORKERS,
        pillow_heif.libheif_version(),
    )
    yield
    config_logger.info("Image converter API shutting down")


app = FastAPI(
    title="Image Converter API",
    description="Convert images between formats, optionally under a target byte size.",
    version=__version__,
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=EXPOSED_HEADERS,
)


@app.exception_handler(ConversionError)
async def conversion_error_handler(request: Request, exc: ConversionError):
    return JSONResponse(
        status_code=error_status(exc),
        content={"detail": {"error": exc.kind, "message": str(exc)}},
    )


@app.middleware("http")
async def attach_session_id(request: Request, call_next):
    """Echo a freshly generated session id so the client can reuse it."""
    response = await call_next(request)
    session_id = getattr(request.state, "session_id", None)
    if session_id:
        response.headers["X-Session-ID"] = session_id
    return response


app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from imgconv.config import HOST, PORT
    uvicorn.run("imgconv.main:app", host=HOST, port=PORT, reload=True)
