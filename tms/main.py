from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tms.config import Settings
from tms.errors import OrchestrationError
from tms.routes import api, webhooks
from tms.services.orchestrator import OrchestrationContext

LOGGER = logging.getLogger("tms.api")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()],
    )


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:]) or "body"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts) or "Invalid request."


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(OrchestrationError)
    async def _orchestration_error(request: Request, exc: OrchestrationError) -> JSONResponse:
        if exc.status_code >= 500:
            LOGGER.error(
                "%s %s failed with %s: %s (%s)", request.method, request.url.path, exc.code, exc.message, exc.context
            )
        else:
            LOGGER.info("%s %s -> %s %s: %s", request.method, request.url.path, exc.status_code, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = _validation_message(exc)
        LOGGER.info("%s %s rejected: %s", request.method, request.url.path, message)
        return JSONResponse(
            status_code=400,
            content={
                "code": "VALIDATION_ERROR",
                "message": message,
                "errors": jsonable_encoder(exc.errors(), custom_encoder={Exception: str}),
            },
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error during %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"code": "INTERNAL_ERROR", "message": "Internal server error."},
        )


def create_app(
    context: Optional[OrchestrationContext] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the API; the orchestration context is created on startup unless supplied."""
    settings = settings or (context.settings if context is not None else Settings.from_env())
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings.warn_if_permissive()
        owned = app.state.context is None
        if owned:
            app.state.context = OrchestrationContext.from_settings(settings)
        try:
            yield
        finally:
            if owned:
                app.state.context.stop()
                app.state.context = None

    app = FastAPI(title="TMS Orchestration Service", lifespan=lifespan)
    app.state.context = context
    app.include_router(api.router)
    app.include_router(webhooks.router)
    register_error_handlers(app)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run("tms.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
