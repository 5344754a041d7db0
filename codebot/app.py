from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from codebot.api.error_handling import register_exception_handlers
from codebot.api.routes import router
from codebot.logging import get_logger, set_correlation_id
from codebot.service.telegram import TelegramTransport

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the chat transport and the maintenance loop; stop them on shutdown."""
    from codebot.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if isinstance(runtime.transport, TelegramTransport):
            await runtime.transport.start()
        else:
            logger.warning("telegram_transport_disabled", reason="no bot token or test mode")
        if not runtime.settings.test_mode:
            await runtime.maintenance.start()
    except Exception as exc:
        logger.error("startup_failed", error=str(exc), error_type=type(exc).__name__)
        raise

    yield

    try:
        await runtime.maintenance.stop()
        if isinstance(runtime.transport, TelegramTransport):
            await runtime.transport.stop()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="CodeBot Relay", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take the correlation id from X-Request-ID or mint one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
