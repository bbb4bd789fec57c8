"""FastAPI app entry."""

from __future__ import annotations

from fastapi import FastAPI

from chatrelay.adapters.chat.router import close_chat_backend, router as chat_router
from chatrelay.config.settings import settings
from chatrelay.util.logger import logger


app = FastAPI(title=settings.app_name)
app.include_router(chat_router, prefix="/api")


@app.get("/health")
def health() -> dict:
    logger.info("health check")
    return {"status": "ok"}


@app.on_event("startup")
async def startup_log() -> None:
    logger.info(
        "%s starting env=%s backend=%s model=%s",
        settings.app_name,
        settings.env,
        settings.backend_provider,
        settings.backend_model,
    )


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_chat_backend()
