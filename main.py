"""
FastAPI application for the dealership WhatsApp assistant.
Webhook intake, conversation starter and operational endpoints.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.admin import router as admin_router
from app.api.webhook import router as webhook_router
from app.config import settings
from app.core.dependencies import build_services
from app.core.logger import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    services = build_services(settings)
    app.state.services = services
    await services.start()
    try:
        yield
    finally:
        await services.shutdown()


# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="WhatsApp sales assistant for a used-car dealership",
    version=settings.VERSION,
    lifespan=lifespan,
)

app.include_router(webhook_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    return {"status": "ok", "service": settings.PROJECT_NAME}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
