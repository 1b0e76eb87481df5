"""API service for the workflow sandbox."""

from fastapi import FastAPI
from services.api.routes import sandbox
from services.api.middleware import CorrelationIdMiddleware
from shared.logging_config import setup_logging

setup_logging("api")

app = FastAPI(title="Workflow Sandbox API", version="1.0.0")
app.add_middleware(CorrelationIdMiddleware)

app.include_router(sandbox.router, tags=["Sandbox"])


@app.get("/health")
async def health():
    return {"status": "healthy", "redis": "up" if sandbox.redis_store.ping() else "down"}
