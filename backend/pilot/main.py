import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pilot.agent.registry import SessionRegistry
from pilot.agent.runtime import build_runtime
from pilot.config import settings
from pilot.routers import agent


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    runtime = build_runtime(settings)
    if runtime.store is not None:
        await runtime.store.init()
    registry = SessionRegistry(runtime)
    registry.start()
    app.state.runtime = runtime
    app.state.registry = registry
    yield
    # Shutdown
    await registry.shutdown()
    await runtime.close()


app = FastAPI(
    title="Pilot",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(agent.router)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "pilot"}
