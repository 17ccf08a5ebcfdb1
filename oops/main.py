from contextlib import asynccontextmanager

from fastapi import FastAPI

from oops.routes import api
from oops.worker import Worker, get_runtime


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Run the channel subscriber alongside the HTTP surface when enabled."""
    runtime = get_runtime()
    worker = Worker(runtime.coordinator, runtime.channel) if runtime.settings.subscribe else None
    if worker is not None:
        worker.start()
    try:
        yield
    finally:
        if worker is not None:
            worker.stop()


app = FastAPI(title="oops scenario runner", lifespan=lifespan)
app.include_router(api.router)


@app.get("/healthz")
async def healthz() -> dict:
    runtime = get_runtime()
    return {"status": "ok", "tracker": runtime.tracker.name, "channel": runtime.channel.name}
