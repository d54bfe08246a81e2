import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from assetsync.api.routes import batch_jobs, conflicts, sync_events
from assetsync.config import get_settings
from assetsync.db.session import init_db
from assetsync.services.engine import get_engine, reset_engine

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="AssetSync Engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip()
        for o in os.environ.get("CORS_ORIGINS", "http://localhost:8080,http://127.0.0.1:8080").split(",")
        if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    if get_settings().dispatcher_enabled:
        get_engine().dispatcher.start()
    else:
        logger.info("Real-time dispatcher disabled (SYNC_DISPATCHER_ENABLED is off)")


@app.on_event("shutdown")
def on_shutdown() -> None:
    reset_engine()


app.include_router(sync_events.router)
app.include_router(batch_jobs.router)
app.include_router(conflicts.router)
