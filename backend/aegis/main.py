"""
Aegis Field Sync - offline-first incident reporting service.
Keeps field reports on the device and pushes them to the cloud store the
command dashboard watches whenever a connection is available.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import reports, sync
from .core.config import settings
from .models.base import Base, engine
from .services.alert_dispatcher import AlertDispatcher
from .services.connectivity import ConnectivityMonitor
from .services.record_store import record_store
from .services.remote_store import build_publisher
from .services.sync_engine import SyncEngine

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Create the local queue table
# NOTE: Upgraded devices should run `alembic upgrade head` instead
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    connectivity = ConnectivityMonitor(
        probe_url=settings.CONNECTIVITY_PROBE_URL,
        interval=settings.CONNECTIVITY_CHECK_SECONDS,
        timeout=settings.CONNECTIVITY_PROBE_TIMEOUT,
    )
    sync_engine = SyncEngine(
        store=record_store,
        publisher=build_publisher(),
        dispatcher=AlertDispatcher(),
        connectivity=connectivity,
        interval_seconds=settings.SYNC_INTERVAL_SECONDS,
        max_dimension=settings.PHOTO_MAX_DIMENSION,
        quality=settings.PHOTO_QUALITY,
        max_photo_bytes=settings.PHOTO_MAX_BYTES,
    )
    app.state.connectivity = connectivity
    app.state.sync_engine = sync_engine

    await connectivity.start()
    await sync_engine.start()
    try:
        yield
    finally:
        await sync_engine.stop()
        await connectivity.stop()


app = FastAPI(
    title="Aegis Field Sync API",
    description=(
        "Offline-first disaster incident reporting. Reports are queued on the "
        "device and synced to the command dashboard's cloud store when online."
    ),
    version=settings.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # TODO: Restrict to the field client origin once it is hosted
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(reports.router, prefix="/api/v1")
app.include_router(sync.router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}


def run() -> None:
    """Console entry point: serve the API on the device."""
    import uvicorn

    uvicorn.run("aegis.main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
