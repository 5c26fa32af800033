"""FastAPI application running the ingestion worker with a health surface."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from csv_worker.api.health import router as health_router
from csv_worker.config import get_settings
from csv_worker.database import init_db
from csv_worker.logging_setup import configure_logging
from csv_worker.services.storage import SupabaseStorage
from csv_worker.worker import Worker, build_worker

logger = logging.getLogger(__name__)


def create_app(worker: Optional[Worker] = None, run_worker: bool = True) -> FastAPI:
    """
    Build the app. The worker loop runs for the lifetime of the app.

    Args:
        worker: Prebuilt worker; one is built from settings when omitted
        run_worker: Start the poll loop on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage = None
        current = worker
        if current is None:
            settings = get_settings()
            configure_logging(settings.log_level)
            init_db()
            storage = SupabaseStorage(settings)
            current = build_worker(settings, storage)

        app.state.context = current.context
        app.state.persistence = current.persistence

        run_task = asyncio.create_task(current.run()) if run_worker else None
        try:
            yield
        finally:
            if run_task is not None:
                await current.shutdown()
                if not run_task.done():
                    run_task.cancel()
                await asyncio.gather(run_task, return_exceptions=True)
            if storage is not None:
                await storage.aclose()

    app = FastAPI(
        title="CSV Worker",
        description="Streams chunked CSV uploads into the connections table",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    return app


app = create_app()
