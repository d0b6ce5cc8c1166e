from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import signal
import sys

from plate_reader.api.batches import router as batches_router
from plate_reader.api.worker import router as worker_router
from plate_reader.core.config import config
from plate_reader.core.errors import register_error_handlers
from plate_reader.worker import manager as worker_manager


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.scheduler_enabled:
        try:
            worker_manager.start_worker()
        except Exception as e:
            logging.error(f"Failed to start background worker: {e}")
    else:
        logging.info("Periodic scheduler disabled (SCHEDULER_ENABLED=false)")
    yield
    worker_manager.stop_worker()


app = FastAPI(title="Plate Reader", lifespan=lifespan)
# 👇 configure this list for your environments
ALLOWED_ORIGINS = [
    "http://localhost:8080",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
register_error_handlers(app)
app.include_router(batches_router, prefix="/api", tags=["batches"])
app.include_router(worker_router, prefix="/api", tags=["worker"])


@app.get("/")
async def root():
    return {"message": "Plate Reader API is running"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


if __name__ == "__main__":
    def signal_handler(signum, frame):
        """Handle shutdown signals."""
        logging.info(f"Received signal {signum}, shutting down...")
        worker_manager.stop_worker()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    import uvicorn
    try:
        uvicorn.run(app, host="0.0.0.0", port=8001)
    except KeyboardInterrupt:
        logging.info("FastAPI server interrupted")
        worker_manager.stop_worker()
    finally:
        logging.info("Server shutdown complete")
