"""Entry point: serves the timeline REST API with uvicorn."""

import contextlib
import logging
import logging.handlers
import os

import uvicorn
from fastapi import FastAPI

from api import router
from database import init_db
from regeneration import get_queue

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
LOG_FILE = os.path.join(LOG_DIR, "location-timeline.log")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3,
        ),
    ],
)
logger = logging.getLogger("locationtimeline")

# Quiet noisy libraries
logging.getLogger("multipart").setLevel(logging.WARNING)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    queue = get_queue()
    queue.start()
    logger.info("Timeline service started")
    yield
    queue.stop()


app = FastAPI(title="Location Timeline", lifespan=lifespan)
app.include_router(router)


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
    )
