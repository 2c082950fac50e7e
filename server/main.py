"""Entry point: starts the NiceGUI server with the REST API mounted and the check-in engine ticking."""

import logging
import logging.handlers
import os

from nicegui import app, ui

from api import router
from database import SessionLocal, init_db
from engine import CheckinEngine

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
LOG_FILE = os.path.join(LOG_DIR, "checkin-engine.log")

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
logger = logging.getLogger("checkinengine")

# Quiet noisy libraries
logging.getLogger("watchfiles").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)

ENGINE_ENABLED = os.environ.get("ENGINE_ENABLED", "1") not in ("0", "false", "no")

checkin_engine = CheckinEngine(SessionLocal)

# Mount FastAPI REST endpoints
app.include_router(router)
app.state.checkin_engine = checkin_engine

# Initialize the database tables on startup, then start ticking
app.on_startup(init_db)
if ENGINE_ENABLED:
    app.on_startup(checkin_engine.start)
    app.on_shutdown(checkin_engine.stop)
else:
    logger.info("Automatic check-in engine disabled (ENGINE_ENABLED=0)")

ui.run(
    title="Check-in Engine",
    port=int(os.environ.get("PORT", "8080")),
    show=False,
    reload=False,
)
