"""Database setup, session management and engine settings using SQLAlchemy."""

import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///checkins.db")
DB_TIMEOUT_S = float(os.environ.get("DB_TIMEOUT_S", "10"))


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": DB_TIMEOUT_S}
    if url.startswith("postgresql"):
        # statement_timeout is in milliseconds
        return {
            "connect_timeout": int(DB_TIMEOUT_S),
            "options": f"-c statement_timeout={int(DB_TIMEOUT_S * 1000)}",
        }
    return {}


engine = create_engine(DATABASE_URL, connect_args=_connect_args(DATABASE_URL), pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables and seed the default engine settings."""
    import models  # noqa: F401

    logger.info("Initializing database at %s", DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    _seed_config()


# Engine defaults (must match the module-level constants in engine.py / schedules.py)
DEFAULT_SETTINGS = {
    "freshness_minutes": "30",
    "trigger_freshness_minutes": "60",
    "default_radius_m": "100",
    "tick_interval_minutes": "10",
    "timezone": "America/Campo_Grande",
}

_INT_SETTINGS = {
    "freshness_minutes",
    "trigger_freshness_minutes",
    "default_radius_m",
    "tick_interval_minutes",
}


def _seed_config():
    """Insert default settings if not present."""
    from models import Config

    db = SessionLocal()
    try:
        for key, value in DEFAULT_SETTINGS.items():
            if not db.query(Config).filter(Config.key == key).first():
                db.add(Config(key=key, value=value))
        db.commit()
    finally:
        db.close()


def get_settings(db) -> dict:
    """Read engine settings from the Config table, falling back to DEFAULT_SETTINGS."""
    from models import Config

    raw = dict(DEFAULT_SETTINGS)
    for row in db.query(Config).filter(Config.key.in_(DEFAULT_SETTINGS.keys())).all():
        raw[row.key] = row.value

    settings = {}
    for key, value in raw.items():
        if key in _INT_SETTINGS:
            try:
                settings[key] = int(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed setting %s=%r", key, value)
                settings[key] = int(DEFAULT_SETTINGS[key])
        else:
            settings[key] = value
    return settings
