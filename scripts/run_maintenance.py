"""
CraftCtrl - Maintenance Sweep

Deletes expired sessions, temp sessions and password reset tokens.
Run it from cron; the API also runs one sweep at startup.

Usage:
    python -m scripts.run_maintenance
"""

from craftctrl.auth.database import get_engine, get_session_factory, init_db
from craftctrl.auth.store import CredentialStore
from craftctrl.config import settings
from craftctrl.logging import configure_logging, get_logger


logger = get_logger(__name__)


def run_maintenance() -> dict:
    """Run one sweep against the configured database."""
    engine = get_engine(settings.DATABASE_URL)
    try:
        init_db(engine)
        store = CredentialStore(get_session_factory(engine))
        removed = store.purge_expired()
        logger.info("maintenance_sweep", removed=removed)
        return removed
    finally:
        engine.dispose()


if __name__ == "__main__":
    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    run_maintenance()
