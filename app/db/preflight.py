"""
Startup check that the workflow database is reachable.

Runs before the schema check in init_db so a misconfigured deployment fails
with a readable log line instead of a stack trace from the first request.
"""
import time

from sqlalchemy import text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError

from app.core.logging import get_logger

logger = get_logger("db_preflight")


class DatabaseUnavailable(RuntimeError):
    """The database could not be reached during startup."""


def _describe(engine: Engine) -> str:
    url = make_url(str(engine.url))
    return url.render_as_string(hide_password=True)


def run_db_preflight(engine: Engine, retries: int = 5, delay: float = 2.0) -> None:
    """
    Ping the database, retrying while it comes up.

    Authentication failures are not retried: credentials will not fix
    themselves between attempts.
    """
    if engine.dialect.name == "sqlite":
        logger.info("SQLite database configured; skipping connectivity preflight")
        return

    target = _describe(engine)
    logger.info(f"Running DB preflight against {target}")

    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")
            return
        except OperationalError as e:
            message = str(e.orig) if e.orig is not None else str(e)
            if "password authentication failed" in message.lower():
                logger.error(f"Database rejected the configured credentials for {target}")
                raise DatabaseUnavailable("Database authentication failed; check POSTGRES_* settings") from e
            if attempt == retries:
                logger.error(f"Could not reach {target} after {retries} attempts: {message}")
                raise DatabaseUnavailable(f"Database unreachable after {retries} attempts") from e
            logger.warning(f"Preflight attempt {attempt}/{retries} failed: {message}; retrying in {delay}s")
            time.sleep(delay)
