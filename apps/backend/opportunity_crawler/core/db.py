"""
PostgreSQL connection helper shared by the repository, cache and job store.
"""

import logging
import time

import psycopg2

logger = logging.getLogger(__name__)


def get_db_conn(db_url: str, retries: int = 3, timeout: int = 10):
    """Open a psycopg2 connection, retrying transient connection failures"""
    last_error = None
    for attempt in range(retries):
        try:
            return psycopg2.connect(dsn=db_url, connect_timeout=timeout)
        except psycopg2.OperationalError as e:
            last_error = e
            if attempt < retries - 1:
                wait_time = (attempt + 1) * 2
                logger.warning(
                    f"[db] Connection attempt {attempt + 1}/{retries} failed: {e}. Retrying in {wait_time}s..."
                )
                time.sleep(wait_time)
            else:
                logger.error(f"[db] Database connection failed after {retries} attempts: {e}")
    raise last_error
