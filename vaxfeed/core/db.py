"""Postgres-backed location registry."""

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence

from psycopg2 import extras, pool

from vaxfeed.core.config import get_settings
from vaxfeed.core.registry import is_uuid
from vaxfeed.models import Availability, Location

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS locations (
    id UUID PRIMARY KEY,
    provider TEXT,
    state TEXT,
    record JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS locations_provider_state_idx ON locations (provider, state);
CREATE TABLE IF NOT EXISTS availability_log (
    id BIGSERIAL PRIMARY KEY,
    location_id UUID NOT NULL REFERENCES locations (id),
    source TEXT NOT NULL,
    checked_at TIMESTAMPTZ NOT NULL,
    record JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS availability_log_location_idx ON availability_log (location_id, checked_at);
"""


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.ThreadedConnectionPool:
    """Initialise and return the shared connection pool.

    Connections are taken from worker threads (``asyncio.to_thread`` in the
    feed job, request threads in the server), so the pool is thread-safe.
    """
    global _connection_pool
    with _pool_lock:
        if _connection_pool is None:
            settings = get_settings()
            if not settings.database_url:
                raise RuntimeError("DATABASE_URL is required for database connections")
            _connection_pool = pool.ThreadedConnectionPool(
                minconn,
                maxconn,
                dsn=settings.database_url,
                connect_timeout=10,
            )
            logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


def init_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()
    logger.info("Database schema ensured")


_UPSERT_LOCATION = """
INSERT INTO locations (id, provider, state, record, updated_at)
VALUES (%(id)s, %(provider)s, %(state)s, %(record)s, NOW())
ON CONFLICT (id) DO UPDATE SET
    provider = EXCLUDED.provider,
    state = EXCLUDED.state,
    record = EXCLUDED.record,
    updated_at = NOW();
"""

_INSERT_AVAILABILITY = """
INSERT INTO availability_log (location_id, source, checked_at, record)
VALUES (%(location_id)s, %(source)s, %(checked_at)s, %(record)s);
"""

_SELECT_LOCATION = "SELECT record FROM locations WHERE id = %(id)s;"

_SELECT_LOCATIONS = """
SELECT record FROM locations
WHERE (%(provider)s IS NULL OR provider = %(provider)s)
  AND (%(state)s IS NULL OR state = %(state)s)
ORDER BY created_at, id;
"""

_SELECT_LOCATIONS_BY_EXTERNAL_ID = """
SELECT record FROM locations
WHERE (%(provider)s IS NULL OR provider = %(provider)s)
  AND (%(state)s IS NULL OR state = %(state)s)
  AND EXISTS (
      SELECT 1 FROM jsonb_array_elements(record->'external_ids') AS external_id
      WHERE (external_id->>0) || ':' || (external_id->>1) = ANY(%(keys)s)
  )
ORDER BY created_at, id;
"""

_SELECT_LATEST_AVAILABILITY = """
SELECT record FROM availability_log
WHERE location_id = %(location_id)s
ORDER BY checked_at DESC, id DESC
LIMIT 1;
"""


def _prepare_location_params(location: Location) -> Dict[str, Any]:
    # Availability lives in its own table, not on the location row.
    record = location.to_dict()
    record.pop("availability", None)
    return {
        "id": location.id,
        "provider": location.provider,
        "state": (location.state or "").upper() or None,
        "record": extras.Json(record),
    }


def _load_location(row: Any) -> Location:
    record = row[0]
    return Location.from_dict(record)


class PostgresRegistry:
    """Location registry stored in the ``locations`` and ``availability_log`` tables."""

    def get_location(self, location_id: str) -> Optional[Location]:
        if not is_uuid(location_id):
            return None
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_SELECT_LOCATION, {"id": location_id})
                row = cur.fetchone()
        return _load_location(row) if row else None

    def list_locations(self, provider: Optional[str] = None, state: Optional[str] = None) -> List[Location]:
        params = {"provider": provider, "state": state.upper() if state else None}
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_SELECT_LOCATIONS, params)
                rows = cur.fetchall()
        return [_load_location(row) for row in rows]

    def find_by_external_ids(
        self, keys: Sequence[str], provider: Optional[str] = None, state: Optional[str] = None
    ) -> List[Location]:
        if not keys:
            return []
        params = {"provider": provider, "state": state.upper() if state else None, "keys": list(keys)}
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_SELECT_LOCATIONS_BY_EXTERNAL_ID, params)
                rows = cur.fetchall()
        return [_load_location(row) for row in rows]

    def upsert_location(self, location: Location) -> Location:
        """Persist a location, assigning it a new id if it doesn't have one yet."""
        if not location.id:
            location.id = str(uuid.uuid4())
        params = _prepare_location_params(location)
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_UPSERT_LOCATION, params)
            conn.commit()
        logger.debug("Upserted location %s (%s)", location.id, location.name)
        return location

    def add_availability(self, location_id: str, availability: Availability) -> None:
        params = {
            "location_id": location_id,
            "source": availability.source,
            "checked_at": availability.checked_at,
            "record": extras.Json(availability.to_dict()),
        }
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_INSERT_AVAILABILITY, params)
            conn.commit()

    def latest_availability(self, location_id: str) -> Optional[Availability]:
        if not is_uuid(location_id):
            return None
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_SELECT_LATEST_AVAILABILITY, {"location_id": location_id})
                row = cur.fetchone()
        return Availability.from_dict(row[0]) if row else None
