"""PostgreSQL store for earthquake records and cluster definitions."""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Optional

import psycopg2
import psycopg2.extras

from quake_cache.models import MUTABLE_COLUMNS, ClusterDefinition, EarthquakeRecord
from quake_cache.significance import is_significant

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS earthquake_events (
        id           TEXT PRIMARY KEY,
        event_time   BIGINT NOT NULL,
        latitude     DOUBLE PRECISION NOT NULL,
        longitude    DOUBLE PRECISION NOT NULL,
        depth        DOUBLE PRECISION NOT NULL,
        magnitude    DOUBLE PRECISION NOT NULL,
        place        TEXT NOT NULL,
        detail_url   TEXT,
        raw_feature  TEXT,
        retrieved_at BIGINT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_earthquake_events_event_time ON earthquake_events (event_time DESC);
    CREATE INDEX IF NOT EXISTS idx_earthquake_events_retrieved_at ON earthquake_events (retrieved_at);

    CREATE TABLE IF NOT EXISTS cluster_definitions (
        id                 TEXT PRIMARY KEY,
        stable_key         TEXT UNIQUE,
        strongest_quake_id TEXT NOT NULL,
        earthquake_ids     TEXT NOT NULL,
        title              TEXT,
        location_name      TEXT,
        max_magnitude      DOUBLE PRECISION,
        quake_count        INTEGER NOT NULL DEFAULT 0,
        start_time         BIGINT,
        end_time           BIGINT,
        updated_at         BIGINT
    );
    CREATE INDEX IF NOT EXISTS idx_cluster_definitions_updated_at ON cluster_definitions (updated_at DESC);
"""

_UPDATE_SET = ",\n        ".join(f"{col} = EXCLUDED.{col}" for col in MUTABLE_COLUMNS)

UPSERT_SQL = f"""
    INSERT INTO earthquake_events (
        id, event_time, latitude, longitude, depth, magnitude,
        place, detail_url, raw_feature, retrieved_at
    ) VALUES (
        %(id)s, %(event_time)s, %(latitude)s, %(longitude)s, %(depth)s, %(magnitude)s,
        %(place)s, %(detail_url)s, %(raw_feature)s, %(retrieved_at)s
    )
    ON CONFLICT (id) DO UPDATE SET
        {_UPDATE_SET}
"""

_RECORD_COLUMNS = "id, event_time, latitude, longitude, depth, magnitude, place, detail_url, raw_feature, retrieved_at"


class EarthquakeStore:
    """Thin wrapper over a PostgreSQL database.

    Opens a connection per operation, so one instance can be shared by
    request threads and by worker threads running ``batch``.
    """

    def __init__(self, dsn: str):
        self.dsn = dsn

    def get_connection(self):
        return psycopg2.connect(self.dsn)

    def init_schema(self) -> None:
        """Create the tables if they don't exist."""
        with closing(self.get_connection()) as conn:
            with conn:
                with conn.cursor() as cur:
                    cur.execute(SCHEMA_SQL)

    def batch(self, rows: list[dict]) -> int:
        """Upsert rows in a single transaction.

        Either every row is written or, if any statement fails, none are and
        the exception propagates. Returns the number of rows sent.
        """
        if not rows:
            return 0
        with closing(self.get_connection()) as conn:
            with conn:
                with conn.cursor() as cur:
                    psycopg2.extras.execute_batch(cur, UPSERT_SQL, rows)
        return len(rows)

    def get_record(self, event_id: str) -> Optional[EarthquakeRecord]:
        with closing(self.get_connection()) as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {_RECORD_COLUMNS} FROM earthquake_events WHERE id = %s",
                    (event_id,),
                )
                row = cur.fetchone()
        return EarthquakeRecord.from_row(dict(row)) if row else None

    def query_records(
        self,
        since_ms: Optional[int] = None,
        min_magnitude: Optional[float] = None,
        max_magnitude: Optional[float] = None,
        min_depth: Optional[float] = None,
        max_depth: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[EarthquakeRecord]:
        """Stored records, newest first, filtered by the given bounds."""
        query = f"SELECT {_RECORD_COLUMNS} FROM earthquake_events WHERE TRUE"
        params: list = []

        for clause, value in (
            ("event_time >= %s", since_ms),
            ("magnitude >= %s", min_magnitude),
            ("magnitude <= %s", max_magnitude),
            ("depth >= %s", min_depth),
            ("depth <= %s", max_depth),
        ):
            if value is not None:
                query += f" AND {clause}"
                params.append(value)

        query += " ORDER BY event_time DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        with closing(self.get_connection()) as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, params)
                return [EarthquakeRecord.from_row(dict(row)) for row in cur.fetchall()]

    def list_significant(self, since_ms: Optional[int] = None) -> list[EarthquakeRecord]:
        """Stored records passing the significance rules, newest first."""
        return [r for r in self.query_records(since_ms=since_ms) if is_significant(r)]

    def list_cluster_definitions(self, limit: int = 100) -> list[ClusterDefinition]:
        with closing(self.get_connection()) as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(
                    "SELECT * FROM cluster_definitions ORDER BY updated_at DESC NULLS LAST LIMIT %s",
                    (limit,),
                )
                return [ClusterDefinition.from_row(dict(row)) for row in cur.fetchall()]

    def get_cluster_definition(self, cluster_id: str) -> Optional[ClusterDefinition]:
        with closing(self.get_connection()) as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(
                    "SELECT * FROM cluster_definitions WHERE id = %s OR stable_key = %s",
                    (cluster_id, cluster_id),
                )
                row = cur.fetchone()
        return ClusterDefinition.from_row(dict(row)) if row else None


def store_from_dsn(dsn: Optional[str]) -> Optional[EarthquakeStore]:
    """Build a store, or None when no database is configured."""
    if not dsn:
        logger.warning("DATABASE_URL not set, persistence disabled")
        return None
    return EarthquakeStore(dsn)
