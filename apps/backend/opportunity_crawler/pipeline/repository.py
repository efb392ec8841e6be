"""
PostgreSQL persistence for crawl sources, drafts and published opportunities.

psycopg2 is blocking, so every public method runs its query in a worker
thread via asyncio.to_thread. Rows come back as dicts (RealDictCursor) with
snake_case keys.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from psycopg2.extras import Json, RealDictCursor

from opportunity_crawler.core.db import get_db_conn

logger = logging.getLogger(__name__)

DRAFT_COLUMNS = [
    "title", "organization", "description", "requirements", "benefits",
    "compensation", "compensation_type", "locations", "is_remote", "deadline",
    "application_url", "contact_email", "experience_level", "duration",
    "eligibility", "crawl_source_id", "source_url", "status",
    "is_details_crawled", "raw_scraped_data", "raw_data",
]

OPPORTUNITY_COLUMNS = [
    "title", "organization", "description", "requirements", "benefits",
    "compensation", "compensation_type", "locations", "is_remote", "deadline",
    "application_url", "contact_email", "experience_level", "duration",
    "eligibility", "opportunity_type_ids", "ai_draft_id",
]

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS crawl_sources (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    frequency TEXT NOT NULL DEFAULT 'WEEKLY',
    scraper_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'INACTIVE',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    is_details_crawled BOOLEAN NOT NULL DEFAULT FALSE,
    last_crawled_at TIMESTAMPTZ,
    next_crawl_at TIMESTAMPTZ,
    opportunities_found INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS ai_drafts (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    title TEXT NOT NULL,
    organization TEXT NOT NULL,
    description TEXT NOT NULL,
    requirements JSONB NOT NULL DEFAULT '[]'::jsonb,
    benefits JSONB NOT NULL DEFAULT '[]'::jsonb,
    compensation TEXT,
    compensation_type TEXT,
    locations JSONB NOT NULL DEFAULT '[]'::jsonb,
    is_remote BOOLEAN NOT NULL DEFAULT FALSE,
    deadline TIMESTAMPTZ NOT NULL,
    application_url TEXT,
    contact_email TEXT,
    experience_level TEXT,
    duration TEXT,
    eligibility JSONB NOT NULL DEFAULT '[]'::jsonb,
    crawl_source_id TEXT NOT NULL REFERENCES crawl_sources(id) ON DELETE CASCADE,
    source_url TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    is_details_crawled BOOLEAN NOT NULL DEFAULT FALSE,
    raw_scraped_data JSONB,
    raw_data TEXT,
    opportunity_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_ai_drafts_source
    ON ai_drafts (source_url, crawl_source_id);

CREATE TABLE IF NOT EXISTS opportunity_types (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS opportunities (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    title TEXT NOT NULL,
    organization TEXT NOT NULL,
    description TEXT NOT NULL,
    requirements JSONB NOT NULL DEFAULT '[]'::jsonb,
    benefits JSONB NOT NULL DEFAULT '[]'::jsonb,
    compensation TEXT,
    compensation_type TEXT,
    locations JSONB NOT NULL DEFAULT '[]'::jsonb,
    is_remote BOOLEAN NOT NULL DEFAULT FALSE,
    deadline TIMESTAMPTZ,
    application_url TEXT,
    contact_email TEXT,
    experience_level TEXT,
    duration TEXT,
    eligibility JSONB NOT NULL DEFAULT '[]'::jsonb,
    opportunity_type_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
    ai_draft_id TEXT REFERENCES ai_drafts(id),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def _adapt(value):
    if isinstance(value, (list, dict)):
        return Json(value)
    return value


class PostgresRepository:
    """Crawl source, draft and opportunity persistence"""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict]:
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                conn.commit()
                return dict(row) if row else None
        finally:
            conn.close()

    def _fetchall(self, sql: str, params: tuple = ()) -> List[Dict]:
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return [dict(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                affected = cur.rowcount
                conn.commit()
                return affected
        finally:
            conn.close()

    async def ensure_schema(self):
        await asyncio.to_thread(self._execute, SCHEMA_SQL)
        logger.info("[repository] Schema ensured")

    # Crawl sources

    async def get_source(self, source_id: str) -> Optional[Dict]:
        return await asyncio.to_thread(
            self._fetchone, "SELECT * FROM crawl_sources WHERE id = %s", (source_id,)
        )

    async def list_due_sources(self, now: datetime) -> List[Dict]:
        """Active sources whose next crawl time has passed and no crawl is running"""
        return await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM crawl_sources
            WHERE is_active = TRUE
            AND status <> 'ACTIVE'
            AND (next_crawl_at IS NULL OR next_crawl_at <= %s)
            ORDER BY next_crawl_at NULLS FIRST
            """,
            (now,),
        )

    async def mark_source_active(self, source_id: str, now: datetime):
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE crawl_sources
            SET status = 'ACTIVE', error_message = NULL, last_crawled_at = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (now, source_id),
        )

    async def mark_source_success(self, source_id: str, found: int, next_crawl_at: datetime, now: datetime):
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE crawl_sources
            SET status = 'INACTIVE',
                opportunities_found = COALESCE(opportunities_found, 0) + %s,
                next_crawl_at = %s,
                last_crawled_at = %s,
                updated_at = NOW()
            WHERE id = %s
            """,
            (found, next_crawl_at, now, source_id),
        )

    async def mark_source_error(self, source_id: str, message: str):
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE crawl_sources
            SET status = 'ERROR', error_message = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (message, source_id),
        )

    async def set_next_crawl_at(self, source_id: str, next_crawl_at: datetime):
        await asyncio.to_thread(
            self._execute,
            "UPDATE crawl_sources SET next_crawl_at = %s, updated_at = NOW() WHERE id = %s",
            (next_crawl_at, source_id),
        )

    # Drafts

    async def find_draft(self, source_url: str, crawl_source_id: str) -> Optional[Dict]:
        return await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM ai_drafts WHERE source_url = %s AND crawl_source_id = %s",
            (source_url, crawl_source_id),
        )

    async def create_draft_if_absent(self, draft: Dict) -> bool:
        """Insert a draft unless (source_url, crawl_source_id) already exists"""
        columns = ", ".join(DRAFT_COLUMNS)
        placeholders = ", ".join(["%s"] * len(DRAFT_COLUMNS))
        values = tuple(_adapt(draft.get(column)) for column in DRAFT_COLUMNS)
        inserted = await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO ai_drafts ({columns})
            VALUES ({placeholders})
            ON CONFLICT (source_url, crawl_source_id) DO NOTHING
            """,
            values,
        )
        return inserted == 1

    async def get_draft(self, draft_id: str) -> Optional[Dict]:
        return await asyncio.to_thread(
            self._fetchone, "SELECT * FROM ai_drafts WHERE id = %s", (draft_id,)
        )

    # Opportunities

    async def find_opportunity_type_id(self, name: str) -> Optional[str]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT id FROM opportunity_types WHERE name = %s", (name,)
        )
        return row["id"] if row else None

    def _publish_draft(self, draft_id: str, data: Dict) -> Optional[str]:
        columns = ", ".join(OPPORTUNITY_COLUMNS)
        placeholders = ", ".join(["%s"] * len(OPPORTUNITY_COLUMNS))
        values = tuple(_adapt(data.get(column)) for column in OPPORTUNITY_COLUMNS)

        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    UPDATE ai_drafts SET status = 'PUBLISHED', updated_at = NOW()
                    WHERE id = %s AND status = 'APPROVED' AND opportunity_id IS NULL
                    RETURNING id
                """, (draft_id,))
                if cur.fetchone() is None:
                    conn.rollback()
                    return None

                cur.execute(
                    f"INSERT INTO opportunities ({columns}) VALUES ({placeholders}) RETURNING id",
                    values,
                )
                opportunity_id = cur.fetchone()["id"]
                cur.execute(
                    "UPDATE ai_drafts SET opportunity_id = %s WHERE id = %s",
                    (opportunity_id, draft_id),
                )
                conn.commit()
                return opportunity_id
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    async def publish_draft(self, draft_id: str, data: Dict) -> Optional[str]:
        """
        Create the opportunity and mark the draft PUBLISHED in one transaction.

        Returns None when the draft is no longer APPROVED and unpublished.
        """
        return await asyncio.to_thread(self._publish_draft, draft_id, data)
