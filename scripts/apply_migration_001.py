#!/usr/bin/env python3
"""Apply migration 001: job queue tables and pipeline-owned bookmark columns."""
import asyncio
import asyncpg
import os

MIGRATION = """
CREATE TABLE IF NOT EXISTS jobs (
    queue TEXT NOT NULL CHECK (queue IN ('snapshot', 'index', 'maintenance')),
    id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'waiting'
        CHECK (status IN ('waiting', 'active', 'completed', 'failed')),
    payload JSONB NOT NULL,
    priority INTEGER NOT NULL DEFAULT 5,
    attempt INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    run_after TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    locked_at TIMESTAMPTZ,
    locked_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    result JSONB,
    last_error TEXT,
    PRIMARY KEY (queue, id)
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim
    ON jobs(queue, priority, created_at) WHERE status = 'waiting';
CREATE INDEX IF NOT EXISTS idx_jobs_active_locked
    ON jobs(locked_at) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS idx_jobs_finished
    ON jobs(status, completed_at) WHERE status IN ('completed', 'failed');

CREATE TABLE IF NOT EXISTS job_queue_rate (
    queue TEXT PRIMARY KEY,
    window_start TIMESTAMPTZ NOT NULL,
    used INTEGER NOT NULL DEFAULT 0
);

ALTER TABLE bookmarks ADD COLUMN IF NOT EXISTS content_snapshot_path TEXT;
ALTER TABLE bookmarks ADD COLUMN IF NOT EXISTS cover_url TEXT;
ALTER TABLE bookmarks ADD COLUMN IF NOT EXISTS content_indexed BOOLEAN NOT NULL DEFAULT FALSE;
ALTER TABLE bookmarks ADD COLUMN IF NOT EXISTS is_duplicate BOOLEAN NOT NULL DEFAULT FALSE;
ALTER TABLE bookmarks ADD COLUMN IF NOT EXISTS is_broken BOOLEAN NOT NULL DEFAULT FALSE;
"""

async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(MIGRATION)
        print("Migration 001 applied: jobs, job_queue_rate, bookmark pipeline columns")

        # Verify
        count = await conn.fetchval(
            "SELECT COUNT(*) FROM information_schema.columns WHERE table_name = 'jobs'"
        )
        print(f"jobs table has {count} columns")
    finally:
        await conn.close()

if __name__ == "__main__":
    asyncio.run(main())
