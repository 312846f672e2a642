"""
ECOF Delivery - Database Module
===============================
asyncpg pool and schema for the durable delivery store.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

import asyncpg
from asyncpg import Pool

from core.config import get_settings

logger = logging.getLogger(__name__)

# =============================================================================
# Database Pool
# =============================================================================

_pool: Pool | None = None


async def get_pool() -> Pool:
    """Get or create database connection pool"""
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = await asyncpg.create_pool(
            settings.DATABASE_URL,
            min_size=settings.DB_POOL_MIN,
            max_size=settings.DB_POOL_MAX,
            command_timeout=60,
        )
        logger.info("Database pool created")
    return _pool


async def close_pool():
    """Close database connection pool"""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


@asynccontextmanager
async def get_connection():
    """Get database connection from pool"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield conn


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def from_json(value: Any) -> Any:
    """asyncpg returns jsonb as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value if value is not None else {}


# =============================================================================
# Schema Initialization
# =============================================================================

SCHEMA_SQL = """
-- Event log: one gapless sequence per category
CREATE TABLE IF NOT EXISTS delivery_event_sequences (
    category VARCHAR(50) PRIMARY KEY,
    last_seq BIGINT NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS delivery_events (
    category VARCHAR(50) NOT NULL,
    seq BIGINT NOT NULL,
    event_type VARCHAR(20) NOT NULL,
    type_code VARCHAR(100) NOT NULL,
    subject_id VARCHAR(100) NOT NULL,
    payload JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (category, seq)
);

CREATE INDEX IF NOT EXISTS idx_delivery_events_type ON delivery_events(category, type_code, seq);

-- Webhook destinations, one per (organization, category)
CREATE TABLE IF NOT EXISTS delivery_destinations (
    id VARCHAR(36) PRIMARY KEY,
    org_id VARCHAR(36) NOT NULL,
    category VARCHAR(50) NOT NULL,
    endpoint TEXT NOT NULL,
    secret TEXT NOT NULL,
    cursor_seq BIGINT NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_error TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_delivered_at TIMESTAMPTZ,
    UNIQUE (org_id, category)
);

CREATE INDEX IF NOT EXISTS idx_delivery_destinations_due
    ON delivery_destinations(category, next_retry_at) WHERE is_active;

CREATE TABLE IF NOT EXISTS delivery_subscriptions (
    org_id VARCHAR(36) NOT NULL,
    category VARCHAR(50) NOT NULL,
    type_code VARCHAR(100) NOT NULL,
    is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (org_id, category, type_code)
);

-- Portal documents, ERP-facing columns only
CREATE TABLE IF NOT EXISTS erp_documents (
    id VARCHAR(36) PRIMARY KEY,
    type VARCHAR(100) NOT NULL,
    number VARCHAR(100) NOT NULL,
    date DATE NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    organization_name TEXT,
    counterparty_name TEXT,
    counterparty_inn VARCHAR(20),
    amount NUMERIC(18, 2),
    currency VARCHAR(3),
    data JSONB NOT NULL DEFAULT '{}',
    erp_ref VARCHAR(100),
    erp_status VARCHAR(20) NOT NULL DEFAULT 'None',
    portal_status VARCHAR(20) NOT NULL DEFAULT 'Draft',
    sent_to_erp_at TIMESTAMPTZ,
    erp_error_message TEXT
);

CREATE TABLE IF NOT EXISTS erp_references (
    kind VARCHAR(20) NOT NULL,
    id VARCHAR(36) NOT NULL,
    name TEXT,
    code VARCHAR(50),
    PRIMARY KEY (kind, id)
);

CREATE TABLE IF NOT EXISTS erp_queue (
    id VARCHAR(36) PRIMARY KEY,
    document_id VARCHAR(36) NOT NULL,
    operation_type VARCHAR(30) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    payload JSONB NOT NULL DEFAULT '{}',
    idempotency_key VARCHAR(200) NOT NULL,
    error_message TEXT,
    external_ref VARCHAR(100),
    next_retry_at TIMESTAMPTZ DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    processed_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_erp_queue_due ON erp_queue(status, next_retry_at, created_at);

-- Snapshot resync
CREATE TABLE IF NOT EXISTS resync_jobs (
    id VARCHAR(36) PRIMARY KEY,
    org_id VARCHAR(36) NOT NULL,
    category VARCHAR(50) NOT NULL,
    type_code VARCHAR(100) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    cursor_id VARCHAR(100),
    batch_size INTEGER NOT NULL DEFAULT 1000,
    failure_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TIMESTAMPTZ DEFAULT NOW(),
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_resync_jobs_due ON resync_jobs(status, next_retry_at);

CREATE TABLE IF NOT EXISTS snapshot_values (
    category VARCHAR(50) NOT NULL,
    type_code VARCHAR(100) NOT NULL,
    subject_id VARCHAR(100) NOT NULL,
    payload JSONB NOT NULL DEFAULT '{}',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (category, type_code, subject_id)
);
"""


async def init_schema():
    """Initialize database schema"""
    async with get_connection() as conn:
        await conn.execute(SCHEMA_SQL)
        logger.info("Database schema initialized")
