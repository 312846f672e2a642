"""
ECOF Delivery - PostgreSQL Store
================================
asyncpg implementations of the storage contracts.

Claims are a single CTE (`SELECT ... FOR UPDATE SKIP LOCKED`) feeding an
`UPDATE ... RETURNING`, so concurrent workers never receive the same row
and never wait on each other.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from asyncpg import Connection, Pool, Record

from core.errors import LocalStoreError, NotFoundError
from ecof.db import from_json, to_json

from .models import (
    Destination,
    ErpDocument,
    ErpResult,
    ErpStatus,
    Event,
    EventType,
    PortalStatus,
    QueueItem,
    QueueStatus,
    ResyncJob,
    ResyncStatus,
    SnapshotValue,
)
from .registry import BackoffPolicy


def _destination(row: Record) -> Destination:
    return Destination(
        id=row["id"],
        org_id=row["org_id"],
        category=row["category"],
        endpoint=row["endpoint"],
        secret=row["secret"],
        cursor=row["cursor_seq"],
        failure_count=row["failure_count"],
        next_retry_at=row["next_retry_at"],
        last_error=row["last_error"],
        is_active=row["is_active"],
        updated_at=row["updated_at"],
        last_delivered_at=row["last_delivered_at"],
    )


def _queue_item(row: Record) -> QueueItem:
    return QueueItem(
        id=row["id"],
        document_id=row["document_id"],
        operation_type=row["operation_type"],
        status=row["status"],
        retry_count=row["retry_count"],
        payload=from_json(row["payload"]),
        idempotency_key=row["idempotency_key"],
        error_message=row["error_message"],
        external_ref=row["external_ref"],
        next_retry_at=row["next_retry_at"],
        created_at=row["created_at"],
        processed_at=row["processed_at"],
        completed_at=row["completed_at"],
    )


def _resync_job(row: Record) -> ResyncJob:
    return ResyncJob(
        id=row["id"],
        org_id=row["org_id"],
        category=row["category"],
        type_code=row["type_code"],
        status=row["status"],
        cursor=row["cursor_id"],
        batch_size=row["batch_size"],
        failure_count=row["failure_count"],
        next_retry_at=row["next_retry_at"],
        last_error=row["last_error"],
        created_at=row["created_at"],
    )


# =============================================================================
# Event log
# =============================================================================


class PgEventLog:
    def __init__(self, pool: Pool):
        self.pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def _append(self, conn, category, type_code, subject_id, payload, event_type) -> int:
        seq = await conn.fetchval(
            """
            INSERT INTO delivery_event_sequences (category, last_seq)
            VALUES ($1, 1)
            ON CONFLICT (category) DO UPDATE
                SET last_seq = delivery_event_sequences.last_seq + 1
            RETURNING last_seq
            """,
            category,
        )
        await conn.execute(
            """
            INSERT INTO delivery_events (category, seq, event_type, type_code, subject_id, payload)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            """,
            category,
            seq,
            event_type,
            type_code,
            str(subject_id),
            to_json(payload),
        )
        return seq

    async def append(
        self,
        category: str,
        type_code: str,
        subject_id: str,
        payload: dict[str, Any],
        event_type: str = EventType.UPSERT.value,
        conn=None,
    ) -> int:
        """
        Append inside the caller's transaction when `conn` is given.

        The counter row stays locked until that transaction ends, so
        sequences commit in order and a rollback leaves no gap.
        """
        if conn is not None:
            return await self._append(conn, category, type_code, subject_id, payload, event_type)
        async with self.pool.acquire() as own_conn:
            async with own_conn.transaction():
                return await self._append(own_conn, category, type_code, subject_id, payload, event_type)

    async def read_after(self, category: str, selector: str, cursor: int, limit: int) -> list[Event]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT e.seq, e.category, e.event_type, e.type_code, e.subject_id, e.payload, e.created_at
                    FROM delivery_events e
                    JOIN delivery_subscriptions s
                      ON s.org_id = $2
                     AND s.category = e.category
                     AND s.type_code = e.type_code
                     AND s.is_enabled
                    WHERE e.category = $1
                      AND e.seq > $3
                    ORDER BY e.seq ASC
                    LIMIT $4
                    """,
                    category,
                    selector,
                    cursor,
                    limit,
                )
        except Exception as e:
            raise LocalStoreError(f"Could not read {category} events: {e}", operation="read_after")

        return [
            Event(
                sequence=row["seq"],
                category=row["category"],
                event_type=row["event_type"],
                type_code=row["type_code"],
                subject_id=row["subject_id"],
                payload=from_json(row["payload"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def last_sequence(self, category: str) -> int:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval("SELECT last_seq FROM delivery_event_sequences WHERE category = $1", category)
            return value or 0


# =============================================================================
# Destination registry
# =============================================================================


class PgDestinationRegistry:
    def __init__(self, pool: Pool, backoff: BackoffPolicy | None = None):
        self.pool = pool
        self.backoff = backoff or BackoffPolicy()

    async def claim_due(self, category: str, limit: int, lease_seconds: float) -> list[Destination]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                WITH picked AS (
                    SELECT id
                    FROM delivery_destinations
                    WHERE category = $1
                      AND is_active = true
                      AND next_retry_at <= NOW()
                    ORDER BY updated_at ASC
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE delivery_destinations d
                SET next_retry_at = NOW() + make_interval(secs => $3)
                FROM picked
                WHERE d.id = picked.id
                RETURNING d.*
                """,
                category,
                limit,
                float(lease_seconds),
            )
            return [_destination(row) for row in rows]

    async def record_success(self, destination_id: str, new_cursor: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE delivery_destinations
                SET cursor_seq = GREATEST(cursor_seq, $2),
                    failure_count = 0,
                    last_error = NULL,
                    next_retry_at = NOW(),
                    updated_at = NOW(),
                    last_delivered_at = NOW()
                WHERE id = $1
                """,
                destination_id,
                new_cursor,
            )

    async def record_failure(self, destination_id: str, error: str) -> Destination | None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                failures = await conn.fetchval(
                    "SELECT failure_count FROM delivery_destinations WHERE id = $1 FOR UPDATE",
                    destination_id,
                )
                if failures is None:
                    return None
                failures += 1
                row = await conn.fetchrow(
                    """
                    UPDATE delivery_destinations
                    SET failure_count = $2,
                        last_error = $3,
                        next_retry_at = NOW() + make_interval(secs => $4),
                        updated_at = NOW()
                    WHERE id = $1
                    RETURNING *
                    """,
                    destination_id,
                    failures,
                    (error or "")[:1000],
                    self.backoff.delay_seconds(failures),
                )
                return _destination(row)

    async def release(self, destination_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE delivery_destinations SET next_retry_at = NOW(), updated_at = NOW() WHERE id = $1",
                destination_id,
            )

    async def get_destination(self, destination_id: str) -> Destination | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM delivery_destinations WHERE id = $1", destination_id)
            return _destination(row) if row else None

    async def list_destinations(self, category: str | None = None) -> list[Destination]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM delivery_destinations
                WHERE ($1::text IS NULL OR category = $1)
                ORDER BY category, org_id
                """,
                category,
            )
            return [_destination(row) for row in rows]

    async def upsert_destination(
        self,
        org_id: str,
        category: str,
        endpoint: str,
        secret: str,
        is_active: bool = True,
    ) -> Destination:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO delivery_destinations (id, org_id, category, endpoint, secret, is_active)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (org_id, category) DO UPDATE
                    SET endpoint = EXCLUDED.endpoint,
                        secret = EXCLUDED.secret,
                        is_active = EXCLUDED.is_active,
                        updated_at = NOW()
                RETURNING *
                """,
                str(uuid.uuid4()),
                org_id,
                category,
                endpoint,
                secret,
                is_active,
            )
            return _destination(row)

    async def set_active(self, destination_id: str, is_active: bool) -> None:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE delivery_destinations SET is_active = $2, updated_at = NOW() WHERE id = $1",
                destination_id,
                is_active,
            )
            if result.endswith(" 0"):
                raise NotFoundError("Destination", destination_id)

    async def set_subscription(self, org_id: str, category: str, type_code: str, enabled: bool) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO delivery_subscriptions (org_id, category, type_code, is_enabled)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (org_id, category, type_code) DO UPDATE
                    SET is_enabled = EXCLUDED.is_enabled, updated_at = NOW()
                """,
                org_id,
                category,
                type_code,
                enabled,
            )

    async def is_subscribed(self, org_id: str, category: str, type_code: str) -> bool:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(
                """
                SELECT 1 FROM delivery_subscriptions
                WHERE org_id = $1 AND category = $2 AND type_code = $3 AND is_enabled = true
                """,
                org_id,
                category,
                type_code,
            )
            return value is not None


# =============================================================================
# ERP queue and documents
# =============================================================================


class PgErpQueueStore:
    def __init__(self, pool: Pool, backoff: BackoffPolicy | None = None, max_attempts: int = 5):
        self.pool = pool
        self.backoff = backoff or BackoffPolicy()
        self.max_attempts = max_attempts

    async def insert_item(
        self,
        document_id: str,
        operation_type: str,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> QueueItem:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO erp_queue (id, document_id, operation_type, status, payload, idempotency_key)
                VALUES ($1, $2, $3, 'pending', $4::jsonb, $5)
                RETURNING *
                """,
                str(uuid.uuid4()),
                document_id,
                operation_type,
                to_json(payload),
                idempotency_key,
            )
            return _queue_item(row)

    async def claim_due(self, limit: int, lease_seconds: float) -> list[QueueItem]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                WITH picked AS (
                    SELECT id
                    FROM erp_queue
                    WHERE status IN ('pending', 'processing')
                      AND next_retry_at <= NOW()
                    ORDER BY created_at ASC
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE erp_queue q
                SET status = 'processing',
                    processed_at = NOW(),
                    next_retry_at = NOW() + make_interval(secs => $2)
                FROM picked
                WHERE q.id = picked.id
                RETURNING q.*
                """,
                limit,
                float(lease_seconds),
            )
            return [_queue_item(row) for row in rows]

    async def complete_item(self, item_id: str, external_ref: str | None, document_id: str, result: ErpResult) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                completed = await conn.execute(
                    """
                    UPDATE erp_queue
                    SET status = 'completed', external_ref = $2, error_message = NULL,
                        next_retry_at = NULL, completed_at = NOW()
                    WHERE id = $1
                    """,
                    item_id,
                    external_ref,
                )
                if completed.endswith(" 0"):
                    raise NotFoundError("Queue item", item_id)
                updated = await conn.execute(
                    """
                    UPDATE erp_documents
                    SET erp_ref = COALESCE($2, erp_ref),
                        erp_status = COALESCE($3, erp_status),
                        portal_status = CASE WHEN $4 THEN $5 ELSE portal_status END,
                        sent_to_erp_at = CASE WHEN $4 THEN NOW() ELSE sent_to_erp_at END,
                        erp_error_message = CASE WHEN $4 THEN NULL ELSE erp_error_message END
                    WHERE id = $1
                    """,
                    document_id,
                    result.erp_ref,
                    result.erp_status,
                    result.sent,
                    PortalStatus.SENT_TO_ERP.value,
                )
                return not updated.endswith(" 0")

    async def record_item_failure(self, item_id: str, error: str, permanent: bool = False) -> QueueItem | None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                retries = await conn.fetchval(
                    "SELECT retry_count FROM erp_queue WHERE id = $1 AND status = 'processing' FOR UPDATE",
                    item_id,
                )
                if retries is None:
                    return None
                retries += 1
                exhausted = permanent or retries >= self.max_attempts
                row = await conn.fetchrow(
                    """
                    UPDATE erp_queue
                    SET retry_count = $2,
                        error_message = $3,
                        status = $4,
                        next_retry_at = CASE WHEN $5 THEN NULL ELSE NOW() + make_interval(secs => $6) END
                    WHERE id = $1
                    RETURNING *
                    """,
                    item_id,
                    retries,
                    (error or "")[:1000],
                    QueueStatus.FAILED.value if exhausted else QueueStatus.PENDING.value,
                    exhausted,
                    self.backoff.delay_seconds(retries),
                )
                return _queue_item(row)

    async def release(self, item_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE erp_queue SET status = 'pending', next_retry_at = NOW() WHERE id = $1 AND status = 'processing'",
                item_id,
            )

    async def reset_item(self, item_id: str) -> QueueItem | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE erp_queue
                SET status = 'pending', retry_count = 0, error_message = NULL, next_retry_at = NOW()
                WHERE id = $1
                RETURNING *
                """,
                item_id,
            )
            return _queue_item(row) if row else None

    async def get_item(self, item_id: str) -> QueueItem | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM erp_queue WHERE id = $1", item_id)
            return _queue_item(row) if row else None

    async def list_items(self, status: str | None = None, limit: int = 50) -> list[QueueItem]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM erp_queue
                WHERE ($1::text IS NULL OR status = $1)
                ORDER BY created_at DESC
                LIMIT $2
                """,
                status,
                limit,
            )
            return [_queue_item(row) for row in rows]

    async def stats(self) -> dict[str, int]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT status, COUNT(*) AS count FROM erp_queue GROUP BY status")
            return {row["status"]: row["count"] for row in rows}


class PgDocumentStore:
    def __init__(self, pool: Pool):
        self.pool = pool

    async def get_document(self, document_id: str) -> ErpDocument | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM erp_documents WHERE id = $1", document_id)
        if not row:
            return None
        return ErpDocument(
            id=row["id"],
            type=row["type"],
            number=row["number"],
            date=row["date"],
            version=row["version"],
            organization_name=row["organization_name"],
            counterparty_name=row["counterparty_name"],
            counterparty_inn=row["counterparty_inn"],
            amount=float(row["amount"]) if row["amount"] is not None else None,
            currency=row["currency"],
            data=from_json(row["data"]),
            erp_ref=row["erp_ref"],
            erp_status=row["erp_status"],
            portal_status=row["portal_status"],
            sent_to_erp_at=row["sent_to_erp_at"],
            erp_error_message=row["erp_error_message"],
        )

    async def lookup_reference(self, kind: str, ref_id: str) -> dict[str, Any] | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT name, code FROM erp_references WHERE kind = $1 AND id = $2", kind, ref_id)
            return dict(row) if row else None

    async def mark_queued(self, document_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE erp_documents SET portal_status = $2 WHERE id = $1",
                document_id,
                PortalStatus.QUEUED_TO_ERP.value,
            )

    async def record_erp_error(self, document_id: str, message: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE erp_documents SET erp_status = $2, erp_error_message = $3 WHERE id = $1",
                document_id,
                ErpStatus.ERROR.value,
                (message or "")[:1000],
            )


# =============================================================================
# Resync jobs
# =============================================================================


class PgResyncJobStore:
    def __init__(self, pool: Pool, backoff: BackoffPolicy | None = None):
        self.pool = pool
        self.backoff = backoff or BackoffPolicy(base_seconds=60.0)

    async def create_job(self, org_id: str, category: str, type_code: str, batch_size: int = 1000) -> ResyncJob:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO resync_jobs (id, org_id, category, type_code, batch_size)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                str(uuid.uuid4()),
                org_id,
                category,
                type_code,
                batch_size,
            )
            return _resync_job(row)

    async def claim_due(self, limit: int, lease_seconds: float) -> list[ResyncJob]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                WITH picked AS (
                    SELECT id
                    FROM resync_jobs
                    WHERE status IN ('pending', 'processing')
                      AND next_retry_at <= NOW()
                    ORDER BY created_at ASC
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE resync_jobs j
                SET status = 'processing',
                    next_retry_at = NOW() + make_interval(secs => $2)
                FROM picked
                WHERE j.id = picked.id
                RETURNING j.*
                """,
                limit,
                float(lease_seconds),
            )
            return [_resync_job(row) for row in rows]

    async def _execute(self, conn: Connection | None, query: str, *args) -> str:
        if conn is not None:
            return await conn.execute(query, *args)
        async with self.pool.acquire() as own_conn:
            return await own_conn.execute(query, *args)

    async def advance(self, job_id: str, cursor: str, conn: Connection | None = None) -> None:
        await self._execute(
            conn,
            """
            UPDATE resync_jobs
            SET cursor_id = $2, failure_count = 0, last_error = NULL,
                status = 'pending', next_retry_at = NOW()
            WHERE id = $1
            """,
            job_id,
            cursor,
        )

    async def complete(self, job_id: str, conn: Connection | None = None) -> None:
        await self._execute(
            conn,
            "UPDATE resync_jobs SET status = $2, next_retry_at = NULL WHERE id = $1",
            job_id,
            ResyncStatus.COMPLETED.value,
        )

    async def record_failure(self, job_id: str, error: str) -> ResyncJob | None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                failures = await conn.fetchval("SELECT failure_count FROM resync_jobs WHERE id = $1 FOR UPDATE", job_id)
                if failures is None:
                    return None
                failures += 1
                row = await conn.fetchrow(
                    """
                    UPDATE resync_jobs
                    SET failure_count = $2, last_error = $3, status = 'pending',
                        next_retry_at = NOW() + make_interval(secs => $4)
                    WHERE id = $1
                    RETURNING *
                    """,
                    job_id,
                    failures,
                    (error or "")[:1000],
                    self.backoff.delay_seconds(failures),
                )
                return _resync_job(row)

    async def list_jobs(self, status: str | None = None, limit: int = 50) -> list[ResyncJob]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM resync_jobs
                WHERE ($1::text IS NULL OR status = $1)
                ORDER BY created_at DESC
                LIMIT $2
                """,
                status,
                limit,
            )
            return [_resync_job(row) for row in rows]


class PgSnapshotSource:
    def __init__(self, pool: Pool):
        self.pool = pool

    async def read_batch(self, category: str, type_code: str, after: str | None, limit: int) -> list[SnapshotValue]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT subject_id, payload FROM snapshot_values
                WHERE category = $1
                  AND type_code = $2
                  AND ($3::text IS NULL OR subject_id > $3)
                ORDER BY subject_id ASC
                LIMIT $4
                """,
                category,
                type_code,
                after,
                limit,
            )
            return [SnapshotValue(subject_id=row["subject_id"], payload=from_json(row["payload"])) for row in rows]
