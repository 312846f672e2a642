"""
ECOF Delivery - ERP Queue
=========================
Discrete-item variant of the delivery pipeline: each queue item carries one
document operation (upsert, post, cancel) for the ERP.

Item lifecycle:
    pending -> processing -> completed
                          -> pending (transient failure, backoff)
                          -> failed  (permanent rejection or budget spent)
"""

import logging
from typing import Any, Protocol

from core.errors import NotFoundError, TransientDeliveryError, ValidationError

from .models import (
    DeliveryOutcome,
    Envelope,
    ErpDocument,
    ErpResult,
    ErpStatus,
    OperationType,
    QueueItem,
    QueueStatus,
)
from .payload import build_document_payload, normalize_erp_ref
from .signing import canonical_json, document_idempotency_key

logger = logging.getLogger("ecof.delivery.erp_queue")

ERP_PIPELINE = "erp"


class ErpQueueStore(Protocol):
    """Storage contract for queue items."""

    async def insert_item(
        self,
        document_id: str,
        operation_type: str,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> QueueItem: ...

    async def claim_due(self, limit: int, lease_seconds: float) -> list[QueueItem]:
        """
        Up to `limit` pending items whose next_retry_at has passed, plus
        processing items whose lease expired, oldest first, marked processing.
        """
        ...

    async def complete_item(self, item_id: str, external_ref: str | None, document_id: str, result: ErpResult) -> bool:
        """
        Mark the item completed (storing the ERP reference it returned) and
        apply `result` to its document in one step. Returns False when the document no longer exists; the item
        is completed either way.
        """
        ...

    async def record_item_failure(self, item_id: str, error: str, permanent: bool = False) -> QueueItem | None:
        """
        Only for items still processing: retry_count += 1; failed when
        permanent or the attempt budget is spent, otherwise pending again
        after backoff(retry_count). Returns None for completed or failed items.
        """
        ...

    async def release(self, item_id: str) -> None: ...

    async def reset_item(self, item_id: str) -> QueueItem | None:
        """Operator retry: pending, zero retries, error cleared, due now."""
        ...

    async def get_item(self, item_id: str) -> QueueItem | None: ...

    async def list_items(self, status: str | None = None, limit: int = 50) -> list[QueueItem]: ...

    async def stats(self) -> dict[str, int]: ...


class DocumentStore(Protocol):
    """The document-side operations the ERP pipeline needs."""

    async def get_document(self, document_id: str) -> ErpDocument | None: ...

    async def lookup_reference(self, kind: str, ref_id: str) -> dict[str, Any] | None:
        """Name/code of a warehouse or account, from the portal's reference data."""
        ...

    async def mark_queued(self, document_id: str) -> None: ...

    async def record_erp_error(self, document_id: str, message: str) -> None: ...


def erp_result_for(operation_type: str, outcome: DeliveryOutcome) -> ErpResult:
    """
    Document changes for a successful operation.

    Upserts store the reference and mark the document sent; posts record the
    posted status; cancels only take a status the ERP reported.
    """
    operation = OperationType(operation_type)
    if operation is OperationType.UPSERT:
        return ErpResult(
            erp_status=outcome.status or ErpStatus.ACCEPTED.value,
            erp_ref=normalize_erp_ref(outcome.external_ref) or None,
            sent=True,
        )
    if operation is OperationType.POST:
        return ErpResult(erp_status=outcome.status or ErpStatus.POSTED.value)
    return ErpResult(erp_status=outcome.status)


def _operation(value: str) -> OperationType:
    try:
        return OperationType(value)
    except ValueError:
        allowed = ", ".join(op.value for op in OperationType)
        raise ValidationError(f"Unknown operation type {value!r}, expected one of: {allowed}", field="operation_type")


# ===========================================================================
# Operator service
# ===========================================================================


class ErpQueueService:
    """Enqueue documents and run operator actions on the queue."""

    def __init__(self, queue_store: ErpQueueStore, document_store: DocumentStore):
        self.queue_store = queue_store
        self.document_store = document_store

    async def _build_payload(self, document: ErpDocument, operation: OperationType) -> dict[str, Any]:
        if operation is not OperationType.UPSERT:
            return {
                "portalDocId": document.id,
                "portalVersion": document.version or 1,
                "idempotencyKey": document_idempotency_key(document.id, document.version, operation.value),
            }

        data = document.data or {}
        warehouse_id = data.get("warehouseId") or data.get("warehouse")
        account_id = data.get("accountId") or data.get("paymentAccountId")
        warehouse = await self.document_store.lookup_reference("warehouse", warehouse_id) if warehouse_id else None
        account = await self.document_store.lookup_reference("account", account_id) if account_id else None
        return build_document_payload(document, warehouse=warehouse, account=account)

    async def enqueue(self, document_id: str, operation_type: str = OperationType.UPSERT.value) -> str:
        """Queue one operation for a document and return the new item id."""
        operation = _operation(operation_type)
        document = await self.document_store.get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)

        payload = await self._build_payload(document, operation)
        item = await self.queue_store.insert_item(
            document.id,
            operation.value,
            payload,
            document_idempotency_key(document.id, document.version, operation.value),
        )
        if operation is OperationType.UPSERT:
            await self.document_store.mark_queued(document.id)

        logger.info(
            f"Queued {operation.value} for document {document.id} as item {item.id}",
            extra={"item_id": item.id, "document_id": document.id},
        )
        return item.id

    async def retry_item(self, item_id: str) -> QueueItem:
        item = await self.queue_store.reset_item(item_id)
        if item is None:
            raise NotFoundError("Queue item", item_id)
        logger.info(f"Queue item {item_id} reset to pending", extra={"item_id": item_id})
        return item

    async def resend_document(self, document_id: str) -> str:
        """Queue a fresh upsert of the document's current version."""
        return await self.enqueue(document_id, OperationType.UPSERT.value)

    async def get_item(self, item_id: str) -> QueueItem:
        item = await self.queue_store.get_item(item_id)
        if item is None:
            raise NotFoundError("Queue item", item_id)
        return item

    async def list_items(self, status: str | None = None, limit: int = 50) -> list[QueueItem]:
        if status is not None:
            try:
                status = QueueStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown queue status {status!r}", field="status")
        limit = max(1, min(int(limit), 500))
        return await self.queue_store.list_items(status, limit)

    async def stats(self) -> dict[str, int]:
        counts = await self.queue_store.stats()
        result = {status.value: int(counts.get(status.value, 0)) for status in QueueStatus}
        result["total"] = sum(result.values())
        return result


# ===========================================================================
# Pipeline source
# ===========================================================================


class ErpQueueSource:
    """Unit of work for the ERP pipeline: one queue item, one ERP call."""

    def __init__(self, queue_store: ErpQueueStore, document_store: DocumentStore, lease_seconds: float = 60.0):
        self.name = ERP_PIPELINE
        self.queue_store = queue_store
        self.document_store = document_store
        self.lease_seconds = lease_seconds

    async def claim(self, limit: int) -> list[QueueItem]:
        return await self.queue_store.claim_due(limit, self.lease_seconds)

    async def build(self, item: QueueItem) -> Envelope:
        operation = _operation(item.operation_type)
        if operation is OperationType.UPSERT:
            endpoint = "/documents"
        else:
            document = await self.document_store.get_document(item.document_id)
            erp_ref = normalize_erp_ref(document.erp_ref if document else None)
            if not erp_ref:
                raise TransientDeliveryError(f"Document {item.document_id} not sent to ERP yet")
            action = "post" if operation is OperationType.POST else "cancel"
            endpoint = f"/documents/{erp_ref}/{action}"

        body = canonical_json(
            {
                "operationType": operation.value,
                "documentId": item.document_id,
                "payload": item.payload,
            }
        )
        return Envelope(
            unit_id=item.id,
            endpoint=endpoint,
            body=body,
            idempotency_key=item.idempotency_key,
        )

    async def release(self, item: QueueItem) -> None:
        await self.queue_store.release(item.id)

    async def on_success(self, item: QueueItem, envelope: Envelope, outcome: DeliveryOutcome) -> None:
        result = erp_result_for(item.operation_type, outcome)
        external_ref = normalize_erp_ref(outcome.external_ref) or None
        document_updated = await self.queue_store.complete_item(item.id, external_ref, item.document_id, result)
        extra = {"item_id": item.id, "document_id": item.document_id}
        if not document_updated:
            logger.warning(f"Queue item {item.id} completed but document {item.document_id} no longer exists", extra=extra)
        logger.info(
            f"{item.operation_type} for document {item.document_id} completed "
            f"(ref={external_ref}, status={result.erp_status})",
            extra=extra,
        )

    async def on_failure(self, item: QueueItem, envelope: Envelope | None, outcome: DeliveryOutcome) -> None:
        error = outcome.error or "ERP operation failed"
        updated = await self.queue_store.record_item_failure(item.id, error, permanent=outcome.permanent)
        if updated is None:
            return

        extra = {"item_id": item.id, "document_id": item.document_id, "attempt": updated.retry_count}
        if updated.status == QueueStatus.FAILED.value:
            await self.document_store.record_erp_error(item.document_id, error)
            logger.error(f"Queue item {item.id} failed after {updated.retry_count} attempts: {error}", extra=extra)
        else:
            logger.warning(f"Queue item {item.id} attempt {updated.retry_count} failed: {error}", extra=extra)

    def describe(self, item: QueueItem) -> dict[str, Any]:
        return {"item_id": item.id, "document_id": item.document_id}
