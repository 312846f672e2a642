"""
ECOF Delivery - Operational Routes
==================================
Read-only delivery state plus the few operator actions:

    GET  /v1/delivery/destinations?category=   cursor, failures, lag
    PUT  /v1/delivery/destinations             register or update a destination
    PUT  /v1/delivery/subscriptions            enable/disable a type for an org
    POST /v1/delivery/resync                   queue a snapshot resync
    GET  /v1/delivery/stats                    per-category aggregate
    POST /v1/delivery/{category}/kick          run one tick now ("erp" for the queue)
    GET  /v1/erp-queue/stats
    GET  /v1/erp-queue/items?status=&limit=
    POST /v1/erp-queue/items                   enqueue a document operation
    POST /v1/erp-queue/items/{id}/retry
    POST /v1/erp-queue/resend
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from core.errors import NotFoundError
from ecof.delivery.models import OperationType
from ecof.delivery.runtime import DeliveryRuntime

logger = logging.getLogger("ecof.api.routes")

router = APIRouter()


def get_runtime(request: Request) -> DeliveryRuntime:
    return request.app.state.runtime


def _require_category(runtime: DeliveryRuntime, category: str) -> None:
    if category not in runtime.categories:
        raise NotFoundError("Category", category)


# ===========================================================================
# Request models
# ===========================================================================


class DestinationRequest(BaseModel):
    org_id: str
    category: str
    endpoint: str = Field(..., min_length=1)
    secret: str = Field(..., min_length=1)
    is_active: bool = True


class SubscriptionRequest(BaseModel):
    org_id: str
    category: str
    type_code: str
    enabled: bool = True
    resync: bool = True


class ResyncRequest(BaseModel):
    org_id: str
    category: str
    type_code: str
    batch_size: int = Field(1000, ge=10, le=5000)


class EnqueueRequest(BaseModel):
    document_id: str
    operation_type: str = OperationType.UPSERT.value


class ResendRequest(BaseModel):
    document_id: str


# ===========================================================================
# Webhook delivery
# ===========================================================================


@router.get("/v1/delivery/destinations")
async def list_destinations(
    category: Optional[str] = Query(None),
    runtime: DeliveryRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    destinations = await runtime.destination_report(category)
    return {"destinations": destinations, "count": len(destinations)}


@router.put("/v1/delivery/destinations")
async def upsert_destination(body: DestinationRequest, runtime: DeliveryRuntime = Depends(get_runtime)) -> dict[str, Any]:
    _require_category(runtime, body.category)
    destination = await runtime.registry.upsert_destination(
        body.org_id, body.category, body.endpoint, body.secret, body.is_active
    )
    logger.info(f"Destination {destination.id} saved for org {body.org_id} ({body.category})")
    return destination.to_dict()


@router.put("/v1/delivery/subscriptions")
async def set_subscription(body: SubscriptionRequest, runtime: DeliveryRuntime = Depends(get_runtime)) -> dict[str, Any]:
    _require_category(runtime, body.category)
    await runtime.registry.set_subscription(body.org_id, body.category, body.type_code, body.enabled)
    job = None
    if body.enabled and body.resync:
        job = await runtime.resync.request_resync(body.org_id, body.category, body.type_code)
    return {
        "org_id": body.org_id,
        "category": body.category,
        "type_code": body.type_code,
        "enabled": body.enabled,
        "resync_job": job.to_dict() if job else None,
    }


@router.post("/v1/delivery/resync")
async def request_resync(body: ResyncRequest, runtime: DeliveryRuntime = Depends(get_runtime)) -> dict[str, Any]:
    _require_category(runtime, body.category)
    job = await runtime.resync.request_resync(body.org_id, body.category, body.type_code, body.batch_size)
    return job.to_dict()


@router.get("/v1/delivery/stats")
async def delivery_stats(runtime: DeliveryRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.delivery_stats()


@router.post("/v1/delivery/{category}/kick")
async def kick_pipeline(category: str, runtime: DeliveryRuntime = Depends(get_runtime)) -> dict[str, Any]:
    report = await runtime.run_once(category)
    logger.info(f"Manual tick for {category}: {report.to_dict()}")
    return report.to_dict()


# ===========================================================================
# ERP queue
# ===========================================================================


@router.get("/v1/erp-queue/stats")
async def erp_queue_stats(runtime: DeliveryRuntime = Depends(get_runtime)) -> dict[str, int]:
    return await runtime.erp_queue.stats()


@router.get("/v1/erp-queue/items")
async def list_erp_queue_items(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    runtime: DeliveryRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    items = await runtime.erp_queue.list_items(status, limit)
    return {"items": [item.to_dict() for item in items], "count": len(items)}


@router.post("/v1/erp-queue/items")
async def enqueue_document(body: EnqueueRequest, runtime: DeliveryRuntime = Depends(get_runtime)) -> dict[str, Any]:
    item_id = await runtime.erp_queue.enqueue(body.document_id, body.operation_type)
    return {"item_id": item_id, "status": "pending"}


@router.post("/v1/erp-queue/items/{item_id}/retry")
async def retry_erp_queue_item(item_id: str, runtime: DeliveryRuntime = Depends(get_runtime)) -> dict[str, Any]:
    item = await runtime.erp_queue.retry_item(item_id)
    return item.to_dict()


@router.post("/v1/erp-queue/resend")
async def resend_document(body: ResendRequest, runtime: DeliveryRuntime = Depends(get_runtime)) -> dict[str, Any]:
    item_id = await runtime.erp_queue.resend_document(body.document_id)
    return {"item_id": item_id, "status": "pending"}
