"""
ECOF Delivery
=============
Ordered, at-least-once, idempotent delivery of portal events to webhook
subscribers and of portal documents to the ERP.
"""

from .erp_queue import ErpQueueService, ErpQueueSource
from .events import ANALYTICS, OBJECTS, EventLog, emit_analytics_value_changed, emit_object_card_changed
from .models import (
    DeliveryOutcome,
    Destination,
    Envelope,
    ErpDocument,
    ErpStatus,
    Event,
    EventType,
    OperationType,
    PortalStatus,
    QueueItem,
    QueueStatus,
    ResyncJob,
    TickReport,
)
from .payload import build_document_payload, normalize_erp_ref
from .registry import BackoffPolicy, DestinationRegistry
from .resync import ResyncWorker
from .signing import canonical_json, sign_body, verify_signature
from .transport import ErpTransport, WebhookTransport
from .worker import DeliveryPipeline, DeliveryScheduler, EventStreamSource

__all__ = [
    "ANALYTICS",
    "OBJECTS",
    "BackoffPolicy",
    "DeliveryOutcome",
    "DeliveryPipeline",
    "DeliveryScheduler",
    "Destination",
    "DestinationRegistry",
    "Envelope",
    "ErpDocument",
    "ErpQueueService",
    "ErpQueueSource",
    "ErpStatus",
    "ErpTransport",
    "Event",
    "EventLog",
    "EventStreamSource",
    "EventType",
    "OperationType",
    "PortalStatus",
    "QueueItem",
    "QueueStatus",
    "ResyncJob",
    "ResyncWorker",
    "TickReport",
    "WebhookTransport",
    "build_document_payload",
    "canonical_json",
    "emit_analytics_value_changed",
    "emit_object_card_changed",
    "normalize_erp_ref",
    "sign_body",
    "verify_signature",
]
