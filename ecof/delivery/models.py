"""
ECOF Delivery - Domain Types
============================
Records shared by the event log, destination registry, ERP queue and
resync jobs, plus the ephemeral envelope/outcome pair passed to transports.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Kinds of domain events written to the event log."""

    UPSERT = "Upsert"
    DELETE = "Delete"
    SNAPSHOT = "Snapshot"


class OperationType(str, Enum):
    """ERP operations a queue item can carry."""

    UPSERT = "UpsertDocument"
    POST = "PostDocument"
    CANCEL = "CancelDocument"


class QueueStatus(str, Enum):
    """ERP queue item status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ErpStatus(str, Enum):
    """Document status as reported by the ERP."""

    NONE = "None"
    ACCEPTED = "Accepted"
    POSTED = "Posted"
    ERROR = "Error"


class PortalStatus(str, Enum):
    """Document status on the portal side."""

    DRAFT = "Draft"
    VALIDATED = "Validated"
    FROZEN = "Frozen"
    QUEUED_TO_ERP = "QueuedToERP"
    SENT_TO_ERP = "SentToERP"


class ResyncStatus(str, Enum):
    """Snapshot resync job status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Event:
    """Immutable event log record."""

    sequence: int
    category: str
    event_type: str
    type_code: str
    subject_id: str
    payload: dict[str, Any]
    created_at: datetime

    def to_wire(self) -> dict[str, Any]:
        """Shape used inside webhook bodies."""
        return {
            "seq": self.sequence,
            "type": self.type_code,
            "eventType": self.event_type,
            "subjectId": self.subject_id,
            "payload": self.payload,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class Destination:
    """Webhook destination: one row per (organization, category)."""

    id: str
    org_id: str
    category: str
    endpoint: str
    secret: str
    cursor: int = 0
    failure_count: int = 0
    next_retry_at: datetime | None = None
    last_error: str | None = None
    is_active: bool = True
    updated_at: datetime | None = None
    last_delivered_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Operator view. The secret never leaves the store."""
        return {
            "id": self.id,
            "org_id": self.org_id,
            "category": self.category,
            "endpoint": self.endpoint,
            "cursor": self.cursor,
            "failure_count": self.failure_count,
            "next_retry_at": _iso(self.next_retry_at),
            "last_error": self.last_error,
            "is_active": self.is_active,
            "updated_at": _iso(self.updated_at),
            "last_delivered_at": _iso(self.last_delivered_at),
        }


@dataclass
class ErpDocument:
    """The slice of a portal document the ERP pipeline needs."""

    id: str
    type: str
    number: str
    date: datetime | str
    version: int = 1
    organization_name: str | None = None
    counterparty_name: str | None = None
    counterparty_inn: str | None = None
    amount: float | None = None
    currency: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    erp_ref: str | None = None
    erp_status: str = ErpStatus.NONE.value
    portal_status: str = PortalStatus.DRAFT.value
    sent_to_erp_at: datetime | None = None
    erp_error_message: str | None = None


@dataclass
class QueueItem:
    """One document awaiting one ERP operation."""

    id: str
    document_id: str
    operation_type: str
    status: str = QueueStatus.PENDING.value
    retry_count: int = 0
    payload: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str = ""
    error_message: str | None = None
    external_ref: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "operation_type": self.operation_type,
            "status": self.status,
            "retry_count": self.retry_count,
            "idempotency_key": self.idempotency_key,
            "error_message": self.error_message,
            "external_ref": self.external_ref,
            "next_retry_at": _iso(self.next_retry_at),
            "created_at": _iso(self.created_at),
            "processed_at": _iso(self.processed_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass(frozen=True)
class ErpResult:
    """
    Document-side effect of a completed ERP operation.

    `None` fields leave the stored value as it is. `sent` marks the
    document as delivered (upserts only).
    """

    erp_status: str | None = None
    erp_ref: str | None = None
    sent: bool = False


@dataclass
class ResyncJob:
    """Snapshot job that replays current values of one type into the event log."""

    id: str
    org_id: str
    category: str
    type_code: str
    status: str = ResyncStatus.PENDING.value
    cursor: str | None = None
    batch_size: int = 1000
    failure_count: int = 0
    next_retry_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["next_retry_at"] = _iso(self.next_retry_at)
        data["created_at"] = _iso(self.created_at)
        return data


@dataclass(frozen=True)
class SnapshotValue:
    """Current state of one subject, as read by a resync job."""

    subject_id: str
    payload: dict[str, Any]


@dataclass
class Envelope:
    """
    One outbound transmission.

    `body` holds the exact bytes sent; the signature and idempotency key
    are derived from it and from the unit identity only.
    """

    unit_id: str
    endpoint: str
    body: bytes
    idempotency_key: str
    signature: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    from_seq: int | None = None
    to_seq: int | None = None
    event_count: int = 0


@dataclass
class DeliveryOutcome:
    """Result of one transport call. Transports never raise on receiver behaviour."""

    ok: bool
    status_code: int | None = None
    error: str | None = None
    permanent: bool = False
    external_ref: str | None = None
    status: str | None = None
    elapsed_ms: int = 0

    @classmethod
    def success(cls, status_code: int | None = None, **kwargs) -> "DeliveryOutcome":
        return cls(ok=True, status_code=status_code, **kwargs)

    @classmethod
    def failure(cls, error: str, status_code: int | None = None, permanent: bool = False, **kwargs) -> "DeliveryOutcome":
        return cls(ok=False, error=error, status_code=status_code, permanent=permanent, **kwargs)


@dataclass
class TickReport:
    """Counters for one pipeline tick."""

    pipeline: str
    claimed: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
