"""
Idempotency keys and payload signing.

Everything here is a pure function of its inputs: no clock, no randomness,
so a resend of an unchanged unit is byte-identical to the first attempt.
"""

import hashlib
import hmac
import json
from typing import Any

SIGNATURE_HEADER = "x-signature"
EVENT_TYPE_HEADER = "x-event-type"
IDEMPOTENCY_HEADER = "x-idempotency-key"


def canonical_json(body: Any) -> bytes:
    """Serialize with sorted keys and compact separators."""
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def sign_body(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact body bytes."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Receiver-side check, constant time."""
    if not signature:
        return False
    expected = sign_body(body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def webhook_idempotency_key(destination_id: str, category: str, from_seq: int, to_seq: int) -> str:
    """Key for a webhook batch, derived from (destination, category, sequence range)."""
    raw = f"{destination_id}:{category}:{from_seq}-{to_seq}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def document_idempotency_key(document_id: str, version: int, operation_type: str | None = None) -> str:
    """
    Key for an ERP document operation, derived from (document, portal version).

    Upserts use the bare key; post/cancel get the operation appended so the
    ERP does not drop them as duplicates of the upsert.
    """
    key = f"{document_id}-v{version or 1}"
    if operation_type and operation_type != "UpsertDocument":
        key = f"{key}:{operation_type}"
    return key
