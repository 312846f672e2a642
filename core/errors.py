"""
ECOF Delivery - Error Taxonomy
==============================
Centralized error definitions for consistent error handling.
"""

from typing import Any, Dict, Optional


class ECOFError(Exception):
    """
    Base exception for all ECOF errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional error details (dict)
    """

    def __init__(
        self,
        message: str,
        code: str = "ECOF_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Configuration / Validation Errors
# =============================================================================


class ConfigError(ECOFError):
    """Configuration error - missing or invalid config."""

    def __init__(self, message: str, key: str = None, details: Dict = None):
        super().__init__(message, "CONFIG_ERROR", details)
        self.key = key


class ValidationError(ECOFError):
    """Input validation failed."""

    def __init__(self, message: str, field: str = None, details: Dict = None):
        super().__init__(message, "VALIDATION_ERROR", details)
        self.field = field


class NotFoundError(ECOFError):
    """Requested entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}", "NOT_FOUND", {"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


# =============================================================================
# Delivery Errors
# =============================================================================


class DeliveryError(ECOFError):
    """Outbound delivery failed."""

    def __init__(self, message: str, code: str = "DELIVERY_ERROR", details: Dict = None):
        super().__init__(message, code, details)


class TransientDeliveryError(DeliveryError):
    """Timeout, connection failure or 5xx - always retried."""

    def __init__(self, message: str, status_code: int = None, details: Dict = None):
        super().__init__(message, "TRANSIENT_DELIVERY_ERROR", details)
        self.status_code = status_code


class LocalStoreError(DeliveryError):
    """Event log or registry could not be read or updated."""

    def __init__(self, message: str, operation: str = None, details: Dict = None):
        super().__init__(message, "LOCAL_STORE_ERROR", details)
        self.operation = operation


__all__ = [
    "ECOFError",
    "ConfigError",
    "ValidationError",
    "NotFoundError",
    "DeliveryError",
    "TransientDeliveryError",
    "LocalStoreError",
]
