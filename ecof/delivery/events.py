"""
ECOF Delivery - Event Log
=========================
Append-only, gapless-per-category store of domain events.

Producers call `append` inside the same transaction as the business change
that caused the event; delivery reads it back with `read_after`.
"""

import logging
from typing import Any, AsyncContextManager, Protocol

from .models import Event, EventType

logger = logging.getLogger("ecof.delivery.events")

ANALYTICS = "analytics"
OBJECTS = "objects"


class EventLog(Protocol):
    """Storage contract for the event log."""

    def transaction(self) -> AsyncContextManager[Any]:
        """
        Unit of work yielding a `conn` for `append` and the job store; every
        write made through it commits together or not at all.
        """
        ...

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
        Append one event and return its sequence number.

        Sequence assignment is atomic per category: no two events of a
        category share a number and committed numbers have no gaps.
        """
        ...

    async def read_after(self, category: str, selector: str, cursor: int, limit: int) -> list[Event]:
        """
        Events of `category` with sequence > cursor, ascending, at most
        `limit`, restricted to type codes `selector` (an organization) is
        subscribed to. Same arguments, same result, until the next append.
        """
        ...

    async def last_sequence(self, category: str) -> int:
        """Highest sequence assigned in `category`, 0 when empty."""
        ...


# ===========================================================================
# Convenience emitters
# ===========================================================================


async def emit_analytics_value_changed(
    event_log: EventLog,
    type_code: str,
    value: dict[str, Any],
    deleted: bool = False,
    conn=None,
) -> int:
    """Emit an analytics value upsert/delete event."""
    event_type = EventType.DELETE if deleted else EventType.UPSERT
    seq = await event_log.append(
        ANALYTICS,
        type_code,
        str(value["id"]),
        {"eventType": event_type.value, "typeCode": type_code, "value": value},
        event_type=event_type.value,
        conn=conn,
    )
    logger.info(f"Emitted {ANALYTICS} {event_type.value} for {type_code}:{value['id']} seq={seq}")
    return seq


async def emit_object_card_changed(
    event_log: EventLog,
    type_code: str,
    card: dict[str, Any],
    deleted: bool = False,
    conn=None,
) -> int:
    """Emit an accounting-object card upsert/delete event."""
    event_type = EventType.DELETE if deleted else EventType.UPSERT
    seq = await event_log.append(
        OBJECTS,
        type_code,
        str(card["id"]),
        {"eventType": event_type.value, "typeCode": type_code, "card": card},
        event_type=event_type.value,
        conn=conn,
    )
    logger.info(f"Emitted {OBJECTS} {event_type.value} for {type_code}:{card['id']} seq={seq}")
    return seq
