"""
Governance Notifications

One GovernanceEvent per meaningful proposal transition. Delivery is
at-most-once and fire-and-forget: emit_safely() logs and swallows every
sink failure so a notification outage never blocks governance progress.
Sinks own their own retry policy.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from .logger import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    PROPOSAL_CREATED = "ProposalCreated"
    PROPOSAL_PASSED = "ProposalPassed"
    PROPOSAL_REJECTED = "ProposalRejected"
    PROPOSAL_EXECUTED = "ProposalExecuted"
    PROPOSAL_VETOED = "ProposalVetoed"
    PROPOSAL_EXPIRED = "ProposalExpired"


@dataclass(frozen=True)
class GovernanceEvent:
    """A single status-change notification addressed to *recipient*."""
    proposal_id: str
    type: EventType
    recipient: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "type": self.type.value,
            "recipient": self.recipient,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class NotificationSink(ABC):
    """Receives governance events."""

    @abstractmethod
    async def emit(self, event: GovernanceEvent) -> None:
        ...

    async def close(self) -> None:
        return None


class InMemoryNotificationSink(NotificationSink):
    """Collects events in order of emission."""

    def __init__(self):
        self._events: List[GovernanceEvent] = []

    async def emit(self, event: GovernanceEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> List[GovernanceEvent]:
        return list(self._events)

    def of_type(self, event_type: EventType) -> List[GovernanceEvent]:
        return [e for e in self._events if e.type == event_type]

    def clear(self) -> None:
        self._events.clear()


class LoggingNotificationSink(NotificationSink):
    """Writes each event to the governance log."""

    async def emit(self, event: GovernanceEvent) -> None:
        logger.info(
            f"[notify] {event.type.value} {event.proposal_id} → {event.recipient}"
        )


class WebhookNotificationSink(NotificationSink):
    """
    POSTs each event as JSON to a webhook URL.

    Non-2xx responses raise httpx.HTTPStatusError; emit_safely() logs them.
    A caller-supplied client is borrowed and left open on close().
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ):
        if not url:
            raise ValueError("Webhook URL is required")
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def emit(self, event: GovernanceEvent) -> None:
        response = await self._client.post(self.url, json=event.to_dict())
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


async def emit_safely(sink: Optional[NotificationSink], event: GovernanceEvent) -> bool:
    """
    Deliver *event* to *sink*, never raising.

    Returns:
        True if the sink accepted the event.
    """
    if sink is None:
        return False
    try:
        await sink.emit(event)
        return True
    except Exception:
        logger.exception(
            f"Notification {event.type.value} for {event.proposal_id} "
            f"to {event.recipient} failed"
        )
        return False
