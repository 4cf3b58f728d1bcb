"""
Outbound notifications (group chat announcements).

Delivery is best-effort: callers use `notify_safely` after their ledger/roster
work is done, and gateway errors are logged, never raised.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Protocol

from badminton_signup.core.logging import get_logger

log = get_logger(__name__)


@dataclass
class SessionPublished:
    kind: ClassVar[str] = "session_published"

    session_id: str
    available_slots: int
    waitlist_count: int
    capacity: int = 0
    fee: int = 0
    label: str = ""

    def summary(self) -> str:
        text = f"Session {self.label or self.session_id} is open: {self.available_slots}/{self.capacity} slots available"
        if self.waitlist_count:
            text += f", {self.waitlist_count} on the waiting list"
        return text


@dataclass
class PlayerCancelled:
    kind: ClassVar[str] = "player_cancelled"

    session_id: str
    name: str
    slot_freed: bool

    def summary(self) -> str:
        # With a waiting list the freed slot goes to the next in line, so it is not advertised.
        if self.slot_freed:
            return f"{self.name} cancelled. A slot is available"
        return f"{self.name} cancelled"


@dataclass
class LowBalance:
    kind: ClassVar[str] = "low_balance"

    user_id: str
    balance: int

    def summary(self) -> str:
        return f"Wallet balance is low ({self.balance}). Please top up"


NotificationEvent = SessionPublished | PlayerCancelled | LowBalance

EVENT_TYPES: dict[str, type] = {cls.kind: cls for cls in (SessionPublished, PlayerCancelled, LowBalance)}


def event_to_payload(event: NotificationEvent) -> dict[str, Any]:
    return {"kind": event.kind, "data": asdict(event)}


def event_from_payload(payload: dict[str, Any]) -> NotificationEvent:
    cls = EVENT_TYPES.get(payload.get("kind", ""))
    if cls is None:
        raise ValueError(f"Unknown notification kind: {payload.get('kind')}")
    return cls(**payload.get("data", {}))


class NotificationGateway(Protocol):
    async def notify(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationGateway:
    async def notify(self, event: NotificationEvent) -> None:
        log.info("notification", kind=event.kind, summary=event.summary())


@dataclass
class RecordingNotificationGateway:
    """Keeps events in memory. Used by tests and local runs."""

    events: list[NotificationEvent] = field(default_factory=list)
    fail: bool = False

    async def notify(self, event: NotificationEvent) -> None:
        if self.fail:
            raise RuntimeError("notification gateway unavailable")
        self.events.append(event)

    def of_kind(self, kind: type) -> list[NotificationEvent]:
        return [e for e in self.events if isinstance(e, kind)]


class QueuedNotificationGateway:
    """Hands events to the ARQ worker, which delivers them to the LINE group."""

    async def notify(self, event: NotificationEvent) -> None:
        from badminton_signup.worker.tasks import enqueue_notification

        await enqueue_notification(event_to_payload(event))


async def notify_safely(gateway: NotificationGateway, event: NotificationEvent) -> None:
    try:
        await gateway.notify(event)
    except Exception as exc:
        log.warning("notification_failed", kind=event.kind, error=str(exc))


def get_notification_gateway(backend: str) -> NotificationGateway:
    if backend == "queue":
        return QueuedNotificationGateway()
    return LoggingNotificationGateway()
