from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger("dealerhub.notifications")

ORDER_CREATED = "ORDER_CREATED"
ORDER_APPROVED = "ORDER_APPROVED"
ORDER_REJECTED = "ORDER_REJECTED"
ORDER_CANCELLED = "ORDER_CANCELLED"
ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
ORDER_EDITED = "ORDER_EDITED"
ORDER_EDIT_ACCEPTED = "ORDER_EDIT_ACCEPTED"
ORDER_AUTO_CANCELLED = "ORDER_AUTO_CANCELLED"


@dataclass(frozen=True)
class OrderEvent:
    event_type: str
    order_id: int
    order_number: str
    status: str
    user_id: int
    extra: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    def notify(self, event: OrderEvent) -> None:
        ...


class LoggingNotifier:
    """Notifier par défaut : pas de livraison, juste une trace."""

    def notify(self, event: OrderEvent) -> None:
        logger.info(
            "%s order=%s status=%s user=%s %s",
            event.event_type,
            event.order_number,
            event.status,
            event.user_id,
            event.extra or "",
        )


def dispatch(notifier: Notifier, event: OrderEvent) -> None:
    """Fire-and-forget : une erreur de notification n'échoue jamais l'opération."""
    try:
        notifier.notify(event)
    except Exception:
        logger.exception("Notification %s failed for order %s", event.event_type, event.order_number)
