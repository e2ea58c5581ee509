"""
Notification Module

Transfer and Approval notification records emitted by the ledger, and a
publish/subscribe dispatcher that delivers them to external observers.
"""

from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Optional, Union
from dataclasses import dataclass
import logging
from threading import RLock


class NotificationType(Enum):
    """Notification shapes delivered to observers"""
    TRANSFER = "token.transfer"
    APPROVAL = "token.approval"


@dataclass(frozen=True)
class TransferNotification:
    """
    Balance movement between two accounts.

    Either side may be None to describe a mint-style (no sender) or
    burn-style (no recipient) movement.
    """
    sender: Optional[Hashable]
    recipient: Optional[Hashable]
    amount: int

    event_type = NotificationType.TRANSFER

    @property
    def topics(self) -> Dict[str, Any]:
        """Indexed (searchable) fields"""
        return {"sender": self.sender, "recipient": self.recipient}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class ApprovalNotification:
    """An owner set the allowance of a spender"""
    owner: Hashable
    spender: Hashable
    amount: int

    event_type = NotificationType.APPROVAL

    @property
    def topics(self) -> Dict[str, Any]:
        """Indexed (searchable) fields"""
        return {"owner": self.owner, "spender": self.spender}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "owner": self.owner,
            "spender": self.spender,
            "amount": str(self.amount),
        }


Notification = Union[TransferNotification, ApprovalNotification]


def notification_from_dict(data: Dict[str, Any]) -> Notification:
    """Rebuild a notification from its stored dictionary form"""
    event_type = NotificationType(data["event_type"])
    if event_type == NotificationType.TRANSFER:
        return TransferNotification(
            sender=data.get("sender"),
            recipient=data.get("recipient"),
            amount=int(data["amount"])
        )
    return ApprovalNotification(
        owner=data["owner"],
        spender=data["spender"],
        amount=int(data["amount"])
    )


class EventDispatcher:
    """Central notification dispatcher: publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[NotificationType, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("token_ledger.events")

    def subscribe(self, event_type: NotificationType, handler: Callable) -> None:
        """Subscribe to a specific notification type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to every notification"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: NotificationType, handler: Callable) -> None:
        """Unsubscribe from a specific notification type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
                self.logger.debug(f"Unsubscribed handler {_handler_name(handler)} from {event_type.value}")
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def unsubscribe_all(self, handler: Callable) -> None:
        """Remove a global handler"""
        with self._lock:
            try:
                self._global_handlers.remove(handler)
                self.logger.debug(f"Unsubscribed global handler {_handler_name(handler)}")
            except ValueError:
                self.logger.warning(f"Global handler {_handler_name(handler)} was not subscribed")

    def publish(self, notification: Notification) -> None:
        """Deliver a notification to all subscribers"""
        with self._lock:
            event_type = notification.event_type
            self.logger.debug(f"Publishing {event_type.value} amount={notification.amount}")

            handlers = list(self._handlers.get(event_type, [])) + list(self._global_handlers)
            for handler in handlers:
                try:
                    handler(notification)
                except Exception as e:
                    # Observers never get to fail a committed ledger call
                    self.logger.error(f"Error in handler {_handler_name(handler)} for {event_type.value}: {e}")

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
            self.logger.info("All notification handlers cleared")

    def get_handler_count(self, event_type: Optional[NotificationType] = None) -> int:
        """Count handlers for one notification type, or all handlers"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))
