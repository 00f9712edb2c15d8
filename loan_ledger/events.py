"""
Event System Module

Publish/subscribe dispatch of ledger domain events. Events are produced by
the pure ledger functions and published by the service only after the
surrounding transaction has committed.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events emitted by the loan ledger"""

    # Loan lifecycle events
    LOAN_APPROVED = "loan.approved"
    LOAN_DISBURSED = "loan.disbursed"
    LOAN_OVERDUE = "loan.overdue"
    LOAN_PAID_OFF = "loan.paid_off"
    LOAN_REOPENED = "loan.reopened"
    LOAN_CLOSED = "loan.closed"
    LOAN_WRITTEN_OFF = "loan.written_off"
    LOAN_SUSPENDED = "loan.suspended"
    LOAN_RESUMED = "loan.resumed"

    # Payment events
    PAYMENT_RECORDED = "payment.recorded"
    PAYMENT_REVERSED = "payment.reversed"

    # Schedule events
    PENALTY_APPLIED = "penalty.applied"
    PENALTY_WAIVED = "penalty.waived"
    SCHEDULE_RECALCULATED = "schedule.recalculated"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    tenant_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'tenant_id': self.tenant_id,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            tenant_id=data.get('tenant_id'),
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = logging.getLogger("loan_ledger.events")

    @staticmethod
    def _name(handler: Callable) -> str:
        return getattr(handler, '__name__', repr(handler))

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {self._name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {self._name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
                self.logger.debug(f"Unsubscribed handler {self._name(handler)} from {event_type.value}")
            except ValueError:
                self.logger.warning(f"Handler {self._name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """
        Publish event to all subscribers.

        Handler failures are logged and do not propagate: the ledger change
        that produced the event is already committed.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {self._name(handler)} for {event.event_type.value}: {e}",
                    exc_info=True
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
            self.logger.info("All event handlers cleared")

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


# Global event dispatcher instance
_global_dispatcher: Optional[EventDispatcher] = None


def get_global_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher instance"""
    global _global_dispatcher
    if _global_dispatcher is None:
        _global_dispatcher = EventDispatcher()
    return _global_dispatcher


def set_global_dispatcher(dispatcher: EventDispatcher) -> None:
    """Set a custom global event dispatcher"""
    global _global_dispatcher
    _global_dispatcher = dispatcher


def create_loan_event(event_type: DomainEvent, loan, **extra: Any) -> EventPayload:
    """Create a loan-related event"""
    data = {
        "loan_number": loan.loan_number,
        "customer_id": loan.customer_id,
        "status": loan.status.value,
        "outstanding_balance": str(loan.outstanding_balance),
        "amount_paid": str(loan.amount_paid),
        "penalty_amount": str(loan.penalty_amount),
    }
    data.update({k: (str(v) if not isinstance(v, (int, bool, type(None), list, dict)) else v)
                 for k, v in extra.items()})
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=loan.id,
        data=data,
        tenant_id=loan.tenant_id
    )


def create_payment_event(event_type: DomainEvent, payment) -> EventPayload:
    """Create a payment-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="payment",
        entity_id=payment.id,
        data={
            "loan_id": payment.loan_id,
            "amount": str(payment.amount),
            "principal_portion": str(payment.principal_portion),
            "interest_portion": str(payment.interest_portion),
            "fee_portion": str(payment.fee_portion),
            "penalty_portion": str(payment.penalty_portion),
            "payment_date": payment.payment_date.isoformat(),
            "method": payment.method.value,
            "status": payment.status.value,
        },
        tenant_id=payment.tenant_id
    )
