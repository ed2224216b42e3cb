"""
Payment status state machine.

Every change to Order.payment_status goes through PAYMENT_TRANSITIONS:
(current status, gateway event) -> next status. Pairs missing from the
table are invalid.
"""
import logging
from enum import Enum

from .models import DeliveryStatus, PaymentStatus

logger = logging.getLogger(__name__)


class PaymentEvent(str, Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    REVERSED = 'reversed'


class InvalidTransition(Exception):
    """Raised when an event is not allowed from the current payment status."""
    def __init__(self, current: str, event: PaymentEvent):
        self.current = current
        self.event = event
        super().__init__(f"Cannot apply payment event '{event.value}' to status '{current}'")


P = PaymentStatus
E = PaymentEvent

PAYMENT_TRANSITIONS = {
    (P.PENDING, E.COMPLETED): P.COMPLETED,
    (P.PENDING, E.FAILED): P.FAILED,
    (P.PENDING, E.CANCELLED): P.CANCELLED,
    (P.PENDING, E.REVERSED): P.REFUNDED,

    # A paid order ignores late failure notices; only a reversal undoes it
    (P.COMPLETED, E.COMPLETED): P.COMPLETED,
    (P.COMPLETED, E.FAILED): P.COMPLETED,
    (P.COMPLETED, E.CANCELLED): P.COMPLETED,
    (P.COMPLETED, E.REVERSED): P.REFUNDED,

    (P.FAILED, E.COMPLETED): P.COMPLETED,
    (P.FAILED, E.FAILED): P.FAILED,
    (P.FAILED, E.CANCELLED): P.CANCELLED,
    (P.FAILED, E.REVERSED): P.REFUNDED,

    (P.CANCELLED, E.COMPLETED): P.COMPLETED,
    (P.CANCELLED, E.FAILED): P.FAILED,
    (P.CANCELLED, E.CANCELLED): P.CANCELLED,
    (P.CANCELLED, E.REVERSED): P.REFUNDED,

    # Refunds are terminal
    (P.REFUNDED, E.FAILED): P.REFUNDED,
    (P.REFUNDED, E.CANCELLED): P.REFUNDED,
    (P.REFUNDED, E.REVERSED): P.REFUNDED,
}

del P, E


def next_payment_status(current: str, event: PaymentEvent) -> PaymentStatus:
    """Look up the status an order moves to when ``event`` arrives."""
    try:
        target = PAYMENT_TRANSITIONS[(PaymentStatus(current), event)]
    except (KeyError, ValueError):
        raise InvalidTransition(current, event)

    if target == current and event.value != current:
        logger.info(f"Payment event '{event.value}' ignored for status '{current}'")
    return target


def completable_statuses() -> list:
    """Statuses from which a completion event actually moves the order."""
    return [
        current for (current, event), target in PAYMENT_TRANSITIONS.items()
        if event == PaymentEvent.COMPLETED and target != current
    ]


def delivery_status_after(payment_status: str, delivery_status: str) -> str:
    """Unpaid orders cannot be delivered: failed payments cancel delivery."""
    if payment_status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED):
        return DeliveryStatus.CANCELLED
    return delivery_status


def delivery_update_warnings(payment_status: str, new_delivery_status: str) -> list:
    """
    Soft invariant: delivery should not advance past pending while payment
    is not completed. Returned as warnings, never enforced.
    """
    advanced = new_delivery_status not in (DeliveryStatus.PENDING, DeliveryStatus.CANCELLED)
    if advanced and payment_status != PaymentStatus.COMPLETED:
        return [
            f"Delivery moved to '{new_delivery_status}' while payment is '{payment_status}'"
        ]
    return []
