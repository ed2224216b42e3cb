"""
Gateway status mapping and merchant reference conventions.

Pesapal status codes: 0 invalid/pending, 1 completed, 2 failed, 3 reversed.
Cancellation is not a code of its own; it only shows up in the
human-readable description, so any description mentioning "cancel" wins.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from orders.models import PaymentStatus
from orders.transitions import PaymentEvent
from .models import GatewayTransaction

TxStatus = GatewayTransaction.Status

MERCHANT_REFERENCE_PREFIX = 'ORDER-'


@dataclass(frozen=True)
class MappedStatus:
    transaction_status: str
    payment_status: str
    event: Optional[PaymentEvent]


PENDING = MappedStatus(TxStatus.PENDING, PaymentStatus.PENDING, None)

STATUS_CODE_MAP = {
    1: MappedStatus(TxStatus.COMPLETED, PaymentStatus.COMPLETED, PaymentEvent.COMPLETED),
    2: MappedStatus(TxStatus.FAILED, PaymentStatus.FAILED, PaymentEvent.FAILED),
    3: MappedStatus(TxStatus.FAILED, PaymentStatus.REFUNDED, PaymentEvent.REVERSED),
}

CANCELLED = MappedStatus(TxStatus.CANCELLED, PaymentStatus.CANCELLED, PaymentEvent.CANCELLED)


def map_gateway_status(status_code, description: Optional[str] = None) -> MappedStatus:
    """Map a gateway status code and description onto our statuses."""
    if 'cancel' in (description or '').lower():
        return CANCELLED
    try:
        return STATUS_CODE_MAP.get(int(status_code), PENDING)
    except (TypeError, ValueError):
        return PENDING


class NotificationKind:
    COMPLETED = 'completed'
    FAILED = 'failed'
    QUERY = 'query'
    UNHANDLED = 'unhandled'


NOTIFICATION_TYPES = {
    'COMPLETED': NotificationKind.COMPLETED,
    'SUCCESS': NotificationKind.COMPLETED,
    'FAILED': NotificationKind.FAILED,
    'CANCELLED': NotificationKind.FAILED,
    'IPNCHANGE': NotificationKind.QUERY,
    '': NotificationKind.QUERY,
}


def classify_notification(notification_type: Optional[str]) -> str:
    """Decide how to treat a callback from its notification type alone."""
    return NOTIFICATION_TYPES.get((notification_type or '').strip().upper(), NotificationKind.UNHANDLED)


def new_merchant_reference() -> str:
    """ORDER-<epoch ms>-<random>, unique for the life of the system."""
    return f"{MERCHANT_REFERENCE_PREFIX}{int(time.time() * 1000)}-{uuid.uuid4().hex[:10]}"


def parse_legacy_order_id(merchant_reference: Optional[str]) -> Optional[str]:
    """
    Recover an order id from a legacy ``ORDER-<order uuid>`` reference.

    Anything else, including fresh ``ORDER-<timestamp>-<random>`` references,
    yields None.
    """
    if not merchant_reference or not merchant_reference.startswith(MERCHANT_REFERENCE_PREFIX):
        return None
    candidate = merchant_reference[len(MERCHANT_REFERENCE_PREFIX):]
    try:
        return str(uuid.UUID(candidate))
    except ValueError:
        return None
