"""
Payment Service Layer - checkout initiation and gateway reconciliation.

Three entry points drive an order towards "paid":
- initiate_payment(): validate the cart, register the payment with the
  gateway, stage the order data. No Order row is created here.
- handle_callback(): gateway push notification (webhook).
- check_payment_status(): active poll of the gateway (success page, IPN
  changes, periodic recheck).
All of them defer order creation and stock deduction to
orders.services.complete_order(), which is idempotent, so any number of
redundant notifications converge on the same final state.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from django.core.exceptions import ValidationError
from django.db import transaction

from inventory.models import Product
from orders.models import Order, PaymentStatus
from orders.services import apply_payment_event, complete_order
from orders.transitions import PaymentEvent
from .callbacks import CallbackPayload
from .exceptions import (
    InsufficientStock,
    OrderValidationError,
    ProductNotFound,
    TransactionNotFound,
)
from .gateway import BillingAddress, GatewayStatus, PesapalClient, SubmitOrderRequest
from .models import CallbackLog, GatewayTransaction, StagedOrder
from .status import (
    NotificationKind,
    classify_notification,
    map_gateway_status,
    new_merchant_reference,
    parse_legacy_order_id,
)

logger = logging.getLogger(__name__)

TxStatus = GatewayTransaction.Status


# =============================================================================
# Order initiation
# =============================================================================

@dataclass
class InitiationResult:
    transaction: GatewayTransaction
    tracking_id: str
    redirect_url: str
    merchant_reference: str
    total_amount: Decimal


def validate_order_items(items: List[Dict]) -> None:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'product_id' and 'quantity'

    Raises:
        OrderValidationError: If validation fails
    """
    if not items:
        raise OrderValidationError("Order must contain at least one item")

    seen_products = set()
    for idx, item in enumerate(items):
        if 'product_id' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'product_id'")
        if 'quantity' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'quantity'")

        quantity = item['quantity']
        if not isinstance(quantity, int) or quantity < 1:
            raise OrderValidationError(f"Item {idx}: quantity must be a positive integer")

        if item['product_id'] in seen_products:
            raise OrderValidationError(f"Item {idx}: duplicate product_id {item['product_id']}")
        seen_products.add(item['product_id'])


def split_full_name(full_name: str):
    parts = (full_name or '').split()
    first_name = parts[0] if parts else 'Customer'
    last_name = ' '.join(parts[1:]) or 'User'
    return first_name, last_name


def initiate_payment(
    client: PesapalClient,
    user_id: str,
    items: List[Dict],
    customer_info: Dict,
    delivery_info: Dict,
    redirect_url: str = '',
) -> InitiationResult:
    """
    Price the cart, register it with the gateway and stage the order data.

    The stock check is advisory: nothing is reserved, and a concurrent
    purchase can still take the last units before this payment completes.

    Raises:
        OrderValidationError / ProductNotFound / InsufficientStock: Bad cart
        AuthError / GatewaySubmissionError: Gateway refused the request
    """
    validate_order_items(items)

    delivery_fee = Decimal(str(delivery_info.get('fee') or 0))
    if delivery_fee < 0:
        raise OrderValidationError("Delivery fee cannot be negative")

    product_ids = [item['product_id'] for item in items]
    products = Product.objects.available().in_bulk(product_ids)
    missing = set(product_ids) - set(products.keys())
    if missing:
        raise ProductNotFound(missing)

    staged_items = []
    total_amount = delivery_fee
    for item in items:
        product = products[item['product_id']]
        if product.stock < item['quantity']:
            raise InsufficientStock(product.pk, product.name, item['quantity'], product.stock)
        staged_items.append({
            'product_id': product.pk,
            'quantity': item['quantity'],
            'unit_price': str(product.price),
        })
        total_amount += product.price * item['quantity']

    merchant_reference = new_merchant_reference()
    logger.info(
        f"Initiating payment {merchant_reference} for user {user_id}: "
        f"{len(staged_items)} items, total KES {total_amount}"
    )

    first_name, last_name = split_full_name(customer_info.get('full_name', ''))
    token = client.authenticate()
    submitted = client.submit_order(
        SubmitOrderRequest(
            merchant_reference=merchant_reference,
            amount=total_amount,
            description=f"Order for {len(staged_items)} item(s)",
            billing_address=BillingAddress(
                email_address=customer_info.get('email', ''),
                phone_number=customer_info.get('phone', ''),
                first_name=first_name,
                last_name=last_name,
                line_1=customer_info.get('address', ''),
                city=client.config.billing_city,
                country_code=client.config.country_code,
            ),
        ),
        token,
    )

    with transaction.atomic():
        gateway_txn = GatewayTransaction.objects.create(
            tracking_id=submitted.tracking_id,
            merchant_reference=merchant_reference,
            status=TxStatus.PENDING,
            amount=total_amount,
            currency=client.config.currency,
            redirect_url=submitted.redirect_url,
            customer_phone=customer_info.get('phone', ''),
        )
        StagedOrder.objects.create(
            tracking_id=submitted.tracking_id,
            merchant_reference=merchant_reference,
            user_id=user_id,
            items=staged_items,
            customer_info=customer_info,
            delivery_info=delivery_info,
            total_amount=total_amount,
            redirect_url=redirect_url,
        )

    logger.info(f"Payment {merchant_reference} registered as {submitted.tracking_id}")

    return InitiationResult(
        transaction=gateway_txn,
        tracking_id=submitted.tracking_id,
        redirect_url=submitted.redirect_url,
        merchant_reference=merchant_reference,
        total_amount=total_amount,
    )


# =============================================================================
# Status reconciliation
# =============================================================================

@dataclass
class StatusResult:
    status: str
    payment_status: str
    order_id: Optional[str]
    gateway: GatewayStatus


def _record_gateway_status(gateway_txn: GatewayTransaction, status: str,
                           gateway: Optional[GatewayStatus] = None) -> None:
    gateway_txn.status = status
    fields = ['status', 'updated_at']
    if gateway is not None:
        gateway_txn.gateway_status_code = gateway.status_code
        gateway_txn.gateway_status_description = gateway.description[:200]
        fields += ['gateway_status_code', 'gateway_status_description']
    gateway_txn.save(update_fields=fields)


def _refunded(gateway_txn: GatewayTransaction) -> bool:
    """Refunds are terminal; a late completion must not overwrite the reversal."""
    return gateway_txn.order_id is not None and Order.objects.filter(
        pk=gateway_txn.order_id, payment_status=PaymentStatus.REFUNDED
    ).exists()


def _find_by_order(order_id) -> Optional[GatewayTransaction]:
    try:
        return GatewayTransaction.objects.filter(order_id=order_id).first()
    except ValidationError:
        return None


def check_payment_status(client: PesapalClient, tracking_id: Optional[str] = None,
                         order_id: Optional[str] = None,
                         merchant_reference: Optional[str] = None) -> StatusResult:
    """
    Ask the gateway for the live status of a payment and act on it.

    The payment is identified by tracking id, else by order id, else by
    merchant reference (including legacy ``ORDER-<order id>`` references).

    Raises:
        OrderValidationError: No identifier given
        TransactionNotFound: Order id / merchant reference has no transaction
        AuthError / GatewayQueryError: Gateway unavailable; nothing is stored
    """
    if not tracking_id and not order_id and not merchant_reference:
        raise OrderValidationError("orderTrackingId or orderId required")

    if tracking_id:
        gateway_txn = GatewayTransaction.objects.filter(tracking_id=tracking_id).first()
    else:
        gateway_txn = None
        if order_id:
            gateway_txn = _find_by_order(order_id)
        if gateway_txn is None and merchant_reference:
            gateway_txn = GatewayTransaction.objects.filter(
                merchant_reference=merchant_reference
            ).first()
            legacy_order_id = parse_legacy_order_id(merchant_reference)
            if gateway_txn is None and legacy_order_id:
                gateway_txn = _find_by_order(legacy_order_id)
        if gateway_txn is None:
            raise TransactionNotFound(
                f"No transaction for order {order_id or merchant_reference}"
            )
        tracking_id = gateway_txn.tracking_id

    token = client.authenticate()
    gateway = client.query_status(tracking_id, token)
    mapped = map_gateway_status(gateway.status_code, gateway.description)

    logger.info(
        f"Gateway status for {tracking_id}: code={gateway.status_code} "
        f"'{gateway.description}' -> {mapped.transaction_status}/{mapped.payment_status}"
    )

    if gateway_txn is None:
        logger.warning(f"No local transaction for tracking id {tracking_id}; status not stored")
        return StatusResult(mapped.transaction_status, mapped.payment_status, order_id, gateway)

    if mapped.event == PaymentEvent.COMPLETED and _refunded(gateway_txn):
        logger.warning(
            f"Ignoring completed status for {tracking_id}: order {gateway_txn.order_id} "
            "was already refunded"
        )
        return StatusResult(
            status=gateway_txn.status,
            payment_status=PaymentStatus.REFUNDED,
            order_id=str(gateway_txn.order_id),
            gateway=gateway,
        )

    _record_gateway_status(gateway_txn, mapped.transaction_status, gateway)

    resolved_order_id = gateway_txn.order_id
    if mapped.event == PaymentEvent.COMPLETED:
        result = complete_order(tracking_id=gateway_txn.tracking_id)
        resolved_order_id = result.order.pk
    elif mapped.event is not None and resolved_order_id is not None:
        apply_payment_event(resolved_order_id, mapped.event)

    return StatusResult(
        status=mapped.transaction_status,
        payment_status=mapped.payment_status,
        order_id=str(resolved_order_id) if resolved_order_id else None,
        gateway=gateway,
    )


# =============================================================================
# Callback handling
# =============================================================================

@dataclass
class CallbackResult:
    message: str
    order_id: Optional[str] = None
    status: Optional[str] = None
    notification_type: str = ''


def resolve_transaction(payload: CallbackPayload) -> GatewayTransaction:
    """Find the transaction by tracking id, then by merchant reference."""
    gateway_txn = None
    if payload.tracking_id:
        gateway_txn = GatewayTransaction.objects.filter(tracking_id=payload.tracking_id).first()

    if gateway_txn is None and payload.merchant_reference:
        logger.info(
            f"Transaction not found by tracking id, trying merchant reference "
            f"{payload.merchant_reference}"
        )
        gateway_txn = GatewayTransaction.objects.filter(
            merchant_reference=payload.merchant_reference
        ).first()

    if gateway_txn is None:
        raise TransactionNotFound(
            f"Transaction not found for tracking id {payload.tracking_id!r}"
        )
    return gateway_txn


def handle_callback(client: PesapalClient, payload: CallbackPayload) -> CallbackResult:
    """
    Process one gateway notification.

    The notification is logged before anything else; the log entry is marked
    processed only when handling succeeds, otherwise the error is recorded
    and the exception propagates so the gateway retries delivery.
    """
    log_entry = CallbackLog.objects.create(
        tracking_id=payload.tracking_id,
        merchant_reference=payload.merchant_reference,
        notification_type=payload.notification_type or 'unknown',
        raw_payload=payload.to_raw(),
    )

    try:
        if payload.missing_fields:
            raise OrderValidationError(
                f"Missing required callback data: {', '.join(payload.missing_fields)}"
            )
        result = _dispatch_callback(client, payload)
    except Exception as e:
        CallbackLog.objects.filter(pk=log_entry.pk).update(error=str(e)[:2000])
        raise

    CallbackLog.objects.filter(pk=log_entry.pk).update(processed=True)
    return result


def _dispatch_callback(client: PesapalClient, payload: CallbackPayload) -> CallbackResult:
    gateway_txn = resolve_transaction(payload)
    kind = classify_notification(payload.notification_type)
    order_id = str(gateway_txn.order_id) if gateway_txn.order_id else None

    logger.info(
        f"Callback {payload.notification_type or '<empty>'} for "
        f"{gateway_txn.merchant_reference} handled as '{kind}'"
    )

    if kind == NotificationKind.COMPLETED:
        if _refunded(gateway_txn):
            logger.warning(
                f"Ignoring stale completion for {gateway_txn.merchant_reference}: "
                f"order {order_id} was already refunded"
            )
            return CallbackResult(
                message='Payment already refunded',
                order_id=order_id,
                status=gateway_txn.status,
            )
        _record_gateway_status(gateway_txn, TxStatus.COMPLETED)
        result = complete_order(tracking_id=gateway_txn.tracking_id)
        return CallbackResult(
            message='Payment processed successfully',
            order_id=str(result.order.pk),
            status=TxStatus.COMPLETED,
        )

    if kind == NotificationKind.FAILED:
        if payload.notification_type.strip().upper() == 'CANCELLED':
            status, event = TxStatus.CANCELLED, PaymentEvent.CANCELLED
        else:
            status, event = TxStatus.FAILED, PaymentEvent.FAILED
        _record_gateway_status(gateway_txn, status)
        if gateway_txn.order_id:
            apply_payment_event(gateway_txn.order_id, event)
        return CallbackResult(
            message='Payment failure processed',
            order_id=order_id,
            status=status,
        )

    if kind == NotificationKind.QUERY:
        status_result = check_payment_status(client, tracking_id=gateway_txn.tracking_id)
        return CallbackResult(
            message='Status queried successfully',
            order_id=status_result.order_id,
            status=status_result.status,
        )

    logger.warning(f"Unhandled notification type: {payload.notification_type}")
    return CallbackResult(
        message='Callback received but not processed',
        order_id=order_id,
        notification_type=payload.notification_type,
    )
