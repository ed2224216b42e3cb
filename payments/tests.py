"""
Tests for the payment gateway integration.

Test Cases:
1. Gateway status mapping and merchant reference conventions
2. Checkout initiation (validation, staging, gateway failures)
3. Callback handling (all notification types, idempotency, audit log)
4. Status reconciliation (by tracking id, order id, merchant reference)
5. Reconciliation sweep and pending recheck
6. Pesapal HTTP client
7. REST endpoints
"""
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock
from urllib.parse import urlencode
import uuid

import requests
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from inventory.models import Product
from orders.models import DeliveryStatus, Order, PaymentStatus
from orders.services import complete_order
from orders.tests import create_catalog, stage_checkout
from orders.transitions import PaymentEvent
from payments.callbacks import CallbackPayload
from payments.exceptions import (
    AuthError,
    GatewayQueryError,
    GatewaySubmissionError,
    InsufficientStock,
    OrderValidationError,
    ProductNotFound,
    TransactionNotFound,
)
from payments.gateway import (
    BillingAddress,
    GatewayConfig,
    GatewayStatus,
    PesapalClient,
    SubmitOrderRequest,
    SubmitOrderResult,
)
from payments.models import CallbackLog, GatewayTransaction, StagedOrder
from payments.reconciliation import recheck_pending_transactions, run_reconciliation_sweep
from payments.services import (
    check_payment_status,
    handle_callback,
    initiate_payment,
    split_full_name,
)
from payments.status import (
    NotificationKind,
    classify_notification,
    map_gateway_status,
    new_merchant_reference,
    parse_legacy_order_id,
)
from payments.tasks import reconcile_payments

TxStatus = GatewayTransaction.Status

GATEWAY_CONFIG = GatewayConfig(
    base_url='https://pesapal.test/v3/api',
    consumer_key='key',
    consumer_secret='secret',
    ipn_id='ipn-1',
    callback_url='https://shop.test/order-success',
)

CUSTOMER = {
    'full_name': 'Otieno Odhiambo Junior',
    'email': 'otieno@example.com',
    'phone': '+254711000000',
    'address': 'Kisumu Road',
}

DELIVERY = {
    'address': 'Kisumu Road, Nairobi',
    'coordinates': {'lat': -1.3, 'lng': 36.8},
    'zone': 'West',
    'fee': Decimal('150.00'),
    'estimated_time': 30,
}


class FakeGateway:
    """In-memory stand-in for PesapalClient."""

    def __init__(self, status_code=1, description='Completed', error=None):
        self.config = GATEWAY_CONFIG
        self.status_code = status_code
        self.description = description
        self.error = error
        self.submitted = []
        self.queries = []

    def authenticate(self):
        if self.error:
            raise self.error
        return 'token'

    def submit_order(self, request, token):
        self.submitted.append(request)
        return SubmitOrderResult(
            tracking_id=f'TRK-NEW-{len(self.submitted)}',
            merchant_reference=request.merchant_reference,
            redirect_url='https://pay.pesapal.test/iframe/abc',
        )

    def query_status(self, tracking_id, token):
        self.queries.append(tracking_id)
        return GatewayStatus(status_code=self.status_code, description=self.description)


class StatusMappingTestCase(TestCase):
    """Test cases for gateway status mapping."""

    def test_status_codes(self):
        completed = map_gateway_status(1, 'Completed')
        self.assertEqual(completed.transaction_status, TxStatus.COMPLETED)
        self.assertEqual(completed.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(completed.event, PaymentEvent.COMPLETED)

        failed = map_gateway_status(2, 'Failed')
        self.assertEqual(failed.transaction_status, TxStatus.FAILED)
        self.assertEqual(failed.payment_status, PaymentStatus.FAILED)

        reversed_ = map_gateway_status(3, 'Reversed')
        self.assertEqual(reversed_.transaction_status, TxStatus.FAILED)
        self.assertEqual(reversed_.payment_status, PaymentStatus.REFUNDED)
        self.assertEqual(reversed_.event, PaymentEvent.REVERSED)

    def test_unknown_codes_are_pending(self):
        for code in (0, 99, None, 'abc'):
            mapped = map_gateway_status(code, 'INVALID')
            self.assertEqual(mapped.transaction_status, TxStatus.PENDING)
            self.assertIsNone(mapped.event)

    def test_cancel_description_wins(self):
        mapped = map_gateway_status(2, 'Payment Cancelled by user')
        self.assertEqual(mapped.transaction_status, TxStatus.CANCELLED)
        self.assertEqual(mapped.payment_status, PaymentStatus.CANCELLED)

    def test_classify_notification(self):
        self.assertEqual(classify_notification('COMPLETED'), NotificationKind.COMPLETED)
        self.assertEqual(classify_notification('success'), NotificationKind.COMPLETED)
        self.assertEqual(classify_notification('CANCELLED'), NotificationKind.FAILED)
        self.assertEqual(classify_notification('IPNCHANGE'), NotificationKind.QUERY)
        self.assertEqual(classify_notification(''), NotificationKind.QUERY)
        self.assertEqual(classify_notification(None), NotificationKind.QUERY)
        self.assertEqual(classify_notification('RECURRING'), NotificationKind.UNHANDLED)

    def test_merchant_reference_format(self):
        first = new_merchant_reference()
        second = new_merchant_reference()

        self.assertRegex(first, r'^ORDER-\d{13}-[0-9a-f]{10}$')
        self.assertNotEqual(first, second)

    def test_legacy_order_id(self):
        order_id = uuid.uuid4()

        self.assertEqual(parse_legacy_order_id(f'ORDER-{order_id}'), str(order_id))
        self.assertIsNone(parse_legacy_order_id(new_merchant_reference()))
        self.assertIsNone(parse_legacy_order_id('ORDER-'))
        self.assertIsNone(parse_legacy_order_id(f'INV-{order_id}'))
        self.assertIsNone(parse_legacy_order_id(None))


class InitiatePaymentTestCase(TestCase):
    """Test cases for checkout initiation."""

    def setUp(self):
        create_catalog(self)
        self.gateway = FakeGateway()

    def _initiate(self, items, **kwargs):
        return initiate_payment(
            self.gateway,
            user_id='user-9',
            items=items,
            customer_info=kwargs.get('customer_info', CUSTOMER),
            delivery_info=kwargs.get('delivery_info', DELIVERY),
            redirect_url='https://shop.test/done',
        )

    def test_initiation_stages_order(self):
        """
        Test: Checkout registers a PENDING transaction and staged data.

        Given: 2 units of A (500) and 1 of B (1200), delivery 150
        When: Initiating payment
        Then: Total 2350, transaction and staged order persisted, no Order
        """
        result = self._initiate([
            {'product_id': self.product_a.pk, 'quantity': 2},
            {'product_id': self.product_b.pk, 'quantity': 1},
        ])

        self.assertEqual(result.total_amount, Decimal('2350.00'))
        self.assertEqual(result.tracking_id, 'TRK-NEW-1')
        self.assertEqual(result.redirect_url, 'https://pay.pesapal.test/iframe/abc')
        self.assertTrue(result.merchant_reference.startswith('ORDER-'))

        gateway_txn = GatewayTransaction.objects.get(tracking_id='TRK-NEW-1')
        self.assertEqual(gateway_txn.status, TxStatus.PENDING)
        self.assertEqual(gateway_txn.amount, Decimal('2350.00'))
        self.assertEqual(gateway_txn.customer_phone, CUSTOMER['phone'])

        staged = StagedOrder.objects.get(tracking_id='TRK-NEW-1')
        self.assertEqual(staged.user_id, 'user-9')
        self.assertEqual(staged.items[0]['unit_price'], '500.00')
        self.assertEqual(staged.total_amount, Decimal('2350.00'))
        self.assertEqual(staged.redirect_url, 'https://shop.test/done')

        self.assertEqual(Order.objects.count(), 0)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 10)

    def test_billing_details_sent_to_gateway(self):
        self._initiate([{'product_id': self.product_a.pk, 'quantity': 1}])

        request = self.gateway.submitted[0]
        self.assertEqual(request.amount, Decimal('650.00'))
        self.assertEqual(request.billing_address.first_name, 'Otieno')
        self.assertEqual(request.billing_address.last_name, 'Odhiambo Junior')
        self.assertEqual(request.billing_address.country_code, 'KE')

    def test_split_full_name(self):
        self.assertEqual(split_full_name('Amina'), ('Amina', 'User'))
        self.assertEqual(split_full_name(''), ('Customer', 'User'))

    def test_validation_error_empty_items(self):
        with self.assertRaises(OrderValidationError) as context:
            self._initiate([])
        self.assertIn('at least one item', str(context.exception))

    def test_validation_error_duplicate_products(self):
        with self.assertRaises(OrderValidationError) as context:
            self._initiate([
                {'product_id': self.product_a.pk, 'quantity': 1},
                {'product_id': self.product_a.pk, 'quantity': 2},
            ])
        self.assertIn('duplicate', str(context.exception).lower())

    def test_unknown_and_inactive_products(self):
        Product.objects.filter(pk=self.product_b.pk).update(is_active=False)

        with self.assertRaises(ProductNotFound) as context:
            self._initiate([
                {'product_id': self.product_b.pk, 'quantity': 1},
                {'product_id': 99999, 'quantity': 1},
            ])

        self.assertEqual(context.exception.product_ids, sorted([self.product_b.pk, 99999]))
        self.assertEqual(self.gateway.submitted, [])

    def test_insufficient_stock(self):
        with self.assertRaises(InsufficientStock) as context:
            self._initiate([{'product_id': self.product_b.pk, 'quantity': 6}])

        self.assertIn('Starter Crumble', str(context.exception))
        self.assertEqual(context.exception.available, 5)
        self.assertEqual(GatewayTransaction.objects.count(), 0)

    def test_gateway_failure_persists_nothing(self):
        self.gateway.error = AuthError('Pesapal credentials not configured')

        with self.assertRaises(AuthError):
            self._initiate([{'product_id': self.product_a.pk, 'quantity': 1}])

        self.assertEqual(GatewayTransaction.objects.count(), 0)
        self.assertEqual(StagedOrder.objects.count(), 0)


class CallbackHandlingTestCase(TestCase):
    """Test cases for gateway notification handling."""

    def setUp(self):
        create_catalog(self)
        self.gateway = FakeGateway()
        stage_checkout('TRK-CB', [(self.product_a, 3), (self.product_b, 1)])

    def _payload(self, notification_type='COMPLETED', tracking_id='TRK-CB',
                 merchant_reference='ORDER-TRK-CB'):
        return CallbackPayload(
            tracking_id=tracking_id,
            merchant_reference=merchant_reference,
            notification_type=notification_type,
        )

    def test_completed_callback(self):
        result = handle_callback(self.gateway, self._payload())

        order = Order.objects.get()
        self.assertEqual(result.order_id, str(order.pk))
        self.assertEqual(order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(GatewayTransaction.objects.get().status, TxStatus.COMPLETED)

        log = CallbackLog.objects.get()
        self.assertTrue(log.processed)
        self.assertEqual(log.raw_payload['OrderTrackingId'], 'TRK-CB')

    def test_duplicate_callbacks_deduct_once(self):
        """
        Test: Redelivered notifications converge on one order.

        Given: The same COMPLETED notification delivered 3 times
        Then: One order, stock deducted once, 3 processed log entries
        """
        for _ in range(3):
            handle_callback(self.gateway, self._payload())

        self.assertEqual(Order.objects.count(), 1)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 7)
        self.assertEqual(CallbackLog.objects.filter(processed=True).count(), 3)

    def test_resolves_by_merchant_reference(self):
        result = handle_callback(
            self.gateway, self._payload(tracking_id='TRK-UNKNOWN')
        )

        self.assertIsNotNone(result.order_id)
        self.assertEqual(Order.objects.count(), 1)

    def test_unresolvable_transaction(self):
        """
        Test: Unknown identifiers fail with 404 semantics but are still logged.
        """
        with self.assertRaises(TransactionNotFound):
            handle_callback(
                self.gateway,
                self._payload(tracking_id='TRK-X', merchant_reference='ORDER-X')
            )

        log = CallbackLog.objects.get()
        self.assertFalse(log.processed)
        self.assertIn('not found', log.error)

    def test_missing_fields(self):
        with self.assertRaises(OrderValidationError):
            handle_callback(self.gateway, self._payload(tracking_id='', merchant_reference=''))

        log = CallbackLog.objects.get()
        self.assertFalse(log.processed)
        self.assertIn('OrderTrackingId', log.error)

    def test_failed_callback_before_order_exists(self):
        result = handle_callback(self.gateway, self._payload('FAILED'))

        self.assertEqual(result.status, TxStatus.FAILED)
        self.assertIsNone(result.order_id)
        self.assertEqual(GatewayTransaction.objects.get().status, TxStatus.FAILED)
        self.assertEqual(Order.objects.count(), 0)

    def test_cancelled_callback_cancels_order(self):
        order = complete_order(tracking_id='TRK-CB').order
        Order.objects.filter(pk=order.pk).update(payment_status=PaymentStatus.PENDING)

        handle_callback(self.gateway, self._payload('CANCELLED'))

        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.CANCELLED)
        self.assertEqual(order.delivery_status, DeliveryStatus.CANCELLED)
        self.assertEqual(GatewayTransaction.objects.get().status, TxStatus.CANCELLED)

    def test_late_failure_does_not_undo_payment(self):
        handle_callback(self.gateway, self._payload('COMPLETED'))
        handle_callback(self.gateway, self._payload('FAILED'))

        self.assertEqual(Order.objects.get().payment_status, PaymentStatus.COMPLETED)

    def test_completed_redelivery_after_reversal(self):
        """
        Test: A redelivered COMPLETED notification cannot reopen a refund.

        Given: A paid order that the gateway then reversed
        When: The original COMPLETED notification arrives again
        Then: It is acknowledged, the order stays refunded, the transaction
              keeps its reversal status and the sweep finds nothing to fix
        """
        handle_callback(self.gateway, self._payload('COMPLETED'))
        self.gateway.status_code = 3
        self.gateway.description = 'Reversed'
        check_payment_status(self.gateway, tracking_id='TRK-CB')

        result = handle_callback(self.gateway, self._payload('COMPLETED'))

        self.assertEqual(result.message, 'Payment already refunded')
        self.assertEqual(result.status, TxStatus.FAILED)
        self.assertTrue(CallbackLog.objects.latest('id').processed)

        order = Order.objects.get()
        self.assertEqual(order.payment_status, PaymentStatus.REFUNDED)
        gateway_txn = GatewayTransaction.objects.get()
        self.assertEqual(gateway_txn.status, TxStatus.FAILED)
        self.assertEqual(gateway_txn.gateway_status_code, 3)

        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 7)

        report = run_reconciliation_sweep()
        self.assertEqual(report['total_checked'], 0)
        self.assertEqual(report['errors'], [])

    def test_ipn_change_queries_gateway(self):
        result = handle_callback(self.gateway, self._payload('IPNCHANGE'))

        self.assertEqual(self.gateway.queries, ['TRK-CB'])
        self.assertEqual(result.status, TxStatus.COMPLETED)
        self.assertEqual(Order.objects.get().payment_status, PaymentStatus.COMPLETED)

    def test_empty_type_queries_gateway(self):
        self.gateway.status_code = 0
        result = handle_callback(self.gateway, self._payload(''))

        self.assertEqual(self.gateway.queries, ['TRK-CB'])
        self.assertEqual(result.status, TxStatus.PENDING)
        self.assertEqual(Order.objects.count(), 0)

    def test_unhandled_type(self):
        result = handle_callback(self.gateway, self._payload('RECURRING'))

        self.assertEqual(result.message, 'Callback received but not processed')
        self.assertEqual(self.gateway.queries, [])
        self.assertTrue(CallbackLog.objects.get().processed)


class StatusReconcilerTestCase(TestCase):
    """Test cases for active status reconciliation."""

    def setUp(self):
        create_catalog(self)
        self.gateway = FakeGateway()
        self.gateway_txn = stage_checkout('TRK-ST', [(self.product_a, 2)])

    def test_completed_status_completes_order(self):
        result = check_payment_status(self.gateway, tracking_id='TRK-ST')

        self.assertEqual(result.status, TxStatus.COMPLETED)
        self.assertEqual(result.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(result.order_id, str(Order.objects.get().pk))

        self.gateway_txn.refresh_from_db()
        self.assertEqual(self.gateway_txn.gateway_status_code, 1)
        self.assertEqual(self.gateway_txn.gateway_status_description, 'Completed')

    def test_repeated_polling_deducts_once(self):
        for _ in range(4):
            check_payment_status(self.gateway, tracking_id='TRK-ST')

        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 8)

    def test_failed_status(self):
        self.gateway.status_code = 2
        self.gateway.description = 'Failed'

        result = check_payment_status(self.gateway, tracking_id='TRK-ST')

        self.assertEqual(result.status, TxStatus.FAILED)
        self.assertIsNone(result.order_id)
        self.assertEqual(Order.objects.count(), 0)

    def test_reversal_refunds_order(self):
        order = check_payment_status(self.gateway, tracking_id='TRK-ST').order_id
        self.gateway.status_code = 3
        self.gateway.description = 'Reversed'

        result = check_payment_status(self.gateway, order_id=order)

        self.assertEqual(result.payment_status, PaymentStatus.REFUNDED)
        refunded = Order.objects.get(pk=order)
        self.assertEqual(refunded.payment_status, PaymentStatus.REFUNDED)
        self.assertEqual(refunded.delivery_status, DeliveryStatus.CANCELLED)

    def test_completed_status_after_reversal_keeps_refund(self):
        order = check_payment_status(self.gateway, tracking_id='TRK-ST').order_id
        self.gateway.status_code = 3
        self.gateway.description = 'Reversed'
        check_payment_status(self.gateway, tracking_id='TRK-ST')
        self.gateway.status_code = 1
        self.gateway.description = 'Completed'

        result = check_payment_status(self.gateway, tracking_id='TRK-ST')

        self.assertEqual(result.payment_status, PaymentStatus.REFUNDED)
        self.assertEqual(result.order_id, order)
        self.gateway_txn.refresh_from_db()
        self.assertEqual(self.gateway_txn.status, TxStatus.FAILED)
        self.assertEqual(self.gateway_txn.gateway_status_code, 3)
        self.assertEqual(
            Order.objects.get(pk=order).payment_status, PaymentStatus.REFUNDED
        )

    def test_lookup_by_merchant_reference(self):
        result = check_payment_status(self.gateway, merchant_reference='ORDER-TRK-ST')
        self.assertEqual(self.gateway.queries, ['TRK-ST'])
        self.assertIsNotNone(result.order_id)

    def test_lookup_by_legacy_merchant_reference(self):
        order_id = complete_order(tracking_id='TRK-ST').order.pk

        result = check_payment_status(self.gateway, merchant_reference=f'ORDER-{order_id}')

        self.assertEqual(result.order_id, str(order_id))

    def test_unknown_order_id(self):
        with self.assertRaises(TransactionNotFound):
            check_payment_status(self.gateway, order_id=str(uuid.uuid4()))
        with self.assertRaises(TransactionNotFound):
            check_payment_status(self.gateway, order_id='garbage')

    def test_missing_identifiers(self):
        with self.assertRaises(OrderValidationError):
            check_payment_status(self.gateway)

    def test_unknown_tracking_id_not_stored(self):
        result = check_payment_status(self.gateway, tracking_id='TRK-ELSEWHERE')

        self.assertEqual(result.status, TxStatus.COMPLETED)
        self.assertIsNone(result.order_id)
        self.assertEqual(Order.objects.count(), 0)

    def test_gateway_error_leaves_status_untouched(self):
        self.gateway.error = GatewayQueryError('timeout')

        with self.assertRaises(GatewayQueryError):
            check_payment_status(self.gateway, tracking_id='TRK-ST')

        self.gateway_txn.refresh_from_db()
        self.assertEqual(self.gateway_txn.status, TxStatus.PENDING)
        self.assertIsNone(self.gateway_txn.gateway_status_code)


class ReconciliationSweepTestCase(TestCase):
    """Test cases for the reconciliation sweep and pending recheck."""

    def setUp(self):
        create_catalog(self)
        Product.objects.update(stock=100)

    def test_sweep_completes_all_out_of_sync_orders(self):
        """
        Test: One sweep converges N paid-but-pending orders.

        Given: 3 COMPLETED transactions, two never materialized and one
               whose order still says pending
        When: Running the sweep
        Then: All 3 orders are completed; a second run finds nothing
        """
        stage_checkout('TRK-S1', [(self.product_a, 1)], txn_status=TxStatus.COMPLETED)
        stage_checkout('TRK-S2', [(self.product_b, 2)], txn_status=TxStatus.COMPLETED)
        stage_checkout('TRK-S3', [(self.product_a, 4)], txn_status=TxStatus.COMPLETED)
        lagging = complete_order(tracking_id='TRK-S3').order
        Order.objects.filter(pk=lagging.pk).update(payment_status=PaymentStatus.PENDING)

        report = run_reconciliation_sweep()

        self.assertEqual(report['total_checked'], 3)
        self.assertEqual(len(report['fixed']), 3)
        self.assertIn(str(lagging.pk), report['fixed'])
        self.assertEqual(report['errors'], [])
        self.assertEqual(
            Order.objects.filter(payment_status=PaymentStatus.COMPLETED).count(), 3
        )

        self.assertEqual(run_reconciliation_sweep()['total_checked'], 0)

    def test_sweep_isolates_failures(self):
        stage_checkout('TRK-OK', [(self.product_a, 1)], txn_status=TxStatus.COMPLETED)
        stage_checkout('TRK-BAD', [(self.product_b, 1)], txn_status=TxStatus.COMPLETED)
        StagedOrder.objects.filter(tracking_id='TRK-BAD').update(
            items=[{'product_id': 99999, 'quantity': 1, 'unit_price': '10.00'}]
        )

        report = run_reconciliation_sweep()

        self.assertEqual(len(report['fixed']), 1)
        self.assertEqual(len(report['errors']), 1)
        self.assertEqual(report['errors'][0]['trackingId'], 'TRK-BAD')

    def test_sweep_ignores_pending_transactions(self):
        stage_checkout('TRK-P', [(self.product_a, 1)])
        self.assertEqual(run_reconciliation_sweep()['total_checked'], 0)

    def test_sweep_skips_refunded_orders(self):
        stage_checkout('TRK-R', [(self.product_a, 1)], txn_status=TxStatus.COMPLETED)
        order = complete_order(tracking_id='TRK-R').order
        Order.objects.filter(pk=order.pk).update(payment_status=PaymentStatus.REFUNDED)

        report = run_reconciliation_sweep()

        self.assertEqual(report['total_checked'], 0)
        self.assertEqual(report['errors'], [])

    def test_reconcile_task(self):
        stage_checkout('TRK-T', [(self.product_a, 1)], txn_status=TxStatus.COMPLETED)

        report = reconcile_payments()

        self.assertEqual(len(report['fixed']), 1)

    def test_reconcile_command(self):
        stage_checkout('TRK-C', [(self.product_a, 1)], txn_status=TxStatus.COMPLETED)
        out = StringIO()

        call_command('reconcile_payments', stdout=out)

        self.assertIn('"total_checked": 1', out.getvalue())
        self.assertIn('1 fixed', out.getvalue())

    def test_recheck_pending(self):
        gateway = FakeGateway(status_code=0, description='INVALID')
        now = timezone.now()
        stage_checkout('TRK-STALE', [(self.product_a, 1)])
        stage_checkout('TRK-FRESH', [(self.product_a, 1)])
        stage_checkout('TRK-ABANDONED', [(self.product_a, 1)])
        GatewayTransaction.objects.filter(tracking_id='TRK-STALE').update(
            created_at=now - timedelta(minutes=30)
        )
        GatewayTransaction.objects.filter(tracking_id='TRK-ABANDONED').update(
            created_at=now - timedelta(days=5)
        )

        report = recheck_pending_transactions(gateway, older_than_minutes=10, max_age_hours=48)

        self.assertEqual(gateway.queries, ['TRK-STALE'])
        self.assertEqual(report['statuses'], {'TRK-STALE': TxStatus.PENDING})


def _response(ok=True, status_code=200, data=None, text=''):
    response = mock.MagicMock(ok=ok, status_code=status_code, text=text)
    if data is None:
        response.json.side_effect = ValueError('No JSON object could be decoded')
    else:
        response.json.return_value = data
    return response


class PesapalClientTestCase(TestCase):
    """Test cases for the gateway HTTP client."""

    def setUp(self):
        self.session = mock.MagicMock()
        self.submit_session = mock.MagicMock()
        self.client = PesapalClient(
            GATEWAY_CONFIG, session=self.session, submit_session=self.submit_session
        )

    def test_authenticate(self):
        self.session.post.return_value = _response(
            data={'token': 'tok', 'expiryDate': '2026-01-01', 'error': None, 'status': '200'}
        )

        self.assertEqual(self.client.authenticate(), 'tok')
        url = self.session.post.call_args[0][0]
        self.assertEqual(url, 'https://pesapal.test/v3/api/Auth/RequestToken')

    def test_authenticate_without_credentials(self):
        client = PesapalClient(
            GatewayConfig(base_url='https://x', consumer_key='', consumer_secret='',
                          ipn_id='', callback_url=''),
            session=self.session
        )
        with self.assertRaises(AuthError):
            client.authenticate()
        self.session.post.assert_not_called()

    def test_authenticate_error_body(self):
        self.session.post.return_value = _response(
            data={'error': {'code': 'invalid_consumer_key', 'message': 'Invalid key'}}
        )
        with self.assertRaises(AuthError) as context:
            self.client.authenticate()
        self.assertIn('Invalid key', str(context.exception))

    def test_authenticate_http_error(self):
        self.session.post.return_value = _response(ok=False, status_code=401, text='nope')
        with self.assertRaises(AuthError) as context:
            self.client.authenticate()
        self.assertEqual(context.exception.status_code, 401)

    def test_submit_order(self):
        self.submit_session.post.return_value = _response(data={
            'order_tracking_id': 'TRK-9',
            'merchant_reference': 'ORDER-1',
            'redirect_url': 'https://pay.test/iframe',
            'error': {},
        })
        request = SubmitOrderRequest(
            merchant_reference='ORDER-1',
            amount=Decimal('650.50'),
            description='Order for 1 item(s)',
            billing_address=BillingAddress(
                email_address='a@b.test', phone_number='+254700', first_name='A', last_name='B'
            ),
        )

        result = self.client.submit_order(request, 'tok')

        self.assertEqual(result.tracking_id, 'TRK-9')
        self.assertEqual(result.redirect_url, 'https://pay.test/iframe')
        self.session.post.assert_not_called()

        _, kwargs = self.submit_session.post.call_args
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer tok')
        payload = kwargs['json']
        self.assertEqual(payload['id'], 'ORDER-1')
        self.assertEqual(payload['amount'], 650.5)
        self.assertEqual(payload['currency'], 'KES')
        self.assertEqual(payload['notification_id'], 'ipn-1')
        self.assertEqual(payload['callback_url'], 'https://shop.test/order-success')
        self.assertNotIn('line_1', payload['billing_address'])

    def test_submit_order_rejected(self):
        self.submit_session.post.return_value = _response(
            data={'error': {'message': 'Invalid amount'}, 'status': '500'}
        )
        request = SubmitOrderRequest('ORDER-2', Decimal('1'), 'x', BillingAddress('', '', 'A', 'B'))

        with self.assertRaises(GatewaySubmissionError) as context:
            self.client.submit_order(request, 'tok')
        self.assertIn('Invalid amount', str(context.exception))

    def test_query_status(self):
        self.session.get.return_value = _response(data={
            'status_code': 1,
            'payment_status_description': 'Completed',
            'merchant_reference': 'ORDER-1',
            'amount': 650.5,
            'currency': 'KES',
            'confirmation_code': 'QWE123',
            'payment_method': 'MpesaKE',
            'error': {'error_type': None, 'code': None, 'message': None},
        })

        status_ = self.client.query_status('TRK-9', 'tok')

        self.assertEqual(status_.status_code, 1)
        self.assertEqual(status_.description, 'Completed')
        self.assertEqual(status_.amount, Decimal('650.5'))
        self.assertEqual(status_.confirmation_code, 'QWE123')
        self.assertEqual(self.session.get.call_args[1]['params'], {'orderTrackingId': 'TRK-9'})

    def test_query_status_non_numeric_code(self):
        self.session.get.return_value = _response(data={
            'status_code': 'N/A',
            'payment_status_description': 'INVALID',
            'amount': 'unknown',
            'error': None,
        })

        status_ = self.client.query_status('TRK-9', 'tok')

        self.assertIsNone(status_.status_code)
        self.assertIsNone(status_.amount)
        self.assertEqual(
            map_gateway_status(status_.status_code, status_.description).transaction_status,
            TxStatus.PENDING
        )

    def test_query_status_non_json(self):
        self.session.get.return_value = _response(text='<html>')
        with self.assertRaises(GatewayQueryError):
            self.client.query_status('TRK-9', 'tok')

    def test_query_status_network_error(self):
        self.session.get.side_effect = requests.ConnectionError('connection refused')
        with self.assertRaises(GatewayQueryError):
            self.client.query_status('TRK-9', 'tok')


@override_settings(RATE_LIMIT_ENABLED=False)
class PaymentAPITestCase(APITestCase):
    """Test cases for the payment endpoints."""

    def setUp(self):
        create_catalog(self)
        self.gateway = FakeGateway()
        patcher = mock.patch('payments.views.get_gateway_client', return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)
        stage_checkout('TRK-API', [(self.product_a, 3)])

    def _checkout_body(self, quantity=1):
        return {
            'user_id': 'user-5',
            'items': [{'product_id': self.product_a.pk, 'quantity': quantity}],
            'customer_info': {
                'full_name': 'Achieng Atieno',
                'email': 'achieng@example.com',
                'phone': '+254722000000',
            },
            'delivery_info': {
                'address': 'Ngong Road',
                'coordinates': {'lat': -1.3, 'lng': 36.78},
                'zone': 'South',
                'fee': '250.00',
                'estimated_time': 40,
            },
            'redirect_url': 'https://shop.test/order-success',
        }

    def test_checkout(self):
        response = self.client.post(reverse('payments:checkout'), self._checkout_body(), format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['tracking_id'], 'TRK-NEW-1')
        self.assertEqual(response.data['iframe_url'], 'https://pay.pesapal.test/iframe/abc')
        self.assertEqual(response.data['total_amount'], '750.00')

        staged = StagedOrder.objects.get(tracking_id='TRK-NEW-1')
        self.assertEqual(staged.delivery_info['fee'], '250.00')
        self.assertEqual(staged.delivery_info['coordinates'], {'lat': -1.3, 'lng': 36.78})

    def test_checkout_validation_error(self):
        body = self._checkout_body()
        body['items'] = []

        response = self.client.post(reverse('payments:checkout'), body, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_checkout_insufficient_stock(self):
        response = self.client.post(reverse('payments:checkout'), self._checkout_body(50), format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data['success'])
        self.assertIn('Insufficient stock', response.data['error'])

    def test_checkout_gateway_down(self):
        self.gateway.error = AuthError('Failed to reach Pesapal')

        response = self.client.post(reverse('payments:checkout'), self._checkout_body(), format='json')

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)

    def test_callback_query_params(self):
        response = self.client.get(reverse('payments:callback'), {
            'OrderTrackingId': 'TRK-API',
            'OrderMerchantReference': 'ORDER-TRK-API',
            'OrderNotificationType': 'COMPLETED',
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['orderId'], str(Order.objects.get().pk))

    def test_callback_form_encoded(self):
        response = self.client.post(
            reverse('payments:callback'),
            urlencode({
                'OrderTrackingId': 'TRK-API',
                'OrderMerchantReference': 'ORDER-TRK-API',
                'OrderNotificationType': 'COMPLETED',
            }),
            content_type='application/x-www-form-urlencoded'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(Order.objects.count(), 1)

    def test_callback_json(self):
        response = self.client.post(reverse('payments:callback'), {
            'OrderTrackingId': 'TRK-API',
            'OrderMerchantReference': 'ORDER-TRK-API',
            'OrderNotificationType': 'IPNCHANGE',
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(self.gateway.queries, ['TRK-API'])

    def test_callback_malformed_body_falls_back_to_query(self):
        url = reverse('payments:callback') + '?' + urlencode({
            'OrderTrackingId': 'TRK-API',
            'OrderMerchantReference': 'ORDER-TRK-API',
            'OrderNotificationType': 'COMPLETED',
        })

        response = self.client.post(url, '{not json', content_type='application/json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(CallbackLog.objects.get().raw_payload['OrderTrackingId'], 'TRK-API')

    def test_callback_missing_fields(self):
        response = self.client.get(reverse('payments:callback'), {'OrderNotificationType': 'COMPLETED'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(CallbackLog.objects.count(), 1)

    def test_callback_unknown_transaction(self):
        response = self.client.get(reverse('payments:callback'), {
            'OrderTrackingId': 'TRK-NOPE',
            'OrderMerchantReference': 'ORDER-NOPE',
            'OrderNotificationType': 'COMPLETED',
        })

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertFalse(CallbackLog.objects.get().processed)

    def test_callback_completion_failure_returns_500(self):
        StagedOrder.objects.filter(tracking_id='TRK-API').delete()

        response = self.client.get(reverse('payments:callback'), {
            'OrderTrackingId': 'TRK-API',
            'OrderMerchantReference': 'ORDER-TRK-API',
            'OrderNotificationType': 'COMPLETED',
        })

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertFalse(CallbackLog.objects.get().processed)

    def test_status_endpoint(self):
        response = self.client.get(reverse('payments:status'), {'orderTrackingId': 'TRK-API'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'COMPLETED')
        self.assertEqual(response.data['paymentStatus'], 'completed')
        self.assertEqual(response.data['orderId'], str(Order.objects.get().pk))

    def test_status_endpoint_post(self):
        response = self.client.post(
            reverse('payments:status'), {'OrderMerchantReference': 'ORDER-TRK-API'}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_status_endpoint_requires_identifier(self):
        response = self.client.get(reverse('payments:status'))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_status_endpoint_degrades_on_gateway_error(self):
        self.gateway.error = GatewayQueryError('timeout')

        response = self.client.get(reverse('payments:status'), {'orderTrackingId': 'TRK-API'})

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        self.assertEqual(response.data['status'], 'UNKNOWN')
        self.assertIn('check back', response.data['message'])

    def test_reconcile_endpoint(self):
        GatewayTransaction.objects.filter(tracking_id='TRK-API').update(status=TxStatus.COMPLETED)

        response = self.client.post(reverse('payments:reconcile'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['fixed']), 1)
        self.assertEqual(Order.objects.get().payment_status, PaymentStatus.COMPLETED)
