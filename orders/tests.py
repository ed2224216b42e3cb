"""
Tests for order completion and payment status transitions.

Test Cases:
1. Completion materializes the order and deducts stock
2. Repeated completion deducts stock exactly once
3. Stock never drops below zero
4. Atomic rollback when materialization fails
5. Payment transition table and delivery cancellation
6. Concurrent completion race condition prevention
"""
from decimal import Decimal
from unittest import mock
import threading
import uuid

from django.db import IntegrityError, OperationalError, connection, transaction
from django.test import TestCase, TransactionTestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from inventory.models import Category, Product
from orders.models import AdminNotification, DeliveryStatus, Order, OrderItem, PaymentStatus
from orders.services import apply_payment_event, complete_order, update_delivery_status
from orders.tasks import notify_order_completed
from orders.transitions import (
    InvalidTransition,
    PaymentEvent,
    completable_statuses,
    delivery_status_after,
    delivery_update_warnings,
    next_payment_status,
)
from payments.exceptions import (
    OrderNotFound,
    ProductNotFound,
    StagedOrderMissing,
    TransactionNotFound,
)
from payments.models import GatewayTransaction, StagedOrder


def stage_checkout(tracking_id, lines, delivery_fee=Decimal('200.00'),
                   txn_status=GatewayTransaction.Status.PENDING):
    """Create a gateway transaction plus staged order for (product, quantity) lines."""
    items = [
        {'product_id': product.pk, 'quantity': quantity, 'unit_price': str(product.price)}
        for product, quantity in lines
    ]
    total = sum((product.price * quantity for product, quantity in lines), delivery_fee)
    gateway_txn = GatewayTransaction.objects.create(
        tracking_id=tracking_id,
        merchant_reference=f'ORDER-{tracking_id}',
        status=txn_status,
        amount=total,
    )
    StagedOrder.objects.create(
        tracking_id=tracking_id,
        merchant_reference=gateway_txn.merchant_reference,
        user_id='user-1',
        items=items,
        customer_info={
            'full_name': 'Wanjiku Kamau',
            'email': 'wanjiku@example.com',
            'phone': '+254700000001',
            'address': 'Kiambu Road',
        },
        delivery_info={
            'address': 'Kiambu Road, Nairobi',
            'coordinates': {'lat': -1.2, 'lng': 36.83},
            'zone': 'North',
            'fee': str(delivery_fee),
            'distance_km': '12.5',
            'estimated_time': 45,
        },
        total_amount=total,
    )
    return gateway_txn


def create_catalog(test):
    test.category = Category.objects.create(name='Fish Feed')
    test.product_a = Product.objects.create(
        name='Floating Pellets 2mm',
        price=Decimal('500.00'),
        category=test.category,
        stock=10
    )
    test.product_b = Product.objects.create(
        name='Starter Crumble',
        price=Decimal('1200.00'),
        category=test.category,
        stock=5
    )


class OrderCompletionTestCase(TestCase):
    """Test cases for the order completion transition."""

    def setUp(self):
        create_catalog(self)
        self.gateway_txn = stage_checkout(
            'TRK-1', [(self.product_a, 3), (self.product_b, 1)]
        )

    def test_completion_materializes_order(self):
        """
        Test: First completion creates the order from staged data.

        Given: A staged checkout with 2 lines
        When: Completing by tracking id
        Then: Order exists, is paid, is linked to the transaction
        """
        result = complete_order(tracking_id='TRK-1')

        self.assertTrue(result.created)
        self.assertFalse(result.already_completed)

        order = result.order
        self.assertEqual(order.payment_status, PaymentStatus.COMPLETED)
        self.assertIsNotNone(order.paid_at)
        self.assertEqual(order.customer_name, 'Wanjiku Kamau')
        self.assertEqual(order.delivery_zone, 'North')
        self.assertEqual(order.delivery_fee, Decimal('200.00'))
        self.assertEqual(order.delivery_estimated_minutes, 45)
        # (3 * 500) + (1 * 1200) + 200 delivery
        self.assertEqual(order.total_amount, Decimal('2900.00'))
        self.assertEqual(order.items.count(), 2)

        self.gateway_txn.refresh_from_db()
        self.assertEqual(self.gateway_txn.order_id, order.pk)
        self.assertIsNotNone(StagedOrder.objects.get(tracking_id='TRK-1').consumed_at)

    def test_completion_deducts_stock(self):
        result = complete_order(tracking_id='TRK-1')

        self.product_a.refresh_from_db()
        self.product_b.refresh_from_db()
        self.assertEqual(self.product_a.stock, 7)  # 10 - 3
        self.assertEqual(self.product_b.stock, 4)  # 5 - 1

        updates = sorted(u.to_dict()['productId'] for u in result.stock_updates)
        self.assertEqual(updates, sorted([self.product_a.pk, self.product_b.pk]))
        self.assertIn(
            {'productId': self.product_a.pk, 'oldStock': 10, 'newStock': 7},
            [u.to_dict() for u in result.stock_updates]
        )

    def test_repeated_completion_deducts_stock_once(self):
        """
        Test: Five completions of the same payment deduct stock once.

        Given: Product A stock 10 (qty 3), product B stock 5 (qty 1)
        When: complete_order is invoked 5 times
        Then: Stock is 7 and 4, one order, no duplicate items
        """
        results = [complete_order(tracking_id='TRK-1') for _ in range(5)]

        self.assertFalse(results[0].already_completed)
        self.assertTrue(all(r.already_completed for r in results[1:]))
        self.assertTrue(all(r.stock_updates == [] for r in results[1:]))

        self.product_a.refresh_from_db()
        self.product_b.refresh_from_db()
        self.assertEqual(self.product_a.stock, 7)
        self.assertEqual(self.product_b.stock, 4)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(OrderItem.objects.count(), 2)

    def test_completion_by_order_id(self):
        order = complete_order(tracking_id='TRK-1').order

        result = complete_order(order_id=order.pk)

        self.assertTrue(result.already_completed)
        self.assertEqual(result.order.pk, order.pk)

    def test_stock_floored_at_zero(self):
        """
        Test: Deduction past zero clamps at zero.

        Stock is not reserved at checkout, so it may have been sold
        elsewhere by the time payment lands.
        """
        Product.objects.filter(pk=self.product_a.pk).update(stock=1)

        complete_order(tracking_id='TRK-1')

        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 0)

    def test_missing_staged_data(self):
        GatewayTransaction.objects.create(
            tracking_id='TRK-ORPHAN',
            merchant_reference='ORDER-ORPHAN',
            amount=Decimal('100.00')
        )

        with self.assertRaises(StagedOrderMissing):
            complete_order(tracking_id='TRK-ORPHAN')

        self.assertEqual(Order.objects.count(), 0)

    def test_unknown_tracking_id(self):
        with self.assertRaises(TransactionNotFound):
            complete_order(tracking_id='TRK-NOPE')

    def test_unknown_order_id(self):
        with self.assertRaises(OrderNotFound):
            complete_order(order_id=uuid.uuid4())

        with self.assertRaises(OrderNotFound):
            complete_order(order_id='not-a-uuid')

    def test_rollback_when_product_missing(self):
        """
        Test: A staged line pointing at a deleted product rolls back everything.
        """
        staged = StagedOrder.objects.get(tracking_id='TRK-1')
        staged.items = staged.items + [{'product_id': 99999, 'quantity': 1, 'unit_price': '10.00'}]
        staged.save()

        with self.assertRaises(ProductNotFound):
            complete_order(tracking_id='TRK-1')

        self.assertEqual(Order.objects.count(), 0)
        self.gateway_txn.refresh_from_db()
        self.assertIsNone(self.gateway_txn.order_id)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 10)

    def test_refunded_order_cannot_complete(self):
        order = complete_order(tracking_id='TRK-1').order
        apply_payment_event(order.pk, PaymentEvent.REVERSED)

        with self.assertRaises(InvalidTransition):
            complete_order(order_id=order.pk)

        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 7)

    def test_failed_then_completed(self):
        """A payment that failed once can still complete on retry."""
        order = complete_order(tracking_id='TRK-1').order
        Order.objects.filter(pk=order.pk).update(payment_status=PaymentStatus.FAILED)
        Product.objects.filter(pk=self.product_a.pk).update(stock=10)

        result = complete_order(order_id=order.pk)

        self.assertFalse(result.already_completed)
        self.assertEqual(result.order.payment_status, PaymentStatus.COMPLETED)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 7)

    def test_notification_queued_after_commit(self):
        with mock.patch('orders.tasks.notify_order_completed.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                order = complete_order(tracking_id='TRK-1').order
            with self.captureOnCommitCallbacks(execute=True):
                complete_order(tracking_id='TRK-1')

        delay.assert_called_once_with(str(order.pk))


class PaymentTransitionTestCase(TestCase):
    """Test cases for the payment status transition table."""

    def test_pending_transitions(self):
        self.assertEqual(
            next_payment_status(PaymentStatus.PENDING, PaymentEvent.COMPLETED),
            PaymentStatus.COMPLETED
        )
        self.assertEqual(
            next_payment_status(PaymentStatus.PENDING, PaymentEvent.CANCELLED),
            PaymentStatus.CANCELLED
        )
        self.assertEqual(
            next_payment_status(PaymentStatus.PENDING, PaymentEvent.REVERSED),
            PaymentStatus.REFUNDED
        )

    def test_completed_ignores_late_failures(self):
        self.assertEqual(
            next_payment_status(PaymentStatus.COMPLETED, PaymentEvent.FAILED),
            PaymentStatus.COMPLETED
        )
        self.assertEqual(
            next_payment_status(PaymentStatus.COMPLETED, PaymentEvent.CANCELLED),
            PaymentStatus.COMPLETED
        )
        self.assertEqual(
            next_payment_status(PaymentStatus.COMPLETED, PaymentEvent.REVERSED),
            PaymentStatus.REFUNDED
        )

    def test_refunded_is_terminal(self):
        with self.assertRaises(InvalidTransition):
            next_payment_status(PaymentStatus.REFUNDED, PaymentEvent.COMPLETED)

    def test_unknown_status(self):
        with self.assertRaises(InvalidTransition):
            next_payment_status('on_hold', PaymentEvent.FAILED)

    def test_completable_statuses(self):
        self.assertEqual(
            set(completable_statuses()),
            {PaymentStatus.PENDING, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
        )

    def test_failed_payment_cancels_delivery(self):
        self.assertEqual(
            delivery_status_after(PaymentStatus.FAILED, DeliveryStatus.CONFIRMED),
            DeliveryStatus.CANCELLED
        )
        self.assertEqual(
            delivery_status_after(PaymentStatus.COMPLETED, DeliveryStatus.CONFIRMED),
            DeliveryStatus.CONFIRMED
        )

    def test_delivery_warnings(self):
        self.assertEqual(
            len(delivery_update_warnings(PaymentStatus.PENDING, DeliveryStatus.IN_TRANSIT)), 1
        )
        self.assertEqual(
            delivery_update_warnings(PaymentStatus.COMPLETED, DeliveryStatus.IN_TRANSIT), []
        )
        self.assertEqual(
            delivery_update_warnings(PaymentStatus.PENDING, DeliveryStatus.CANCELLED), []
        )


class PaymentEventTestCase(TestCase):
    """Test cases for non-completion payment events."""

    def setUp(self):
        create_catalog(self)
        stage_checkout('TRK-2', [(self.product_a, 2)])
        self.order = complete_order(tracking_id='TRK-2').order
        Order.objects.filter(pk=self.order.pk).update(
            payment_status=PaymentStatus.PENDING,
            delivery_status=DeliveryStatus.CONFIRMED
        )

    def test_failure_cancels_delivery(self):
        order = apply_payment_event(self.order.pk, PaymentEvent.FAILED)

        self.assertEqual(order.payment_status, PaymentStatus.FAILED)
        self.assertEqual(order.delivery_status, DeliveryStatus.CANCELLED)

    def test_completed_order_ignores_failure(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=PaymentStatus.COMPLETED)

        order = apply_payment_event(self.order.pk, PaymentEvent.FAILED)

        self.assertEqual(order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(order.delivery_status, DeliveryStatus.CONFIRMED)

    def test_completion_event_rejected(self):
        with self.assertRaises(ValueError):
            apply_payment_event(self.order.pk, PaymentEvent.COMPLETED)

    def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            apply_payment_event(uuid.uuid4(), PaymentEvent.FAILED)

    def test_delivery_update_on_unpaid_order_warns(self):
        order, warnings = update_delivery_status(self.order, DeliveryStatus.IN_TRANSIT)

        self.assertEqual(order.delivery_status, DeliveryStatus.IN_TRANSIT)
        self.assertEqual(len(warnings), 1)


class NotificationTaskTestCase(TestCase):
    """Test cases for the admin notification task."""

    def setUp(self):
        create_catalog(self)
        stage_checkout('TRK-3', [(self.product_b, 1)])
        self.order = complete_order(tracking_id='TRK-3').order

    def test_notification_created_once(self):
        first = notify_order_completed(str(self.order.pk))
        second = notify_order_completed(str(self.order.pk))

        self.assertEqual(first['status'], 'success')
        self.assertEqual(second['status'], 'duplicate')
        notification = AdminNotification.objects.get(order=self.order)
        self.assertEqual(notification.title, 'New Order Completed')
        self.assertIn('Wanjiku Kamau', notification.message)
        self.assertIn('KES 1400.00', notification.message)

    def test_duplicate_notification_rejected_by_database(self):
        """Concurrent task retries cannot store two notifications for one order."""
        notify_order_completed(str(self.order.pk))

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                AdminNotification.objects.create(
                    order=self.order,
                    type=AdminNotification.Type.ORDER,
                    title='New Order Completed',
                    message='duplicate',
                )

        self.assertEqual(AdminNotification.objects.filter(order=self.order).count(), 1)

    def test_unpaid_order_skipped(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=PaymentStatus.PENDING)

        result = notify_order_completed(str(self.order.pk))

        self.assertEqual(result['status'], 'skipped')
        self.assertFalse(AdminNotification.objects.exists())

    def test_missing_order(self):
        result = notify_order_completed(str(uuid.uuid4()))
        self.assertEqual(result['status'], 'error')


class OrderAPITestCase(APITestCase):
    """Test cases for the order admin API."""

    def setUp(self):
        create_catalog(self)
        stage_checkout('TRK-4', [(self.product_a, 1)])
        self.order = complete_order(tracking_id='TRK-4').order

    def test_list_filtered_by_payment_status(self):
        response = self.client.get(reverse('orders:order-list'), {'payment_status': 'completed'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['item_count'], 1)

        response = self.client.get(reverse('orders:order-list'), {'payment_status': 'failed'})
        self.assertEqual(response.data['count'], 0)

    def test_detail_includes_gateway_reference(self):
        response = self.client.get(reverse('orders:order-detail', args=[self.order.pk]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['tracking_id'], 'TRK-4')
        self.assertEqual(response.data['merchant_reference'], 'ORDER-TRK-4')
        self.assertEqual(len(response.data['items']), 1)

    def test_delivery_status_update(self):
        url = reverse('orders:order-delivery-status', args=[self.order.pk])

        response = self.client.patch(url, {'delivery_status': 'in_transit'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['delivery_status'], 'in_transit')
        self.assertEqual(response.data['warnings'], [])

    def test_delivery_status_update_on_unpaid_order(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=PaymentStatus.PENDING)
        url = reverse('orders:order-delivery-status', args=[self.order.pk])

        response = self.client.patch(url, {'delivery_status': 'delivered'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['warnings']), 1)

    def test_delivery_status_invalid(self):
        url = reverse('orders:order-delivery-status', args=[self.order.pk])
        response = self.client.patch(url, {'delivery_status': 'lost'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_delivery_status_unknown_order(self):
        url = reverse('orders:order-delivery-status', args=[uuid.uuid4()])
        response = self.client.patch(url, {'delivery_status': 'delivered'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_admin_complete_pending_order(self):
        """
        Test: Admin completion marks a pending order paid and reports stock.

        Given: An order back in pending, product A stock 9
        When: POST /api/orders/{id}/complete/
        Then: 200 with one stock update 9 -> 8
        """
        Order.objects.filter(pk=self.order.pk).update(payment_status=PaymentStatus.PENDING)
        url = reverse('orders:order-complete', args=[self.order.pk])

        with mock.patch('orders.tasks.notify_order_completed.delay'):
            response = self.client.post(url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['orderId'], str(self.order.pk))
        self.assertFalse(response.data['alreadyCompleted'])
        self.assertEqual(
            response.data['stockUpdates'],
            [{'productId': self.product_a.pk, 'oldStock': 9, 'newStock': 8}]
        )
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)

    def test_admin_complete_is_idempotent(self):
        url = reverse('orders:order-complete', args=[self.order.pk])

        response = self.client.post(url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['alreadyCompleted'])
        self.assertEqual(response.data['stockUpdates'], [])
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 9)

    def test_admin_complete_unknown_order(self):
        url = reverse('orders:order-complete', args=[uuid.uuid4()])
        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertFalse(response.data['success'])

    def test_admin_complete_refunded_order(self):
        apply_payment_event(self.order.pk, PaymentEvent.REVERSED)
        url = reverse('orders:order-complete', args=[self.order.pk])

        response = self.client.post(url)

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.REFUNDED)


class ConcurrentCompletionTestCase(TransactionTestCase):
    """
    Test concurrent completion to verify row locking works.
    Uses TransactionTestCase for proper multi-threading support.
    """

    def setUp(self):
        create_catalog(self)
        stage_checkout('TRK-RACE', [(self.product_a, 3), (self.product_b, 1)])

    def test_concurrent_completions_deduct_once(self):
        """
        Test: Callback, poll and sweep racing on one payment deduct once.

        Given: Product A stock 10 (qty 3), product B stock 5 (qty 1)
        When: Five threads complete the same payment at once, then a
              reconciliation retry runs
        Then: Exactly one call performs the deduction; stock is 7 and 4

        Databases without row locks (SQLite) reject the losing writers
        with OperationalError instead of blocking them; the rollback
        leaves nothing behind and the retry converges.
        """
        outcomes = []
        errors = []

        def complete():
            try:
                outcomes.append(complete_order(tracking_id='TRK-RACE'))
            except OperationalError as e:
                errors.append(e)
            finally:
                connection.close()

        with mock.patch('orders.tasks.notify_order_completed.delay'):
            threads = [threading.Thread(target=complete) for _ in range(5)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            outcomes.append(complete_order(tracking_id='TRK-RACE'))

        self.assertEqual(len(outcomes) + len(errors), 6)
        self.assertEqual(sum(1 for r in outcomes if not r.already_completed), 1)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(OrderItem.objects.count(), 2)

        self.product_a.refresh_from_db()
        self.product_b.refresh_from_db()
        self.assertEqual(self.product_a.stock, 7)
        self.assertEqual(self.product_b.stock, 4)

    def test_sequential_completions_deduct_once(self):
        with mock.patch('orders.tasks.notify_order_completed.delay') as delay:
            for _ in range(5):
                complete_order(tracking_id='TRK-RACE')

        delay.assert_called_once()
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 7)
