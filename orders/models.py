"""
Order Models - Order, OrderItem and AdminNotification entities.

Orders have two independent status axes:
    payment_status:  pending -> completed | failed | cancelled, completed -> refunded
    delivery_status: pending -> confirmed -> in_transit -> delivered, any -> cancelled

An Order row only exists once the payment gateway has confirmed payment;
it is materialized from staged checkout data by the completion transition.
"""
import uuid
from decimal import Decimal
from django.db import models
from django.core.validators import MinValueValidator

from inventory.models import Product


class PaymentStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    COMPLETED = 'completed', 'Completed'
    FAILED = 'failed', 'Failed'
    REFUNDED = 'refunded', 'Refunded'
    CANCELLED = 'cancelled', 'Cancelled'


class DeliveryStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    CONFIRMED = 'confirmed', 'Confirmed'
    IN_TRANSIT = 'in_transit', 'In transit'
    DELIVERED = 'delivered', 'Delivered'
    CANCELLED = 'cancelled', 'Cancelled'


class Order(models.Model):
    """
    Order entity representing a paid (or once-paid) customer order.

    total_amount is computed at checkout as sum(unit_price * quantity) plus
    the delivery fee and is never recomputed.
    """
    PaymentStatus = PaymentStatus
    DeliveryStatus = DeliveryStatus

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Customer id from the auth provider"
    )
    customer_name = models.CharField(max_length=200, blank=True, default='')
    customer_email = models.EmailField(blank=True, default='')
    customer_phone = models.CharField(max_length=32, blank=True, default='')
    customer_address = models.CharField(max_length=300, blank=True, default='')

    delivery_address = models.CharField(max_length=300, blank=True, default='')
    delivery_zone = models.CharField(max_length=100, blank=True, default='')
    delivery_fee = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal('0.00')
    )
    delivery_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    delivery_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    delivery_distance_km = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    delivery_estimated_minutes = models.PositiveIntegerField(null=True, blank=True)

    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True,
        help_text="Payment axis, driven only by gateway reconciliation"
    )
    delivery_status = models.CharField(
        max_length=20,
        choices=DeliveryStatus.choices,
        default=DeliveryStatus.PENDING,
        db_index=True,
        help_text="Delivery axis, driven by shop operators"
    )
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text="Items total plus delivery fee at checkout"
    )
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['payment_status', 'delivery_status']),
            models.Index(fields=['user_id', 'created_at']),
        ]

    def __str__(self):
        return f"Order {self.id} ({self.payment_status}/{self.delivery_status})"

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.COMPLETED

    @property
    def item_count(self) -> int:
        return self.items.count()


class OrderItem(models.Model):
    """
    OrderItem entity representing a product in an order.

    Stores the unit price at checkout time to preserve historical pricing.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        related_name='items',
        help_text="Parent order"
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='order_items',
        help_text="Ordered product"
    )
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Quantity ordered"
    )
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price per unit at checkout time"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.product.name} @ KES {self.unit_price}"

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_price


class AdminNotification(models.Model):
    """Dashboard notification for shop admins."""

    class Type(models.TextChoices):
        ORDER = 'order', 'Order'

    type = models.CharField(max_length=20, choices=Type.choices, default=Type.ORDER)
    title = models.CharField(max_length=200)
    message = models.TextField()
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='notifications',
        null=True,
        blank=True
    )
    is_read = models.BooleanField(default=False, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['order', 'type'],
                name='unique_notification_per_order_type'
            ),
        ]

    def __str__(self):
        return self.title
