"""
Payment Models - gateway transactions, staged checkouts and callback audit log.

Checkout flow:
    1. Initiation registers a PENDING GatewayTransaction and a StagedOrder
       keyed by the gateway tracking id. No Order exists yet.
    2. The gateway reports the outcome via callback, or it is discovered by
       polling. On COMPLETED the StagedOrder is materialized into an Order.
    3. Every inbound callback is recorded in CallbackLog before anything else.
"""
from decimal import Decimal
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class GatewayTransaction(models.Model):
    """
    One payment attempt registered with the gateway.

    A retried checkout gets a new transaction and merchant reference; the
    order link is filled in when the order is materialized.
    """

    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        COMPLETED = 'COMPLETED', 'Completed'
        FAILED = 'FAILED', 'Failed'
        CANCELLED = 'CANCELLED', 'Cancelled'

    tracking_id = models.CharField(
        max_length=100,
        unique=True,
        help_text="Gateway-assigned order tracking id"
    )
    merchant_reference = models.CharField(
        max_length=100,
        unique=True,
        help_text="Our reference submitted with the payment request"
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default='KES')
    redirect_url = models.URLField(max_length=500, blank=True, default='')
    customer_phone = models.CharField(max_length=32, blank=True, default='')
    gateway_status_code = models.IntegerField(
        null=True,
        blank=True,
        help_text="Last numeric status reported by the gateway"
    )
    gateway_status_description = models.CharField(max_length=200, blank=True, default='')
    order = models.OneToOneField(
        'orders.Order',
        on_delete=models.PROTECT,
        related_name='gateway_transaction',
        null=True,
        blank=True
    )
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'created_at']),
        ]

    def __str__(self):
        return f"{self.merchant_reference} [{self.tracking_id}] {self.status}"


class StagedOrder(models.Model):
    """
    Everything needed to create the Order once payment is confirmed.

    items holds [{'product_id', 'quantity', 'unit_price'}] with catalog prices
    resolved at checkout. Rows are never deleted; consumed_at marks use.
    """
    tracking_id = models.CharField(max_length=100, unique=True)
    merchant_reference = models.CharField(max_length=100, db_index=True)
    user_id = models.CharField(max_length=64)
    items = models.JSONField(encoder=DjangoJSONEncoder)
    customer_info = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    delivery_info = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00')
    )
    redirect_url = models.URLField(max_length=500, blank=True, default='')
    consumed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Staged {self.merchant_reference} ({len(self.items)} items)"


class CallbackLog(models.Model):
    """Append-only audit record of an inbound gateway notification."""
    tracking_id = models.CharField(max_length=100, blank=True, default='', db_index=True)
    merchant_reference = models.CharField(max_length=100, blank=True, default='')
    notification_type = models.CharField(max_length=50, blank=True, default='')
    raw_payload = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    processed = models.BooleanField(default=False, db_index=True)
    error = models.TextField(blank=True, default='')
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-received_at']

    def __str__(self):
        return f"{self.notification_type or 'unknown'} for {self.tracking_id or '?'}"
