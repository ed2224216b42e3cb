"""
Serializers for order models.
"""
from rest_framework import serializers
from .models import DeliveryStatus, Order, OrderItem
from inventory.serializers import ProductMinimalSerializer


class OrderItemSerializer(serializers.ModelSerializer):
    """Serializer for OrderItem with product details."""
    product = ProductMinimalSerializer(read_only=True)
    subtotal = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        read_only=True
    )

    class Meta:
        model = OrderItem
        fields = ['id', 'product', 'quantity', 'unit_price', 'subtotal']


class OrderSerializer(serializers.ModelSerializer):
    """Full order with items and payment transaction reference."""
    items = OrderItemSerializer(many=True, read_only=True)
    tracking_id = serializers.CharField(
        source='gateway_transaction.tracking_id',
        read_only=True,
        default=None
    )
    merchant_reference = serializers.CharField(
        source='gateway_transaction.merchant_reference',
        read_only=True,
        default=None
    )

    class Meta:
        model = Order
        fields = [
            'id', 'user_id', 'customer_name', 'customer_email', 'customer_phone',
            'customer_address', 'delivery_address', 'delivery_zone', 'delivery_fee',
            'delivery_latitude', 'delivery_longitude', 'delivery_distance_km',
            'delivery_estimated_minutes', 'payment_status', 'delivery_status',
            'total_amount', 'paid_at', 'tracking_id', 'merchant_reference',
            'items', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class OrderListSerializer(serializers.ModelSerializer):
    """Compact serializer for order tables."""
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'customer_name', 'customer_phone', 'delivery_zone',
            'payment_status', 'delivery_status', 'total_amount',
            'item_count', 'created_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class DeliveryStatusUpdateSerializer(serializers.Serializer):
    delivery_status = serializers.ChoiceField(choices=DeliveryStatus.choices)
