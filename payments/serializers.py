"""
Serializers for payment endpoints.
"""
from rest_framework import serializers


class CheckoutItemSerializer(serializers.Serializer):
    """One cart line in a checkout request."""
    product_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)


class CustomerInfoSerializer(serializers.Serializer):
    full_name = serializers.CharField(max_length=200)
    email = serializers.EmailField()
    phone = serializers.CharField(max_length=32)
    address = serializers.CharField(allow_blank=True, required=False, default='')


class CoordinatesSerializer(serializers.Serializer):
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)


class DeliveryInfoSerializer(serializers.Serializer):
    address = serializers.CharField(allow_blank=True, required=False, default='')
    coordinates = CoordinatesSerializer(allow_null=True, required=False, default=None)
    zone = serializers.CharField(max_length=100, allow_blank=True, required=False, default='')
    fee = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, default=0)
    distance_km = serializers.DecimalField(
        max_digits=8, decimal_places=2, min_value=0, required=False, allow_null=True
    )
    estimated_time = serializers.IntegerField(min_value=0, required=False, allow_null=True)


class CheckoutSerializer(serializers.Serializer):
    """
    Serializer for POST /payments/orders/

    Request format:
    {
        "user_id": "6f1c...",
        "items": [{"product_id": 1, "quantity": 2}],
        "customer_info": {"full_name": "...", "email": "...", "phone": "...", "address": "..."},
        "delivery_info": {"address": "...", "coordinates": {"lat": -1.28, "lng": 36.82},
                          "zone": "CBD", "fee": 200, "estimated_time": 45},
        "redirect_url": "https://shop.example.com/order-success"
    }
    """
    user_id = serializers.CharField(max_length=64)
    items = CheckoutItemSerializer(many=True)
    customer_info = CustomerInfoSerializer()
    delivery_info = DeliveryInfoSerializer()
    redirect_url = serializers.URLField(max_length=500, required=False, allow_blank=True, default='')

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required")

        product_ids = [item['product_id'] for item in value]
        if len(product_ids) != len(set(product_ids)):
            raise serializers.ValidationError("Duplicate products are not allowed")

        return value


class StatusCheckSerializer(serializers.Serializer):
    """Input for the status endpoint; field names follow the gateway's."""
    orderTrackingId = serializers.CharField(max_length=100, required=False, allow_blank=True)
    orderId = serializers.CharField(max_length=64, required=False, allow_blank=True)
    OrderMerchantReference = serializers.CharField(max_length=100, required=False, allow_blank=True)

    def validate(self, attrs):
        if not any(attrs.get(key) for key in ('orderTrackingId', 'orderId', 'OrderMerchantReference')):
            raise serializers.ValidationError("orderTrackingId or orderId required")
        return attrs
