"""
Order API Views.

Implements:
- GET /orders/ - List orders with optimized queries
- GET /orders/{id}/ - Order detail with items
- PATCH /orders/{id}/delivery-status/ - Update the delivery axis
- POST /orders/{id}/complete/ - Admin completion (marks paid, deducts stock)

Orders are never created here; they come into existence when the payment
gateway confirms a checkout (see payments app).
"""
import logging
from rest_framework import generics, status
from rest_framework.response import Response
from rest_framework.views import APIView

from payments.exceptions import OrderNotFound, PaymentError
from .models import DeliveryStatus, Order, PaymentStatus
from .serializers import (
    DeliveryStatusUpdateSerializer,
    OrderListSerializer,
    OrderSerializer,
)
from .services import complete_order, update_delivery_status
from .transitions import InvalidTransition

logger = logging.getLogger(__name__)


class OrderListView(generics.ListAPIView):
    """
    GET: List all orders.

    Query Parameters:
        - user_id: Filter by customer
        - payment_status: Filter by payment status
        - delivery_status: Filter by delivery status
    """
    serializer_class = OrderListSerializer

    def get_queryset(self):
        queryset = Order.objects.prefetch_related('items')

        user_id = self.request.query_params.get('user_id')
        if user_id:
            queryset = queryset.filter(user_id=user_id)

        payment_status = self.request.query_params.get('payment_status', '').lower()
        if payment_status in PaymentStatus.values:
            queryset = queryset.filter(payment_status=payment_status)

        delivery_status = self.request.query_params.get('delivery_status', '').lower()
        if delivery_status in DeliveryStatus.values:
            queryset = queryset.filter(delivery_status=delivery_status)

        return queryset.order_by('-created_at')


class OrderDetailView(generics.RetrieveAPIView):
    """
    GET: Retrieve order details with all items.
    """
    serializer_class = OrderSerializer

    def get_queryset(self):
        return Order.objects.select_related('gateway_transaction').prefetch_related(
            'items__product'
        )


class OrderDeliveryStatusView(APIView):
    """
    PATCH: Change an order's delivery status.

    Request Body:
    {
        "delivery_status": "in_transit"
    }

    Advancing delivery on an unpaid order is accepted, with warnings in
    the response.
    """

    def patch(self, request, pk):
        try:
            order = Order.objects.get(pk=pk)
        except Order.DoesNotExist:
            return Response(
                {'error': 'Not Found', 'detail': f'Order {pk} not found'},
                status=status.HTTP_404_NOT_FOUND
            )

        serializer = DeliveryStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order, warnings = update_delivery_status(
            order, serializer.validated_data['delivery_status']
        )

        return Response({
            'id': str(order.pk),
            'payment_status': order.payment_status,
            'delivery_status': order.delivery_status,
            'warnings': warnings,
        })


class OrderCompleteView(APIView):
    """
    POST: Mark an order as paid and deduct its stock.

    Used by admins to settle a payment confirmed outside the gateway
    callbacks. Repeating the call is harmless: stock is deducted once.

    Response:
    {
        "success": true,
        "orderId": "...",
        "alreadyCompleted": false,
        "stockUpdates": [{"productId": 1, "oldStock": 10, "newStock": 7}]
    }
    """

    def post(self, request, pk):
        try:
            result = complete_order(order_id=pk)
        except OrderNotFound as e:
            return Response(
                {'success': False, 'error': str(e)},
                status=status.HTTP_404_NOT_FOUND
            )
        except InvalidTransition as e:
            logger.warning(f"Admin completion rejected for order {pk}: {e}")
            return Response(
                {'success': False, 'error': str(e)},
                status=status.HTTP_409_CONFLICT
            )
        except PaymentError as e:
            logger.error(f"Admin completion failed for order {pk}: {e}")
            return Response(
                {'success': False, 'error': str(e)},
                status=e.http_status
            )

        return Response({
            'success': True,
            'orderId': str(result.order.pk),
            'alreadyCompleted': result.already_completed,
            'stockUpdates': [update.to_dict() for update in result.stock_updates],
        })
