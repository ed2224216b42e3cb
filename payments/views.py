"""
Payment API Views.

Implements:
- POST /payments/orders/ - Start a checkout with the payment gateway
- GET|POST /payments/callback/ - Gateway notification (IPN) receiver
- GET|POST /payments/status/ - Live payment status for the order-status page
- POST /payments/reconcile/ - Run the reconciliation sweep now
"""
import logging
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.rate_limiting import RateLimitMixin
from orders.transitions import InvalidTransition
from .callbacks import parse_callback
from .exceptions import GatewayError, PaymentError
from .gateway import get_gateway_client
from .reconciliation import run_reconciliation_sweep
from .serializers import CheckoutSerializer, StatusCheckSerializer
from .services import check_payment_status, handle_callback, initiate_payment

logger = logging.getLogger(__name__)

STATUS_UNKNOWN_MESSAGE = 'Payment status unknown, please check back shortly'


def error_response(exc):
    """Translate a payment-flow exception into an API response."""
    if isinstance(exc, InvalidTransition):
        logger.warning(f"Rejected payment transition: {exc}")
        return Response({'success': False, 'error': str(exc)}, status=status.HTTP_409_CONFLICT)

    if isinstance(exc, PaymentError):
        if exc.http_status < 500:
            logger.warning(f"{exc.__class__.__name__}: {exc}")
        else:
            logger.error(f"{exc.__class__.__name__}: {exc}")
        return Response({'success': False, 'error': str(exc)}, status=exc.http_status)

    logger.exception(f"Unexpected payment error: {exc}")
    return Response(
        {'success': False, 'error': 'An unexpected error occurred'},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


class CheckoutView(APIView):
    """
    POST: Price the cart and register the payment with the gateway.

    Returns the gateway tracking id and the hosted payment page URL. The
    order itself is created only after payment is confirmed.
    """

    def post(self, request):
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = initiate_payment(
                get_gateway_client(),
                user_id=data['user_id'],
                items=[dict(item) for item in data['items']],
                customer_info=dict(data['customer_info']),
                delivery_info=_plain(data['delivery_info']),
                redirect_url=data['redirect_url'],
            )
        except Exception as e:
            return error_response(e)

        return Response({
            'success': True,
            'transaction_id': result.transaction.pk,
            'tracking_id': result.tracking_id,
            'iframe_url': result.redirect_url,
            'merchant_reference': result.merchant_reference,
            'total_amount': str(result.total_amount),
        }, status=status.HTTP_201_CREATED)


def _plain(value):
    """OrderedDicts from nested serializers down to plain dicts."""
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    return value


class PaymentCallbackView(APIView):
    """
    GET|POST: Gateway notification receiver.

    Accepts query-string, form-encoded and JSON notifications. Responds 200
    once the notification is handled, 400 when identifiers are missing, 404
    when the transaction is unknown and 5xx when processing failed, which
    makes the gateway retry delivery.
    """

    def get(self, request):
        return self._handle(request)

    def post(self, request):
        return self._handle(request)

    def _handle(self, request):
        payload = parse_callback(request)
        logger.info(
            f"Callback received: type={payload.notification_type or '<empty>'} "
            f"tracking={payload.tracking_id} ref={payload.merchant_reference}"
        )

        try:
            result = handle_callback(get_gateway_client(), payload)
        except Exception as e:
            return error_response(e)

        body = {'success': True, 'message': result.message}
        if result.order_id:
            body['orderId'] = result.order_id
        if result.status:
            body['status'] = result.status
        if result.notification_type:
            body['notificationType'] = result.notification_type
        return Response(body)


class PaymentStatusView(RateLimitMixin, APIView):
    """
    GET|POST: Query the gateway for a payment's status and apply it.

    Polled by the order-status page. Failures never break the page: they
    come back as status UNKNOWN with a "check back" message.
    """
    rate_limit_max_requests = 30
    rate_limit_window_seconds = 60

    def get(self, request):
        return self._handle(request.query_params)

    def post(self, request):
        data = request.data if hasattr(request.data, 'get') else {}
        if not any(data.get(key) for key in ('orderTrackingId', 'orderId', 'OrderMerchantReference')):
            data = request.query_params
        return self._handle(data)

    def _handle(self, data):
        serializer = StatusCheckSerializer(data=data)
        if not serializer.is_valid():
            return Response(
                {'success': False, 'error': 'orderTrackingId or orderId required',
                 'detail': serializer.errors},
                status=status.HTTP_400_BAD_REQUEST
            )
        params = serializer.validated_data

        try:
            result = check_payment_status(
                get_gateway_client(),
                tracking_id=params.get('orderTrackingId') or None,
                order_id=params.get('orderId') or None,
                merchant_reference=params.get('OrderMerchantReference') or None,
            )
        except GatewayError as e:
            logger.error(f"Status check could not reach the gateway: {e}")
            return Response(
                {'success': False, 'status': 'UNKNOWN', 'message': STATUS_UNKNOWN_MESSAGE},
                status=status.HTTP_502_BAD_GATEWAY
            )
        except PaymentError as e:
            if e.http_status < 500:
                return error_response(e)
            logger.error(f"Status check failed: {e}")
            return Response(
                {'success': False, 'status': 'UNKNOWN', 'message': STATUS_UNKNOWN_MESSAGE},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        except Exception as e:
            logger.exception(f"Unexpected error checking payment status: {e}")
            return Response(
                {'success': False, 'status': 'UNKNOWN', 'message': STATUS_UNKNOWN_MESSAGE},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        return Response({
            'success': True,
            'status': result.status,
            'paymentStatus': result.payment_status,
            'orderId': result.order_id,
        })


class ReconcileView(APIView):
    """
    POST: Run the reconciliation sweep synchronously and return its report.
    """

    def post(self, request):
        report = run_reconciliation_sweep()
        return Response({'success': True, **report})
