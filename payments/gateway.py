"""
Pesapal v3 API client.

Stateless request/response wrapper: obtain a bearer token, submit a
payment request, query a transaction's status. Token requests and status
queries are retried with exponential backoff; order submission is not,
so a slow gateway never receives the same payment request twice.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .exceptions import AuthError, GatewayQueryError, GatewaySubmissionError

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str
    consumer_key: str
    consumer_secret: str
    ipn_id: str
    callback_url: str
    currency: str = 'KES'
    country_code: str = 'KE'
    billing_city: str = 'Nairobi'
    timeout: float = 15.0
    max_retries: int = 3
    backoff_factor: float = 0.5

    @classmethod
    def from_settings(cls) -> 'GatewayConfig':
        return cls(
            base_url=settings.PESAPAL_BASE_URL.rstrip('/'),
            consumer_key=settings.PESAPAL_CONSUMER_KEY,
            consumer_secret=settings.PESAPAL_CONSUMER_SECRET,
            ipn_id=settings.PESAPAL_IPN_ID,
            callback_url=settings.PESAPAL_CALLBACK_URL,
            currency=settings.PESAPAL_CURRENCY,
            country_code=settings.PESAPAL_COUNTRY_CODE,
            billing_city=settings.PESAPAL_BILLING_CITY,
            timeout=settings.PESAPAL_TIMEOUT_SECONDS,
            max_retries=settings.PESAPAL_MAX_RETRIES,
            backoff_factor=settings.PESAPAL_BACKOFF_FACTOR,
        )


@dataclass
class BillingAddress:
    email_address: str
    phone_number: str
    first_name: str
    last_name: str
    line_1: str = ''
    city: str = ''
    country_code: str = ''

    def to_payload(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v}


@dataclass
class SubmitOrderRequest:
    merchant_reference: str
    amount: Decimal
    description: str
    billing_address: BillingAddress
    currency: str = ''
    callback_url: str = ''


@dataclass
class SubmitOrderResult:
    tracking_id: str
    merchant_reference: str
    redirect_url: str


@dataclass
class GatewayStatus:
    """Transaction status as reported by the gateway."""
    status_code: Optional[int]
    description: str
    merchant_reference: str = ''
    amount: Optional[Decimal] = None
    currency: str = ''
    confirmation_code: str = ''
    payment_method: str = ''
    raw: dict = field(default_factory=dict)


def _retrying_session(config: GatewayConfig) -> requests.Session:
    retry = Retry(
        total=config.max_retries,
        backoff_factor=config.backoff_factor,
        status_forcelist=RETRY_STATUS_CODES,
        allowed_methods=frozenset({'GET', 'POST'}),
        raise_on_status=False,
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    return session


def _has_error(error) -> bool:
    """The gateway sends empty error objects on success; only content counts."""
    if not error:
        return False
    if isinstance(error, dict):
        return any(error.get(key) for key in ('message', 'code', 'error_type'))
    return True


def _error_message(data: dict, default: str) -> str:
    error = data.get('error')
    if isinstance(error, dict) and error.get('message'):
        return error['message']
    return data.get('message') or default


def _optional_int(value) -> Optional[int]:
    """Unparseable status codes become None, which maps to PENDING."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_amount(value) -> Optional[Decimal]:
    try:
        return Decimal(str(value)) if value is not None else None
    except InvalidOperation:
        return None


def _json_body(response, error_cls) -> dict:
    try:
        data = response.json()
    except ValueError:
        raise error_cls(
            f"Pesapal returned a non-JSON body ({response.status_code})",
            status_code=response.status_code,
            body=response.text,
        )
    if not isinstance(data, dict):
        raise error_cls("Pesapal returned an unexpected body", body=data)
    return data


class PesapalClient:
    """
    Client for the Pesapal v3 REST API.

    Construct one per process or per request from a GatewayConfig; sessions
    can be injected for testing.
    """

    def __init__(self, config: GatewayConfig, session: Optional[requests.Session] = None,
                 submit_session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or _retrying_session(config)
        self.submit_session = submit_session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}/{path}"

    def authenticate(self) -> str:
        """Exchange consumer credentials for a bearer token."""
        if not self.config.consumer_key or not self.config.consumer_secret:
            raise AuthError("Pesapal credentials not configured")

        try:
            response = self.session.post(
                self._url('Auth/RequestToken'),
                json={
                    'consumer_key': self.config.consumer_key,
                    'consumer_secret': self.config.consumer_secret,
                },
                headers={'Accept': 'application/json'},
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Pesapal auth request failed: {e}")
            raise AuthError(f"Failed to reach Pesapal: {e}")

        if not response.ok:
            logger.error(f"Pesapal auth failed: {response.status_code} {response.text}")
            raise AuthError(
                f"Failed to authenticate with Pesapal: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        data = _json_body(response, AuthError)
        if _has_error(data.get('error')) or not data.get('token'):
            logger.error(f"Pesapal auth error: {data}")
            raise AuthError(_error_message(data, 'Failed to get Pesapal token'), body=data)

        return data['token']

    def submit_order(self, request: SubmitOrderRequest, token: str) -> SubmitOrderResult:
        """Register a payment request; returns tracking id and hosted-page URL."""
        payload = {
            'id': request.merchant_reference,
            'currency': request.currency or self.config.currency,
            'amount': float(request.amount),
            'description': request.description,
            'callback_url': request.callback_url or self.config.callback_url,
            'notification_id': self.config.ipn_id,
            'billing_address': request.billing_address.to_payload(),
        }

        try:
            response = self.submit_session.post(
                self._url('Transactions/SubmitOrderRequest'),
                json=payload,
                headers={
                    'Accept': 'application/json',
                    'Authorization': f'Bearer {token}',
                },
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Pesapal order submission request failed: {e}")
            raise GatewaySubmissionError(f"Failed to reach Pesapal: {e}")

        if not response.ok:
            logger.error(
                f"Pesapal order submission failed: {response.status_code} {response.text}"
            )
            raise GatewaySubmissionError(
                f"Failed to submit order to Pesapal: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        data = _json_body(response, GatewaySubmissionError)
        if _has_error(data.get('error')) or not data.get('order_tracking_id'):
            logger.error(f"Pesapal order error: {data}")
            raise GatewaySubmissionError(
                _error_message(data, 'Failed to create Pesapal order'), body=data
            )

        return SubmitOrderResult(
            tracking_id=data['order_tracking_id'],
            merchant_reference=data.get('merchant_reference') or request.merchant_reference,
            redirect_url=data.get('redirect_url', ''),
        )

    def query_status(self, tracking_id: str, token: str) -> GatewayStatus:
        """Fetch the gateway's current view of a transaction."""
        try:
            response = self.session.get(
                self._url('Transactions/GetTransactionStatus'),
                params={'orderTrackingId': tracking_id},
                headers={
                    'Accept': 'application/json',
                    'Authorization': f'Bearer {token}',
                },
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Pesapal status request failed: {e}")
            raise GatewayQueryError(f"Failed to reach Pesapal: {e}")

        if not response.ok:
            logger.error(f"Pesapal status query failed: {response.status_code} {response.text}")
            raise GatewayQueryError(
                f"Failed to query Pesapal status: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        data = _json_body(response, GatewayQueryError)
        if _has_error(data.get('error')):
            logger.error(f"Pesapal status error: {data}")
            raise GatewayQueryError(
                _error_message(data, 'Failed to get transaction status'), body=data
            )

        status_code = _optional_int(data.get('status_code'))
        if status_code is None and data.get('status_code') is not None:
            logger.warning(f"Unparseable Pesapal status_code: {data.get('status_code')!r}")
        return GatewayStatus(
            status_code=status_code,
            description=data.get('payment_status_description') or '',
            merchant_reference=data.get('merchant_reference') or '',
            amount=_optional_amount(data.get('amount')),
            currency=data.get('currency') or '',
            confirmation_code=data.get('confirmation_code') or '',
            payment_method=data.get('payment_method') or '',
            raw=data,
        )


def get_gateway_client() -> PesapalClient:
    """Build a client from Django settings."""
    return PesapalClient(GatewayConfig.from_settings())
