"""
Inbound gateway notification parsing.

The gateway may call back with query parameters (GET), a form-encoded body
or a JSON body. Each encoding has a reader; parse_callback() picks one from
the request and normalizes the result into a CallbackPayload before any
business logic runs. Unreadable bodies fall back to the query string.
"""
import logging
from dataclasses import dataclass, asdict

from rest_framework.exceptions import ParseError

logger = logging.getLogger(__name__)

FIELDS = {
    'tracking_id': 'OrderTrackingId',
    'merchant_reference': 'OrderMerchantReference',
    'notification_type': 'OrderNotificationType',
    'created_date': 'OrderCreatedDate',
}


@dataclass(frozen=True)
class CallbackPayload:
    tracking_id: str = ''
    merchant_reference: str = ''
    notification_type: str = ''
    created_date: str = ''

    @property
    def missing_fields(self) -> list:
        return [
            FIELDS[name] for name in ('tracking_id', 'merchant_reference')
            if not getattr(self, name)
        ]

    def to_raw(self) -> dict:
        return {FIELDS[name]: value for name, value in asdict(self).items()}


def from_mapping(data) -> CallbackPayload:
    """Build a payload from any dict-like source (QueryDict or parsed JSON)."""
    values = {}
    for name, key in FIELDS.items():
        value = data.get(key) if hasattr(data, 'get') else None
        values[name] = '' if value is None else str(value).strip()
    return CallbackPayload(**values)


def read_query(request):
    return request.query_params


def read_form(request):
    return request.data


def read_json(request):
    data = request.data
    if not isinstance(data, dict):
        raise ParseError("Callback JSON body must be an object")
    return data


def choose_reader(request):
    """Pick the reader for this request's transport."""
    if request.method == 'GET':
        return read_query
    content_type = (request.content_type or '').lower()
    if 'application/x-www-form-urlencoded' in content_type or 'multipart/form-data' in content_type:
        return read_form
    if 'json' in content_type:
        return read_json
    return read_query


def parse_callback(request) -> CallbackPayload:
    """Normalize a callback request regardless of how it was encoded."""
    reader = choose_reader(request)
    try:
        payload = from_mapping(reader(request))
    except ParseError as e:
        logger.warning(f"Unreadable callback body, falling back to query params: {e}")
        payload = from_mapping(request.query_params)

    # Gateways sometimes POST an empty body with the fields in the URL
    if reader is not read_query and not payload.tracking_id:
        query_payload = from_mapping(request.query_params)
        if query_payload.tracking_id:
            payload = query_payload

    return payload
