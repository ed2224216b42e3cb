"""
Redis-based rate limiting for API endpoints.
Fixed window counter per client IP and view; fails open when Redis is down.
"""
import logging

import redis
from django.conf import settings
from rest_framework.exceptions import Throttled

logger = logging.getLogger(__name__)

_redis_client = None


def get_redis_client():
    """Connect on first use; None while Redis is unreachable, retried next call."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5
        )
        client.ping()
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will be disabled.")
        return None
    _redis_client = client
    return client


def get_client_ip(request):
    """Extract client IP address from request."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR', 'unknown')
    return ip


def hit(key: str, window_seconds: int):
    """
    Count one request against key.

    Returns:
        Tuple of (count in current window, seconds until reset), or None
        when rate limiting is unavailable.
    """
    client = get_redis_client()
    if client is None:
        return None

    try:
        current_count = client.incr(key)
        if current_count == 1:
            client.expire(key, window_seconds)
        ttl = client.ttl(key)
    except redis.RedisError as e:
        logger.error(f"Redis error in rate limiting: {e}")
        return None

    return current_count, max(ttl, 0)


class RateLimitMixin:
    """
    Mixin class for DRF views to add rate limiting.

    Usage:
        class MyView(RateLimitMixin, APIView):
            rate_limit_max_requests = 20
            rate_limit_window_seconds = 60
    """
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60

    def initial(self, request, *args, **kwargs):
        self._rate_limit_state = None
        if getattr(settings, 'RATE_LIMIT_ENABLED', True):
            key = f"rate_limit:{self.__class__.__name__}:{get_client_ip(request)}"
            self._rate_limit_state = hit(key, self.rate_limit_window_seconds)

        if self._rate_limit_state is not None:
            current_count, ttl = self._rate_limit_state
            if current_count > self.rate_limit_max_requests:
                logger.warning(f"Rate limit exceeded for {get_client_ip(request)} on {self.__class__.__name__}")
                raise Throttled(
                    wait=ttl,
                    detail=(
                        f'Maximum {self.rate_limit_max_requests} requests per '
                        f'{self.rate_limit_window_seconds} seconds allowed.'
                    )
                )

        super().initial(request, *args, **kwargs)

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        state = getattr(self, '_rate_limit_state', None)
        if state is not None:
            current_count, ttl = state
            response['X-RateLimit-Limit'] = str(self.rate_limit_max_requests)
            response['X-RateLimit-Remaining'] = str(max(0, self.rate_limit_max_requests - current_count))
            response['X-RateLimit-Reset'] = str(ttl)
        return response
