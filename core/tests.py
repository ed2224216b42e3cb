"""
Tests for Redis rate limiting.
"""
from unittest import mock

import redis
from django.test import TestCase, override_settings
from rest_framework.response import Response
from rest_framework.test import APIRequestFactory
from rest_framework.views import APIView

from core import rate_limiting
from core.rate_limiting import RateLimitMixin, get_client_ip


class LimitedView(RateLimitMixin, APIView):
    rate_limit_max_requests = 2
    rate_limit_window_seconds = 60

    def get(self, request):
        return Response({'ok': True})


@override_settings(RATE_LIMIT_ENABLED=True)
class RateLimitTestCase(TestCase):
    """Test cases for the rate limiting mixin."""

    def setUp(self):
        self.factory = APIRequestFactory()
        self.redis = mock.MagicMock()
        self.redis.ttl.return_value = 42
        patcher = mock.patch.object(rate_limiting, 'get_redis_client', return_value=self.redis)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _call(self):
        return LimitedView.as_view()(self.factory.get('/limited/', REMOTE_ADDR='10.0.0.1'))

    def test_requests_within_limit(self):
        self.redis.incr.return_value = 1

        response = self._call()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['X-RateLimit-Remaining'], '1')
        self.redis.incr.assert_called_once_with('rate_limit:LimitedView:10.0.0.1')
        self.redis.expire.assert_called_once_with('rate_limit:LimitedView:10.0.0.1', 60)

    def test_limit_exceeded(self):
        self.redis.incr.return_value = 3

        response = self._call()

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response['Retry-After'], '42')
        self.redis.expire.assert_not_called()

    def test_fails_open_on_redis_error(self):
        self.redis.incr.side_effect = redis.ConnectionError('down')

        response = self._call()

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.has_header('X-RateLimit-Limit'))

    @override_settings(RATE_LIMIT_ENABLED=False)
    def test_disabled(self):
        response = self._call()

        self.assertEqual(response.status_code, 200)
        self.redis.incr.assert_not_called()

    def test_client_ip_prefers_forwarded_header(self):
        request = self.factory.get('/', HTTP_X_FORWARDED_FOR='203.0.113.5, 10.0.0.1')
        self.assertEqual(get_client_ip(request), '203.0.113.5')


class RedisClientTestCase(TestCase):
    """Test cases for the lazily connected Redis client."""

    def setUp(self):
        rate_limiting._redis_client = None
        self.addCleanup(setattr, rate_limiting, '_redis_client', None)

    def test_reconnects_after_outage(self):
        """
        Test: A failed connection is not remembered.

        Given: Redis is down on the first call and back on the second
        When: get_redis_client is called twice, then once more
        Then: None, then a client, then the same cached client
        """
        down = mock.MagicMock()
        down.ping.side_effect = redis.ConnectionError('refused')
        up = mock.MagicMock()

        with mock.patch.object(rate_limiting.redis.Redis, 'from_url', side_effect=[down, up]) as from_url:
            self.assertIsNone(rate_limiting.get_redis_client())
            self.assertIs(rate_limiting.get_redis_client(), up)
            self.assertIs(rate_limiting.get_redis_client(), up)

        self.assertEqual(from_url.call_count, 2)


class HealthCheckTestCase(TestCase):

    def test_health(self):
        response = self.client.get('/health/')
        self.assertEqual(response.json()['status'], 'healthy')
