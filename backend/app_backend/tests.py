from unittest.mock import patch

import redis
from django.test import TestCase, override_settings
from rest_framework.test import APIRequestFactory

from drivers.models import DriverProfile
from services.runtime import DEFAULT_DISPATCH_CONFIG, reset_runtime

from .views import health_check


class HealthCheckTests(TestCase):
	def setUp(self):
		reset_runtime()
		self.factory = APIRequestFactory()

	def test_healthy_on_database_source(self):
		DriverProfile.objects.create(driver_id='drv-1', is_available=True)
		DriverProfile.objects.create(driver_id='drv-2', is_available=True, reserved_order_id='ord-1')

		response = health_check(self.factory.get('/health/'))

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['status'], 'healthy')
		self.assertEqual(response.data['candidate_source'], 'database')
		self.assertEqual(response.data['available_drivers'], 1)
		self.assertEqual(response.data['open_orders'], 0)
		self.assertEqual(response.data['tracking_sessions'], 0)
		self.assertNotIn('redis_geo', response.data['services'])

	@override_settings(DISPATCH_CONFIG={**DEFAULT_DISPATCH_CONFIG, 'CANDIDATE_SOURCE': 'redis'})
	@patch('realtime.geo.get_redis_client')
	def test_unreachable_redis_index(self, mock_client):
		mock_client.return_value.ping.side_effect = redis.ConnectionError('refused')

		with self.assertLogs('app_backend.views', level='WARNING'):
			response = health_check(self.factory.get('/health/'))

		self.assertEqual(response.status_code, 503)
		self.assertTrue(response.data['services']['redis_geo'].startswith('unhealthy'))
		self.assertEqual(response.data['services']['database'], 'healthy')
