import time
from unittest.mock import ANY, Mock, patch

from django.contrib import admin
from django.test import TestCase, override_settings

from common.utils.geo import Point
from services.runtime import DEFAULT_DISPATCH_CONFIG, get_location_feed, reset_runtime
from services.tracking import PositionSample

from orders.models import Order

from .admin import DriverProfileAdmin
from .models import DriverProfile
from .services import DatabaseCandidateSource, record_driver_location, to_candidate

KM_PER_DEGREE = 111.19492664455873
CENTER = Point(28.6139, 77.2090)


def north_of(point, km):
	return (round(point[0] + km / KM_PER_DEGREE, 6), point[1])


def create_driver(driver_id, position, vehicle_class='moto', is_available=True, reserved_order_id=None):
	return DriverProfile.objects.create(
		driver_id=driver_id,
		vehicle_class=vehicle_class,
		rating=4.7,
		is_available=is_available,
		reserved_order_id=reserved_order_id,
		current_latitude=position[0],
		current_longitude=position[1]
	)


class DatabaseCandidateSourceTests(TestCase):
	def setUp(self):
		self.source = DatabaseCandidateSource()

	def test_search_filters_by_radius_class_and_availability(self):
		create_driver('near', north_of(CENTER, 2))
		create_driver('edge', north_of(CENTER, 4.9))
		create_driver('outside', north_of(CENTER, 5.2))
		create_driver('car', north_of(CENTER, 1), vehicle_class='standard')
		create_driver('offline', north_of(CENTER, 1), is_available=False)
		create_driver('busy', north_of(CENTER, 1), reserved_order_id='order-x')
		DriverProfile.objects.create(driver_id='no-fix', vehicle_class='moto', is_available=True)

		found = self.source.search(CENTER, 5.0, 'moto')

		self.assertEqual(sorted(c.driver_id for c in found), ['edge', 'near'])
		self.assertTrue(all(c.is_available for c in found))

	def test_search_across_antimeridian(self):
		create_driver('date-line', (0.0, -179.99))
		create_driver('far-west', (0.0, -179.5))

		found = self.source.search((0.0, 179.99), 5.0, 'moto')

		self.assertEqual([c.driver_id for c in found], ['date-line'])

	def test_to_candidate(self):
		profile = create_driver('drv-1', north_of(CENTER, 1), reserved_order_id='order-1')
		candidate = to_candidate(profile)

		self.assertEqual(candidate.driver_id, 'drv-1')
		self.assertEqual(candidate.vehicle_class, 'moto')
		self.assertFalse(candidate.is_available)
		self.assertIsInstance(candidate.position.lat, float)

	def test_reserve_is_exclusive_and_idempotent(self):
		create_driver('drv-1', north_of(CENTER, 1))

		self.assertTrue(self.source.reserve('drv-1', 'order-a'))
		self.assertTrue(self.source.reserve('drv-1', 'order-a'))
		self.assertFalse(self.source.reserve('drv-1', 'order-b'))
		self.assertEqual(DriverProfile.objects.get(driver_id='drv-1').reserved_order_id, 'order-a')

	def test_reserve_unavailable_or_unknown(self):
		create_driver('offline', north_of(CENTER, 1), is_available=False)
		self.assertFalse(self.source.reserve('offline', 'order-a'))
		self.assertFalse(self.source.reserve('ghost', 'order-a'))

	def test_release_only_by_holder(self):
		create_driver('drv-1', north_of(CENTER, 1), reserved_order_id='order-a')

		self.assertFalse(self.source.release('drv-1', 'order-b'))
		self.assertTrue(self.source.release('drv-1', 'order-a'))
		self.assertIsNone(DriverProfile.objects.get(driver_id='drv-1').reserved_order_id)
		self.assertTrue(self.source.reserve('drv-1', 'order-b'))

	def test_update_location(self):
		create_driver('drv-1', north_of(CENTER, 1))
		sample = PositionSample('drv-1', 28.7, 77.3, 135.0, time.time())

		self.assertTrue(self.source.update_location(sample))
		self.assertFalse(self.source.update_location(PositionSample('ghost', 28.7, 77.3, 0.0, 1.0)))

		profile = DriverProfile.objects.get(driver_id='drv-1')
		self.assertAlmostEqual(float(profile.current_latitude), 28.7, places=6)
		self.assertAlmostEqual(float(profile.current_longitude), 77.3, places=6)
		self.assertEqual(profile.heading_degrees, 135.0)


class RecordDriverLocationTests(TestCase):
	def setUp(self):
		reset_runtime()

	def tearDown(self):
		reset_runtime()

	def test_persists_and_publishes(self):
		create_driver('drv-1', north_of(CENTER, 1))
		received = []
		get_location_feed().subscribe('drv-1', received.append)
		sample = PositionSample('drv-1', 28.65, 77.21, 10.0, time.time())

		self.assertEqual(record_driver_location(sample), 1)
		self.assertEqual(received, [sample])
		self.assertAlmostEqual(float(DriverProfile.objects.get(driver_id='drv-1').current_latitude), 28.65)

	def test_unknown_driver_still_fans_out(self):
		with self.assertLogs('drivers.services', level='WARNING'):
			self.assertEqual(record_driver_location(PositionSample('ghost', 1.0, 2.0, 0.0, 1.0)), 0)

	@override_settings(DISPATCH_CONFIG={**DEFAULT_DISPATCH_CONFIG, 'CANDIDATE_SOURCE': 'redis'})
	@patch('realtime.geo.get_redis_candidate_source')
	def test_refreshes_redis_index_when_enabled(self, mock_source):
		create_driver('drv-1', north_of(CENTER, 1), vehicle_class='truck')
		sample = PositionSample('drv-1', 28.65, 77.21, 10.0, time.time())

		record_driver_location(sample)

		mock_source.return_value.update_driver_location.assert_called_once_with(
			sample,
			vehicle_class='truck',
			rating=4.7,
			is_available=True
		)


class DriverProfileAdminTests(TestCase):
	@patch.object(DriverProfileAdmin, 'message_user')
	def test_release_finished_reservations(self, mock_message):
		from orders.repository import DjangoOrderRepository

		repository = DjangoOrderRepository()
		finished = repository.create_order('delivery', 'flash', CENTER, north_of(CENTER, 5))
		active = repository.create_order('delivery', 'flash', CENTER, north_of(CENTER, 5))
		Order.objects.filter(order_id=finished.order_id).update(status='cancelled')
		create_driver('drv-stuck', CENTER, reserved_order_id=finished.order_id)
		create_driver('drv-busy', CENTER, reserved_order_id=active.order_id)
		create_driver('drv-free', CENTER)

		model_admin = DriverProfileAdmin(DriverProfile, admin.site)
		model_admin.release_finished_reservations(Mock(), DriverProfile.objects.all())

		self.assertIsNone(DriverProfile.objects.get(driver_id='drv-stuck').reserved_order_id)
		self.assertEqual(DriverProfile.objects.get(driver_id='drv-busy').reserved_order_id, active.order_id)
		mock_message.assert_called_once_with(ANY, 'Released 1 driver(s).')
