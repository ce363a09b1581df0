import time
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.db import DatabaseError
from django.test import TestCase, override_settings
from rest_framework.test import APIRequestFactory

from drivers.models import DriverProfile
from drivers.services import record_driver_location
from services.order_lifecycle import OrderStatus
from services.runtime import DEFAULT_DISPATCH_CONFIG, get_tracking_manager, reset_runtime
from services.tracking import PositionSample

from . import views
from .models import DispatchAttemptLog, Order, OrderEvent
from .repository import DjangoOrderRepository, OrderNotFoundError
from .services import dispatch_order as dispatch_order_service
from .tasks import redispatch_order_task

KM_PER_DEGREE = 111.19492664455873
PICKUP = (28.6139, 77.2090)
DESTINATION = (28.6139 + 8 / KM_PER_DEGREE, 77.2090)

SHORT_RADII = {
	**DEFAULT_DISPATCH_CONFIG,
	'INITIAL_RADIUS_KM': 5.0,
	'MAX_RADIUS_KM': 10.0,
	'RADIUS_STEP_KM': 5.0,
	'REDISPATCH_COUNTDOWN_SECONDS': 0,
}


def north_of(point, km):
	return (round(point[0] + km / KM_PER_DEGREE, 6), point[1])


def create_driver(driver_id, position, vehicle_class='moto', rating=4.5, is_available=True):
	return DriverProfile.objects.create(
		driver_id=driver_id,
		vehicle_class=vehicle_class,
		rating=rating,
		is_available=is_available,
		current_latitude=position[0],
		current_longitude=position[1]
	)


class OrderApiTestCase(TestCase):
	def setUp(self):
		reset_runtime()
		self.factory = APIRequestFactory()
		self.repository = DjangoOrderRepository()

	def tearDown(self):
		reset_runtime()

	def create_order(self, pickup=PICKUP, kind='delivery', service_tier='flash'):
		return self.repository.create_order(
			kind=kind,
			service_tier=service_tier,
			pickup_point=pickup,
			destination_point=DESTINATION
		)

	def post(self, view, order_id, data=None):
		# Bus subscribers (tracking, driver release) run once the request commits
		request = self.factory.post('/api/orders/%s/' % order_id, data or {}, format='json')
		with self.captureOnCommitCallbacks(execute=True):
			return view(request, order_id=order_id)

	def get(self, view, order_id):
		request = self.factory.get('/api/orders/%s/' % order_id)
		return view(request, order_id=order_id)


class OrderRepositoryTests(OrderApiTestCase):
	def test_round_trip(self):
		order = self.create_order()
		loaded = self.repository.load_order(order.order_id)

		self.assertEqual(loaded.order_id, order.order_id)
		self.assertEqual(loaded.status, OrderStatus.PENDING)
		self.assertEqual(loaded.service_tier, 'flash')
		self.assertAlmostEqual(loaded.pickup_point.lat, PICKUP[0], places=6)
		self.assertAlmostEqual(loaded.destination_point.lat, DESTINATION[0], places=6)
		self.assertIsNotNone(loaded.created_at)

	def test_unknown_order(self):
		with self.assertRaises(OrderNotFoundError):
			self.repository.load_order('missing')

	def test_list_dispatchable_skips_finished_orders(self):
		first = self.create_order()
		second = self.create_order()
		Order.objects.filter(order_id=second.order_id).update(status='cancelled')

		self.assertEqual(
			[order.order_id for order in self.repository.list_dispatchable()],
			[first.order_id]
		)


class OrderCreateTests(OrderApiTestCase):
	def test_create_order(self):
		request = self.factory.post('/api/orders/', {
			'kind': 'delivery',
			'service_tier': 'Flash',
			'pickup_latitude': PICKUP[0],
			'pickup_longitude': PICKUP[1],
			'destination_latitude': DESTINATION[0],
			'destination_longitude': DESTINATION[1],
		}, format='json')
		response = views.create_order(request)

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['status'], 'pending')
		self.assertEqual(response.data['service_tier'], 'flash')
		self.assertEqual(response.data['events'], [])
		self.assertTrue(Order.objects.filter(order_id=response.data['order_id']).exists())

	def test_create_rejects_unknown_tier(self):
		request = self.factory.post('/api/orders/', {
			'kind': 'transport',
			'service_tier': 'maxicharge',
			'pickup_latitude': PICKUP[0],
			'pickup_longitude': PICKUP[1],
			'destination_latitude': DESTINATION[0],
			'destination_longitude': DESTINATION[1],
		}, format='json')
		response = views.create_order(request)

		self.assertEqual(response.status_code, 400)
		self.assertIn('service_tier', response.data)
		self.assertEqual(Order.objects.count(), 0)

	def test_create_rejects_out_of_range_coordinates(self):
		request = self.factory.post('/api/orders/', {
			'kind': 'delivery',
			'service_tier': 'flash',
			'pickup_latitude': 91,
			'pickup_longitude': PICKUP[1],
			'destination_latitude': DESTINATION[0],
			'destination_longitude': DESTINATION[1],
		}, format='json')
		response = views.create_order(request)

		self.assertEqual(response.status_code, 400)
		self.assertIn('pickup_latitude', response.data)

	@patch('orders.tasks.redispatch_order_task.delay')
	def test_auto_dispatch_queues_task(self, mock_delay):
		request = self.factory.post('/api/orders/', {
			'kind': 'delivery',
			'service_tier': 'flash',
			'pickup_latitude': PICKUP[0],
			'pickup_longitude': PICKUP[1],
			'destination_latitude': DESTINATION[0],
			'destination_longitude': DESTINATION[1],
			'auto_dispatch': True,
		}, format='json')
		response = views.create_order(request)

		self.assertEqual(response.status_code, 201)
		mock_delay.assert_called_once_with(response.data['order_id'])

	def test_get_order(self):
		order = self.create_order()
		response = self.get(views.get_order, order.order_id)
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['order_id'], order.order_id)

		response = self.get(views.get_order, 'missing')
		self.assertEqual(response.status_code, 404)


class DispatchApiTests(OrderApiTestCase):
	def test_dispatch_assigns_nearest_driver(self):
		create_driver('drv-near', north_of(PICKUP, 1))
		create_driver('drv-far', north_of(PICKUP, 3))
		create_driver('drv-car', north_of(PICKUP, 0.5), vehicle_class='standard')
		order = self.create_order()

		response = self.post(views.dispatch_order, order.order_id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['message'], 'Driver assigned')
		self.assertEqual(response.data['attempt']['outcome'], 'matched')
		self.assertEqual(response.data['attempt']['driver_id'], 'drv-near')
		self.assertEqual(response.data['order']['status'], 'driver_assigned')
		self.assertEqual(
			[event['to_status'] for event in response.data['order']['events']],
			['confirmed', 'driver_assigned']
		)

		self.assertEqual(DriverProfile.objects.get(driver_id='drv-near').reserved_order_id, order.order_id)
		self.assertIsNone(DriverProfile.objects.get(driver_id='drv-far').reserved_order_id)

		log = DispatchAttemptLog.objects.get(order_id=order.order_id)
		self.assertEqual(log.outcome, 'matched')
		self.assertEqual(log.radii_km, [5.0])

		event = OrderEvent.objects.get(order_id=order.order_id, to_status='driver_assigned')
		self.assertEqual(event.metadata['driver_id'], 'drv-near')
		self.assertIsNotNone(get_tracking_manager().get_session(order.order_id))

	def test_reserved_driver_is_not_offered_twice(self):
		create_driver('drv-only', north_of(PICKUP, 1))
		first = self.create_order()
		second = self.create_order()

		self.post(views.dispatch_order, first.order_id)
		response = self.post(views.dispatch_order, second.order_id, {'max_radius_km': 5})

		self.assertEqual(response.data['attempt']['outcome'], 'exhausted')
		self.assertEqual(response.data['order']['status'], 'pending')

	def test_exhausted_then_expand_search(self):
		order = self.create_order()

		response = self.post(views.dispatch_order, order.order_id, {
			'initial_radius_km': 5,
			'max_radius_km': 10,
			'radius_step_km': 5,
		})
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['message'], views.EXHAUSTED_MESSAGE)
		self.assertEqual(response.data['attempt']['radii_km'], [5.0, 10.0])
		self.assertEqual(response.data['order']['status'], 'pending')

		create_driver('drv-12', north_of(PICKUP, 12))
		response = self.post(views.expand_search, order.order_id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['message'], 'Driver assigned')
		self.assertEqual(response.data['attempt']['radii_km'], [15.0])
		self.assertEqual(response.data['attempt']['attempt_count'], 3)
		self.assertEqual(DispatchAttemptLog.objects.filter(order_id=order.order_id).count(), 2)

	def test_expand_before_dispatch(self):
		order = self.create_order()
		response = self.post(views.expand_search, order.order_id)
		self.assertEqual(response.status_code, 400)

	def test_invalid_radius_override(self):
		order = self.create_order()
		response = self.post(views.dispatch_order, order.order_id, {
			'initial_radius_km': 10,
			'max_radius_km': 5,
		})
		self.assertEqual(response.status_code, 400)

	def test_max_radius_below_configured_initial(self):
		order = self.create_order()
		response = self.post(views.dispatch_order, order.order_id, {'max_radius_km': 2})

		self.assertEqual(response.status_code, 400)
		self.assertIn('non_field_errors', response.data)
		self.assertFalse(DispatchAttemptLog.objects.filter(order_id=order.order_id).exists())

	def test_dispatch_unknown_order(self):
		response = self.post(views.dispatch_order, 'missing')
		self.assertEqual(response.status_code, 404)

	def test_dispatch_assigned_order_conflicts(self):
		create_driver('drv-near', north_of(PICKUP, 1))
		order = self.create_order()
		self.post(views.dispatch_order, order.order_id)

		response = self.post(views.dispatch_order, order.order_id)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], views.LOCKED_ORDER_MESSAGE)


class LifecycleApiTests(OrderApiTestCase):
	def setUp(self):
		super().setUp()
		self.profile = create_driver('drv-near', north_of(PICKUP, 1))
		self.order = self.create_order()
		self.post(views.dispatch_order, self.order.order_id)

	def test_driver_progresses_order(self):
		for target in ('picked_up', 'in_transit', 'delivered'):
			response = self.post(views.transition, self.order.order_id, {
				'status': target,
				'actor': 'drv-near',
			})
			self.assertEqual(response.status_code, 200)
			self.assertEqual(response.data['status'], target)

		record = Order.objects.get(order_id=self.order.order_id)
		self.assertIsNotNone(record.delivered_at)
		self.profile.refresh_from_db()
		self.assertIsNone(self.profile.reserved_order_id)
		self.assertIsNone(get_tracking_manager().get_session(self.order.order_id))

	def test_illegal_transition(self):
		response = self.post(views.transition, self.order.order_id, {'status': 'delivered'})

		self.assertEqual(response.status_code, 409)
		self.assertEqual(Order.objects.get(order_id=self.order.order_id).status, 'driver_assigned')

	def test_driver_can_not_be_assigned_by_transition(self):
		other = self.create_order()
		self.post(views.transition, other.order_id, {'status': 'confirmed'})

		response = self.post(views.transition, other.order_id, {
			'status': 'driver_assigned',
			'driver_id': 'drv-near',
		})

		self.assertEqual(response.status_code, 400)
		self.assertIn('status', response.data)
		record = Order.objects.get(order_id=other.order_id)
		self.assertEqual(record.status, 'confirmed')
		self.assertIsNone(record.assigned_driver_id)
		self.profile.refresh_from_db()
		self.assertEqual(self.profile.reserved_order_id, self.order.order_id)

	def test_cancel_releases_driver(self):
		response = self.post(views.cancel_order, self.order.order_id, {'reason': 'customer_request'})

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['message'], 'Order cancelled successfully')
		self.assertEqual(response.data['status'], 'cancelled')
		self.assertEqual(response.data['cancellation_code'], 'customer_request')

		self.profile.refresh_from_db()
		self.assertIsNone(self.profile.reserved_order_id)

		response = self.post(views.cancel_order, self.order.order_id, {'reason': 'timeout'})
		self.assertEqual(response.status_code, 409)

	def test_cancel_needs_reason(self):
		response = self.post(views.cancel_order, self.order.order_id, {})
		self.assertEqual(response.status_code, 400)

		response = self.post(views.cancel_order, self.order.order_id, {'reason': 'other'})
		self.assertEqual(response.status_code, 400)
		self.assertEqual(Order.objects.get(order_id=self.order.order_id).status, 'driver_assigned')

	def test_cancel_with_free_text(self):
		response = self.post(views.cancel_order, self.order.order_id, {
			'reason': 'Ordered twice by mistake',
		})
		self.assertEqual(response.data['cancellation_code'], 'other')
		self.assertEqual(response.data['cancellation_reason'], 'Ordered twice by mistake')


class TrackingApiTests(OrderApiTestCase):
	def test_no_tracking_before_assignment(self):
		order = self.create_order()
		response = self.get(views.order_tracking, order.order_id)
		self.assertEqual(response.status_code, 404)

	def test_tracking_follows_driver_reports(self):
		create_driver('drv-near', north_of(PICKUP, 1))
		order = self.create_order()
		self.post(views.dispatch_order, order.order_id)

		response = self.get(views.order_tracking, order.order_id)
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['driver_id'], 'drv-near')
		self.assertIsNone(response.data['frame'])
		self.assertTrue(response.data['is_stale'])

		position = north_of(PICKUP, 2)
		delivered = record_driver_location(PositionSample(
			entity_id='drv-near',
			lat=position[0],
			lng=position[1],
			heading_degrees=0.0,
			observed_at=time.time()
		))
		self.assertEqual(delivered, 1)

		response = self.get(views.order_tracking, order.order_id)
		self.assertEqual(response.data['frame']['lat'], position[0])
		self.assertFalse(response.data['is_stale'])
		self.assertAlmostEqual(response.data['distance_remaining_km'], 6.0, delta=0.01)
		self.assertAlmostEqual(response.data['eta_minutes'], 12.0, delta=0.1)

	def test_tracking_reopens_session_after_restart(self):
		create_driver('drv-near', north_of(PICKUP, 1))
		order = self.create_order()
		self.post(views.dispatch_order, order.order_id)
		reset_runtime()

		response = self.get(views.order_tracking, order.order_id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['order_status'], 'driver_assigned')

	def test_unknown_order(self):
		response = self.get(views.order_tracking, 'missing')
		self.assertEqual(response.status_code, 404)


class TransactionalPublishingTests(OrderApiTestCase):
	def test_rolled_back_dispatch_publishes_nothing(self):
		create_driver('drv-near', north_of(PICKUP, 1))
		order = self.create_order()
		save_order = DjangoOrderRepository.save_order

		def fail_on_assignment(repository, domain_order):
			if domain_order.status is OrderStatus.DRIVER_ASSIGNED:
				raise DatabaseError('write failed')
			return save_order(repository, domain_order)

		with patch.object(DjangoOrderRepository, 'save_order', autospec=True, side_effect=fail_on_assignment):
			with self.captureOnCommitCallbacks(execute=True) as callbacks:
				with self.assertRaises(DatabaseError):
					dispatch_order_service(order.order_id)

		self.assertEqual(callbacks, [])
		self.assertEqual(Order.objects.get(order_id=order.order_id).status, 'pending')
		self.assertFalse(OrderEvent.objects.filter(order_id=order.order_id).exists())
		self.assertIsNone(DriverProfile.objects.get(driver_id='drv-near').reserved_order_id)
		self.assertIsNone(get_tracking_manager().get_session(order.order_id))

	def test_committed_dispatch_reaches_subscribers(self):
		create_driver('drv-near', north_of(PICKUP, 1))
		order = self.create_order()

		with self.captureOnCommitCallbacks() as callbacks:
			dispatch_order_service(order.order_id)

		self.assertEqual(len(callbacks), 3)
		self.assertEqual(OrderEvent.objects.filter(order_id=order.order_id).count(), 2)
		self.assertIsNone(get_tracking_manager().get_session(order.order_id))

		for callback in callbacks:
			callback()
		self.assertIsNotNone(get_tracking_manager().get_session(order.order_id))


@override_settings(DISPATCH_CONFIG=SHORT_RADII)
class RedispatchTaskTests(OrderApiTestCase):
	def test_matches_within_first_ring(self):
		create_driver('drv-near', north_of(PICKUP, 1))
		order = self.create_order()

		result = redispatch_order_task(order.order_id)

		self.assertEqual(result['outcome'], 'matched')
		self.assertEqual(Order.objects.get(order_id=order.order_id).status, 'driver_assigned')

	@patch('orders.tasks.redispatch_order_task.apply_async')
	def test_exhausted_ring_schedules_wider_search(self, mock_apply_async):
		order = self.create_order()

		result = redispatch_order_task(order.order_id)

		self.assertEqual(result['radii_km'], [5.0])
		mock_apply_async.assert_called_once_with(args=[order.order_id, 10.0, 1], countdown=0)

	@patch('orders.tasks.redispatch_order_task.apply_async')
	def test_stops_at_max_radius(self, mock_apply_async):
		order = self.create_order()

		result = redispatch_order_task(order.order_id, 10.0)

		self.assertEqual(result['outcome'], 'exhausted')
		mock_apply_async.assert_not_called()

	def test_eager_chain_finds_driver_in_later_ring(self):
		create_driver('drv-8', north_of(PICKUP, 8))
		order = self.create_order()

		redispatch_order_task.delay(order.order_id)

		self.assertEqual(
			list(DispatchAttemptLog.objects.filter(order_id=order.order_id)
				.order_by('id').values_list('radius_km', 'attempt_count', 'outcome')),
			[(5.0, 1, 'exhausted'), (10.0, 2, 'matched')]
		)
		self.assertEqual(Order.objects.get(order_id=order.order_id).assigned_driver_id, 'drv-8')

	def test_skips_finished_and_unknown_orders(self):
		order = self.create_order()
		Order.objects.filter(order_id=order.order_id).update(status='cancelled')

		self.assertIsNone(redispatch_order_task(order.order_id))
		self.assertIsNone(redispatch_order_task('missing'))


class DispatchPendingOrdersCommandTests(OrderApiTestCase):
	def test_sweep(self):
		create_driver('drv-near', north_of(PICKUP, 1))
		self.create_order()
		self.create_order(pickup=(19.0760, 72.8777))
		out = StringIO()

		call_command('dispatch_pending_orders', stdout=out)

		self.assertIn('Dispatched 2 order(s); matched 1, exhausted 1.', out.getvalue())
		self.assertEqual(Order.objects.filter(status='driver_assigned').count(), 1)
		self.assertEqual(Order.objects.filter(status='pending').count(), 1)

	def test_limit(self):
		self.create_order()
		self.create_order()
		out = StringIO()

		call_command('dispatch_pending_orders', '--limit', '1', stdout=out)

		self.assertIn('Dispatched 1 order(s)', out.getvalue())
