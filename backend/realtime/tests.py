from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import redis
from channels.layers import get_channel_layer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.test import SimpleTestCase

from services.matching import DispatchAttempt, DispatchOutcome
from services.order_lifecycle import DomainEvent, OrderStatus
from services.runtime import hold_driver_on_assignment, reset_runtime
from services.tracking import PositionSample, TrackingSnapshot

from .geo import _HOLD_SCRIPT, _RELEASE_SCRIPT, RedisCandidateSource
from .notifications import ChannelLayerNotifier, driver_group, order_group
from .routing import websocket_urlpatterns

AT = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def assigned_event(order_id='ord-1', driver_id='drv-1'):
	return DomainEvent(
		order_id=order_id,
		from_status=OrderStatus.CONFIRMED,
		to_status=OrderStatus.DRIVER_ASSIGNED,
		actor='dispatcher',
		at=AT,
		metadata={'driver_id': driver_id}
	)


class ExpiringKeys:
	"""Reservation-key subset of a Redis client with a manually advanced clock."""

	def __init__(self):
		self.now = 0.0
		self.values = {}
		self.expires = {}

	def advance(self, seconds):
		self.now += seconds
		for key, at in list(self.expires.items()):
			if at <= self.now:
				del self.values[key]
				del self.expires[key]

	def set(self, key, value, nx=False, ex=None):
		if nx and key in self.values:
			return None
		self.values[key] = value
		self.expires.pop(key, None)
		if ex is not None:
			self.expires[key] = self.now + ex
		return True

	def get(self, key):
		return self.values.get(key)

	def eval(self, script, numkeys, key, order_id):
		if self.values.get(key) != order_id:
			return 0
		if script == _HOLD_SCRIPT:
			self.expires.pop(key, None)
			return 1
		del self.values[key]
		self.expires.pop(key, None)
		return 1


class RedisCandidateSourceTests(SimpleTestCase):
	def setUp(self):
		self.client = Mock()
		self.source = RedisCandidateSource(redis_client=self.client, reservation_ttl=300)

	def test_update_driver_location(self):
		sample = PositionSample('drv-1', 28.62, 77.21, 45.0, 100.0)

		self.assertTrue(self.source.update_driver_location(sample, vehicle_class='moto', rating=4.5, is_available=True))

		self.client.geoadd.assert_called_once_with('drivers:geo', (77.21, 28.62, 'drv-1'))
		self.client.hset.assert_called_once_with('driver:meta:drv-1', mapping={
			'heading_degrees': '45.0',
			'vehicle_class': 'moto',
			'rating': '4.5',
			'is_available': '1',
		})
		self.client.expire.assert_called_once_with('driver:meta:drv-1', 120)

	def test_update_failure_is_logged(self):
		self.client.geoadd.side_effect = redis.ConnectionError('down')
		with self.assertLogs('realtime.geo', level='ERROR'):
			self.assertFalse(self.source.update_driver_location(PositionSample('drv-1', 1.0, 2.0, 0.0, 1.0)))

	def test_search_filters_metadata_and_reservations(self):
		self.client.geosearch.return_value = [
			['drv-1', 1.2, (77.21, 28.62)],
			['drv-car', 1.3, (77.22, 28.62)],
			['drv-off', 1.4, (77.23, 28.62)],
			['drv-taken', 1.5, (77.24, 28.62)],
			['drv-expired', 1.6, (77.25, 28.62)],
		]
		metas = {
			'driver:meta:drv-1': {'vehicle_class': 'moto', 'is_available': '1', 'rating': '4.8', 'heading_degrees': '90.0'},
			'driver:meta:drv-car': {'vehicle_class': 'standard', 'is_available': '1'},
			'driver:meta:drv-off': {'vehicle_class': 'moto', 'is_available': '0'},
			'driver:meta:drv-taken': {'vehicle_class': 'moto', 'is_available': '1'},
			'driver:meta:drv-expired': {},
		}
		pipe = self.client.pipeline.return_value
		pipe.execute.return_value = [
			metas['driver:meta:drv-1'], 0,
			metas['driver:meta:drv-car'], 0,
			metas['driver:meta:drv-off'], 0,
			metas['driver:meta:drv-taken'], 1,
			metas['driver:meta:drv-expired'], 0,
		]

		found = self.source.search((28.6139, 77.2090), 5.0, 'moto')

		self.assertEqual([c.driver_id for c in found], ['drv-1'])
		self.assertEqual(found[0].position.lat, 28.62)
		self.assertEqual(found[0].position.lng, 77.21)
		self.assertEqual(found[0].rating, 4.8)
		self.assertEqual(found[0].heading_degrees, 90.0)
		self.client.geosearch.assert_called_once_with(
			'drivers:geo',
			longitude=77.2090,
			latitude=28.6139,
			radius=5.0,
			unit='km',
			sort='ASC',
			count=100,
			withdist=True,
			withcoord=True,
		)
		self.client.pipeline.assert_called_once_with(transaction=False)
		self.assertEqual(pipe.hgetall.call_count, 5)
		pipe.exists.assert_any_call('driver:reservation:drv-taken')
		pipe.execute.assert_called_once_with()
		self.client.hgetall.assert_not_called()
		self.client.exists.assert_not_called()

	def test_search_without_hits_skips_metadata(self):
		self.client.geosearch.return_value = []
		self.assertEqual(self.source.search((0.0, 0.0), 5.0, 'moto'), [])
		self.client.pipeline.assert_not_called()

	def test_search_metadata_failure_returns_nothing(self):
		self.client.geosearch.return_value = [['drv-1', 1.2, (77.21, 28.62)]]
		self.client.pipeline.return_value.execute.side_effect = redis.ConnectionError('down')
		with self.assertLogs('realtime.geo', level='ERROR'):
			self.assertEqual(self.source.search((28.6139, 77.2090), 5.0, 'moto'), [])

	def test_search_failure_returns_nothing(self):
		self.client.geosearch.side_effect = redis.ConnectionError('down')
		with self.assertLogs('realtime.geo', level='ERROR'):
			self.assertEqual(self.source.search((0.0, 0.0), 5.0, 'moto'), [])

	def test_reserve_sets_key_once(self):
		self.client.set.return_value = True

		self.assertTrue(self.source.reserve('drv-1', 'ord-1'))
		self.client.set.assert_called_once_with('driver:reservation:drv-1', 'ord-1', nx=True, ex=300)

	def test_reserve_held_by_same_or_other_order(self):
		self.client.set.return_value = None
		self.client.get.return_value = 'ord-1'

		self.assertTrue(self.source.reserve('drv-1', 'ord-1'))
		self.assertFalse(self.source.reserve('drv-1', 'ord-2'))

	def test_reserve_failure(self):
		self.client.set.side_effect = redis.ConnectionError('down')
		with self.assertLogs('realtime.geo', level='ERROR'):
			self.assertFalse(self.source.reserve('drv-1', 'ord-1'))

	def test_release_compares_owner(self):
		self.client.eval.return_value = 1
		self.assertTrue(self.source.release('drv-1', 'ord-1'))
		self.client.eval.assert_called_once_with(_RELEASE_SCRIPT, 1, 'driver:reservation:drv-1', 'ord-1')

		self.client.eval.return_value = 0
		self.assertFalse(self.source.release('drv-1', 'ord-2'))

	def test_hold_persists_owned_reservation(self):
		self.client.eval.return_value = 1
		self.assertTrue(self.source.hold('drv-1', 'ord-1'))
		self.client.eval.assert_called_once_with(_HOLD_SCRIPT, 1, 'driver:reservation:drv-1', 'ord-1')

	def test_hold_failure(self):
		self.client.eval.side_effect = redis.ConnectionError('down')
		with self.assertLogs('realtime.geo', level='ERROR'):
			self.assertFalse(self.source.hold('drv-1', 'ord-1'))

	def test_remove_driver(self):
		self.assertTrue(self.source.remove_driver('drv-1'))
		self.client.zrem.assert_called_once_with('drivers:geo', 'drv-1')
		self.client.delete.assert_called_once_with('driver:meta:drv-1')


class ReservationLifetimeTests(SimpleTestCase):
	def setUp(self):
		self.keys = ExpiringKeys()
		self.source = RedisCandidateSource(redis_client=self.keys, reservation_ttl=1)

	def test_unassigned_reservation_lapses_after_ttl(self):
		self.assertTrue(self.source.reserve('drv-1', 'order-a'))
		self.keys.advance(1.2)

		self.assertTrue(self.source.reserve('drv-1', 'order-b'))

	def test_held_reservation_outlives_ttl_until_release(self):
		self.assertTrue(self.source.reserve('drv-1', 'order-a'))
		self.assertTrue(self.source.hold('drv-1', 'order-a'))
		self.keys.advance(600)

		self.assertFalse(self.source.reserve('drv-1', 'order-b'))
		self.assertEqual(self.source.reserved_by('drv-1'), 'order-a')
		self.assertFalse(self.source.hold('drv-1', 'order-b'))

		self.assertTrue(self.source.release('drv-1', 'order-a'))
		self.assertTrue(self.source.reserve('drv-1', 'order-b'))


class HoldDriverOnAssignmentTests(SimpleTestCase):
	@patch('services.runtime.get_candidate_source')
	def test_assignment_holds_reservation(self, mock_source):
		hold_driver_on_assignment(assigned_event('ord-1', 'drv-1'))
		mock_source.return_value.hold.assert_called_once_with('drv-1', 'ord-1')

	@patch('services.runtime.get_candidate_source')
	def test_other_events_are_ignored(self, mock_source):
		hold_driver_on_assignment(DomainEvent(
			order_id='ord-1',
			from_status=OrderStatus.PENDING,
			to_status=OrderStatus.CONFIRMED,
			actor='dispatcher',
			at=AT
		))
		hold_driver_on_assignment('noise')
		mock_source.assert_not_called()

	@patch('services.runtime.get_candidate_source')
	def test_lost_reservation_is_logged(self, mock_source):
		mock_source.return_value.hold.return_value = False
		with self.assertLogs('services.runtime', level='WARNING'):
			hold_driver_on_assignment(assigned_event('ord-1', 'drv-1'))

	@patch('services.runtime.get_candidate_source')
	def test_sources_without_hold_are_skipped(self, mock_source):
		mock_source.return_value = Mock(spec=['search', 'reserve', 'release'])
		hold_driver_on_assignment(assigned_event('ord-1', 'drv-1'))
		mock_source.return_value.reserve.assert_not_called()
		mock_source.return_value.release.assert_not_called()


class ChannelLayerNotifierTests(SimpleTestCase):
	def setUp(self):
		self.layer = Mock()
		self.layer.group_send = AsyncMock()
		self.notifier = ChannelLayerNotifier(self.layer)

	def test_assignment_reaches_order_and_driver(self):
		event = assigned_event()
		self.notifier(event)

		self.assertEqual(self.layer.group_send.await_count, 2)
		order_call, driver_call = self.layer.group_send.await_args_list
		self.assertEqual(order_call.args, (
			order_group('ord-1'),
			{'type': 'order_status_changed', 'event': event.as_dict()},
		))
		self.assertEqual(driver_call.args, (
			driver_group('drv-1'),
			{'type': 'order_assigned', 'order_id': 'ord-1', 'event': event.as_dict()},
		))

	def test_other_transitions_only_reach_order(self):
		self.notifier(DomainEvent('ord-1', OrderStatus.PENDING, OrderStatus.CONFIRMED, 'system', AT))
		self.layer.group_send.assert_awaited_once()

	def test_dispatch_attempt(self):
		attempt = DispatchAttempt('ord-1', 10.0, 0, DispatchOutcome.EXHAUSTED, 0.1, 2, (5.0, 10.0))
		self.notifier(attempt)
		self.layer.group_send.assert_awaited_once_with(
			'order_ord-1', {'type': 'dispatch_attempt', 'attempt': attempt.as_dict()}
		)

	def test_snapshot(self):
		snapshot = TrackingSnapshot('ord-1', 'drv-1', None, None, None, 0.0, 'driver_assigned', True)
		self.notifier(snapshot)
		self.layer.group_send.assert_awaited_once_with(
			'order_ord-1', {'type': 'tracking_snapshot', 'snapshot': snapshot.as_dict()}
		)

	def test_ignores_unknown_objects(self):
		self.notifier('noise')
		self.layer.group_send.assert_not_awaited()

	def test_send_failure_is_swallowed(self):
		self.layer.group_send.side_effect = RuntimeError('layer down')
		with self.assertLogs('realtime.notifications', level='ERROR'):
			self.notifier(assigned_event())

	@patch('realtime.notifications.get_channel_layer', return_value=None)
	def test_without_channel_layer(self, mock_get_layer):
		with self.assertLogs('realtime.notifications', level='WARNING'):
			ChannelLayerNotifier()(assigned_event())


class DriverLocationConsumerTests(SimpleTestCase):
	databases = {'default'}

	def setUp(self):
		reset_runtime()
		self.application = URLRouter(websocket_urlpatterns)

	async def connect(self, driver_id='drv-1'):
		communicator = WebsocketCommunicator(self.application, '/ws/driver/%s/' % driver_id)
		connected, _ = await communicator.connect()
		self.assertTrue(connected)
		greeting = await communicator.receive_json_from()
		self.assertEqual(greeting['type'], 'connection_established')
		self.assertEqual(greeting['driver_id'], driver_id)
		return communicator

	@patch('realtime.consumers.driver_consumer.record_driver_location', return_value=1)
	async def test_location_update_is_recorded(self, mock_record):
		communicator = await self.connect()

		await communicator.send_json_to({
			'type': 'driver_location_update',
			'latitude': 28.6139,
			'longitude': 77.2090,
			'heading': 270,
			'observed_at': 100.0,
		})
		response = await communicator.receive_json_from()

		self.assertEqual(response, {'type': 'location_recorded', 'sessions': 1})
		sample = mock_record.call_args[0][0]
		self.assertEqual(sample.entity_id, 'drv-1')
		self.assertEqual(sample.heading_degrees, 270.0)
		self.assertEqual(sample.observed_at, 100.0)
		await communicator.disconnect()

	@patch('realtime.consumers.driver_consumer.record_driver_location', return_value=0)
	async def test_missing_heading_follows_track(self, mock_record):
		communicator = await self.connect()

		for lng in (77.2090, 77.2190):
			await communicator.send_json_to({
				'type': 'driver_location_update',
				'latitude': 0.0,
				'longitude': lng,
			})
			await communicator.receive_json_from()

		first, second = [call[0][0] for call in mock_record.call_args_list]
		self.assertEqual(first.heading_degrees, 0.0)
		self.assertAlmostEqual(second.heading_degrees, 90.0, places=4)
		await communicator.disconnect()

	@patch('realtime.consumers.driver_consumer.record_driver_location')
	async def test_invalid_reports(self, mock_record):
		communicator = await self.connect()

		await communicator.send_json_to({'type': 'driver_location_update', 'latitude': 28.6})
		response = await communicator.receive_json_from()
		self.assertEqual(response['type'], 'error')

		await communicator.send_json_to({'type': 'driver_location_update', 'latitude': 95, 'longitude': 10})
		response = await communicator.receive_json_from()
		self.assertEqual(response['type'], 'error')

		await communicator.send_json_to({'type': 'teleport'})
		response = await communicator.receive_json_from()
		self.assertEqual(response, {'type': 'error', 'message': 'Unknown message type: teleport'})

		mock_record.assert_not_called()
		await communicator.disconnect()

	async def test_assignment_is_forwarded(self):
		communicator = await self.connect('drv-7')

		await get_channel_layer().group_send(driver_group('drv-7'), {
			'type': 'order_assigned',
			'order_id': 'ord-1',
			'event': {'to_status': 'driver_assigned'},
		})
		message = await communicator.receive_json_from()

		self.assertEqual(message['type'], 'order_assigned')
		self.assertEqual(message['order_id'], 'ord-1')
		await communicator.disconnect()


class OrderTrackingConsumerTests(SimpleTestCase):
	databases = {'default'}

	def setUp(self):
		reset_runtime()
		self.application = URLRouter(websocket_urlpatterns)

	async def connect(self, order_id='ord-1'):
		communicator = WebsocketCommunicator(self.application, '/ws/orders/%s/' % order_id)
		connected, _ = await communicator.connect()
		self.assertTrue(connected)
		greeting = await communicator.receive_json_from()
		self.assertEqual(greeting, {'type': 'connection_established', 'order_id': order_id})
		return communicator

	async def test_snapshot_request_without_session(self):
		communicator = await self.connect()

		await communicator.send_json_to({'type': 'snapshot_request'})
		response = await communicator.receive_json_from()

		self.assertEqual(response, {'type': 'error', 'message': 'No active tracking for this order'})
		await communicator.disconnect()

	@patch('services.runtime.get_tracking_manager')
	async def test_snapshot_request_with_session(self, mock_manager):
		mock_manager.return_value.get_session.return_value.snapshot.return_value.as_dict.return_value = {
			'order_id': 'ord-1',
			'is_stale': False,
		}
		communicator = await self.connect()

		await communicator.send_json_to({'type': 'snapshot_request'})
		response = await communicator.receive_json_from()

		self.assertEqual(response['type'], 'tracking_snapshot')
		self.assertEqual(response['snapshot']['order_id'], 'ord-1')
		mock_manager.return_value.get_session.assert_called_once_with('ord-1')
		await communicator.disconnect()

	async def test_group_messages_are_relayed(self):
		communicator = await self.connect()
		layer = get_channel_layer()

		await layer.group_send(order_group('ord-1'), {
			'type': 'order_status_changed',
			'event': {'to_status': 'picked_up'},
		})
		await layer.group_send(order_group('ord-1'), {
			'type': 'dispatch_attempt',
			'attempt': {'outcome': 'exhausted'},
		})
		await layer.group_send(order_group('ord-1'), {
			'type': 'tracking_snapshot',
			'snapshot': {'eta_minutes': 4.0},
		})

		self.assertEqual(await communicator.receive_json_from(), {
			'type': 'order_status_changed', 'event': {'to_status': 'picked_up'},
		})
		self.assertEqual(await communicator.receive_json_from(), {
			'type': 'dispatch_attempt', 'attempt': {'outcome': 'exhausted'},
		})
		self.assertEqual(await communicator.receive_json_from(), {
			'type': 'tracking_snapshot', 'snapshot': {'eta_minutes': 4.0},
		})
		await communicator.disconnect()

	async def test_missing_type(self):
		communicator = await self.connect()
		await communicator.send_json_to({'hello': 'world'})
		self.assertEqual(
			await communicator.receive_json_from(),
			{'type': 'error', 'message': 'Message type is required'}
		)
		await communicator.disconnect()
