from django.db import connection, transaction
from django.test import TestCase
from django.test.utils import CaptureQueriesContext
from rest_framework.test import force_authenticate

from accounts.models import Company, User
from common.testing import DeliveryFixtureMixin
from drivers.models import Driver
from orders.models import Order, OrderOffer
from orders.views import assign_order_driver
from realtime.models import Notification
from services.exceptions import PermissionDeniedError
from services.matching import (
	InvalidStatusError,
	OfferConflictError,
	accept_assigned_order,
	assign_driver,
	cancel_order,
	complete_delivery,
	process_driver_queue,
	renumber_queue,
)

from .services import lock_drivers
from .views import (
	AcceptAssignedOrderView,
	CompleteDeliveryView,
	DriverOffersView,
	DriverProfileView,
	DriverQueueAdvanceView,
	DriverQueueView,
)


class BusyDriverMixin(DeliveryFixtureMixin):
	"""driver_one is out on a delivery."""

	def setUp(self):
		super().setUp()
		Driver.objects.filter(pk=self.driver_one.pk).update(status=Driver.STATUS_IN_DELIVERY, is_available=False)
		self.driver_one.refresh_from_db()
		self.current = self.make_order(status=Order.STATUS_OUT_FOR_DELIVERY, driver=self.driver_one)

	def finish_current(self):
		Order.objects.filter(pk=self.current.pk).update(status=Order.STATUS_DELIVERED)

	def queue_positions(self, driver):
		return list(
			Order.objects
			.filter(driver=driver, status=Order.STATUS_QUEUED)
			.order_by('queue_position')
			.values_list('queue_position', flat=True)
		)


class AssignDriverTests(BusyDriverMixin, TestCase):
	def test_free_driver_must_accept(self):
		order = self.make_order()
		stale_offer = self.make_offer(order, self.driver_one)

		with self.captureOnCommitCallbacks(execute=True):
			result = assign_driver(self.owner, order, self.driver_two.id)

		self.assertFalse(result.queued)
		self.assertEqual(result.order.status, Order.STATUS_AWAITING_DRIVER)
		self.assertEqual(result.order.driver_id, self.driver_two.id)
		self.driver_two.refresh_from_db()
		self.assertEqual(self.driver_two.status, Driver.STATUS_PENDING_ACCEPTANCE)
		self.assertFalse(self.driver_two.is_available)
		stale_offer.refresh_from_db()
		self.assertEqual(stale_offer.status, OrderOffer.STATUS_CANCELLED)
		self.assertEqual(Notification.objects.get(user=self.driver_two.user).data['type'], 'order_assigned')

	def test_busy_driver_gets_order_at_end_of_queue(self):
		first = assign_driver(self.owner, self.make_order(), self.driver_one.id)
		second = assign_driver(self.owner, self.make_order(), self.driver_one.id)

		self.assertTrue(first.queued)
		self.assertEqual(first.order.status, Order.STATUS_QUEUED)
		self.assertEqual((first.order.queue_position, second.order.queue_position), (1, 2))
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_IN_DELIVERY)

	def test_view_reports_queue_position(self):
		order = self.make_order()
		request = self.factory.post('/api/orders/%s/assign/' % order.id, {'driverId': self.driver_one.id}, format='json')
		force_authenticate(request, user=self.owner)

		response = assign_order_driver(request, order_id=order.id)

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['queued'])
		self.assertEqual(response.data['queuePosition'], 1)

	def test_driver_of_another_store_not_found(self):
		other_owner = User.objects.create_user(username='other_owner', password='x1234567', role='store_owner')
		other_company = Company.objects.create(name='Burger Place', owner=other_owner)
		outsider = self.make_driver('outsider', company=other_company)
		order = self.make_order()
		request = self.factory.post('/api/orders/%s/assign/' % order.id, {'driverId': outsider.id}, format='json')
		force_authenticate(request, user=self.owner)

		response = assign_order_driver(request, order_id=order.id)

		self.assertEqual(response.status_code, 404)
		order.refresh_from_db()
		self.assertIsNone(order.driver)

	def test_only_store_owner_assigns(self):
		with self.assertRaises(PermissionDeniedError):
			assign_driver(self.driver_two.user, self.make_order(), self.driver_two.id)

	def test_same_driver_twice_rejected(self):
		order = assign_driver(self.owner, self.make_order(), self.driver_two.id).order

		with self.assertRaises(InvalidStatusError):
			assign_driver(self.owner, order, self.driver_two.id)

	def test_reassignment_frees_previous_driver(self):
		order = assign_driver(self.owner, self.make_order(), self.driver_two.id).order

		assign_driver(self.owner, order, self.driver_one.id)

		self.driver_two.refresh_from_db()
		self.assertEqual(self.driver_two.status, Driver.STATUS_AVAILABLE)
		self.assertTrue(self.driver_two.is_available)

	def test_reassignment_locks_drivers_in_id_order(self):
		order = assign_driver(self.owner, self.make_order(), self.driver_two.id).order

		with CaptureQueriesContext(connection) as ctx:
			assign_driver(self.owner, order, self.driver_one.id)

		lock_query = next(
			q['sql'] for q in ctx.captured_queries
			if 'FROM "delivery_drivers"' in q['sql'] and ' IN (' in q['sql']
		)
		self.assertIn('ORDER BY "delivery_drivers"."id" ASC', lock_query)
		self.assertIn(str(self.driver_one.id), lock_query)
		self.assertIn(str(self.driver_two.id), lock_query)

	def test_lock_drivers_skips_missing_and_sorts(self):
		with transaction.atomic():
			locked = lock_drivers(self.driver_two.id, None, self.driver_one.id)

		self.assertEqual(list(locked), sorted([self.driver_one.id, self.driver_two.id]))

	def test_moving_queued_order_renumbers_old_queue(self):
		first = assign_driver(self.owner, self.make_order(), self.driver_one.id).order
		second = assign_driver(self.owner, self.make_order(), self.driver_one.id).order

		assign_driver(self.owner, first, self.driver_two.id)

		second.refresh_from_db()
		self.assertEqual(second.queue_position, 1)
		self.assertEqual(self.queue_positions(self.driver_one), [1])

	def test_delivered_order_cannot_be_assigned(self):
		order = self.make_order(status=Order.STATUS_DELIVERED)

		with self.assertRaises(InvalidStatusError):
			assign_driver(self.owner, order, self.driver_two.id)


class DriverQueueTests(BusyDriverMixin, TestCase):
	def test_completion_promotes_head_of_queue(self):
		head = assign_driver(self.owner, self.make_order(), self.driver_one.id).order
		tail = assign_driver(self.owner, self.make_order(), self.driver_one.id).order

		with self.captureOnCommitCallbacks(execute=True):
			result = complete_delivery(self.driver_one, self.current.id)

		self.assertEqual(result.order.status, Order.STATUS_DELIVERED)
		self.assertEqual(result.queue.next_order.id, head.id)
		self.assertEqual(result.queue.remaining, 1)
		head.refresh_from_db()
		tail.refresh_from_db()
		self.assertEqual(head.status, Order.STATUS_AWAITING_DRIVER)
		self.assertIsNone(head.queue_position)
		self.assertEqual(tail.queue_position, 1)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_PENDING_ACCEPTANCE)

		promoted = Notification.objects.get(user=self.driver_one.user, data__type='queue_order_promoted')
		self.assertEqual(promoted.data['remaining_in_queue'], 1)

	def test_empty_queue_frees_driver(self):
		result = complete_delivery(self.driver_one, self.current.id)

		self.assertIsNone(result.queue.next_order)
		self.assertEqual(result.queue.to_dict()['remainingInQueueCount'], 0)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_AVAILABLE)
		self.assertTrue(self.driver_one.is_available)

	def test_promotion_closes_existing_gaps(self):
		self.finish_current()
		for position in (2, 5, 9):
			self.make_order(status=Order.STATUS_QUEUED, driver=self.driver_one, queue_position=position)

		result = process_driver_queue(self.driver_one.id)

		self.assertEqual(result.remaining, 2)
		self.assertEqual(self.queue_positions(self.driver_one), [1, 2])

	def test_queue_waits_for_current_delivery(self):
		queued = assign_driver(self.owner, self.make_order(), self.driver_one.id).order

		with self.assertRaises(InvalidStatusError):
			process_driver_queue(self.driver_one.id)

		queued.refresh_from_db()
		self.assertEqual(queued.status, Order.STATUS_QUEUED)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_IN_DELIVERY)
		# completing releases it; only one order is ever out with the driver
		complete_delivery(self.driver_one, self.current.id)
		accept_assigned_order(self.driver_one, queued.id)
		self.assertEqual(
			Order.objects.filter(driver=self.driver_one, status=Order.STATUS_OUT_FOR_DELIVERY).count(),
			1,
		)

	def test_empty_queue_does_not_free_driver_mid_delivery(self):
		with self.assertRaises(InvalidStatusError):
			process_driver_queue(self.driver_one.id)

		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_IN_DELIVERY)
		self.assertFalse(self.driver_one.is_available)

	def test_renumber_reports_queue_length(self):
		for position in (3, 4):
			self.make_order(status=Order.STATUS_QUEUED, driver=self.driver_one, queue_position=position)

		self.assertEqual(renumber_queue(self.driver_one.id), 2)
		self.assertEqual(self.queue_positions(self.driver_one), [1, 2])

	def test_positions_stay_contiguous_through_the_shift(self):
		queued = [assign_driver(self.owner, self.make_order(), self.driver_one.id).order for _ in range(4)]
		self.assertEqual(self.queue_positions(self.driver_one), [1, 2, 3, 4])

		queued[1].refresh_from_db()
		cancel_order(self.owner, queued[1], 'out of stock')
		self.assertEqual(self.queue_positions(self.driver_one), [1, 2, 3])

		complete_delivery(self.driver_one, self.current.id)
		self.assertEqual(self.queue_positions(self.driver_one), [1, 2])

		accept_assigned_order(self.driver_one, queued[0].id)
		assign_driver(self.owner, self.make_order(), self.driver_one.id)
		self.assertEqual(self.queue_positions(self.driver_one), [1, 2, 3])

		complete_delivery(self.driver_one, queued[0].id)
		self.assertEqual(self.queue_positions(self.driver_one), [1, 2])
		queued[2].refresh_from_db()
		self.assertEqual(queued[2].status, Order.STATUS_AWAITING_DRIVER)

	def test_only_current_driver_completes(self):
		with self.assertRaises(InvalidStatusError):
			complete_delivery(self.driver_one, self.make_order(status=Order.STATUS_QUEUED, driver=self.driver_one, queue_position=1).id)


class AcceptAssignedOrderTests(DeliveryFixtureMixin, TestCase):
	def setUp(self):
		super().setUp()
		self.order = assign_driver(self.owner, self.make_order(), self.driver_one.id).order

	def post_accept(self, driver):
		request = self.factory.post('/api/driver/orders/%s/accept/' % self.order.id)
		force_authenticate(request, user=driver.user)
		return AcceptAssignedOrderView.as_view()(request, order_id=self.order.id)

	def test_assigned_driver_accepts(self):
		response = self.post_accept(self.driver_one)

		self.assertEqual(response.status_code, 200)
		self.order.refresh_from_db()
		self.assertEqual(self.order.status, Order.STATUS_OUT_FOR_DELIVERY)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_IN_DELIVERY)

	def test_other_driver_cannot_take_it(self):
		response = self.post_accept(self.driver_two)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['reason'], OfferConflictError.ORDER_ALREADY_TAKEN)

	def test_second_accept_is_a_conflict(self):
		self.post_accept(self.driver_one)

		with self.assertRaises(OfferConflictError) as ctx:
			accept_assigned_order(self.driver_one, self.order.id)
		self.assertEqual(ctx.exception.reason, OfferConflictError.NO_LONGER_AVAILABLE)


class DriverViewTests(BusyDriverMixin, TestCase):
	def get(self, view, user, path='/api/driver/'):
		request = self.factory.get(path)
		force_authenticate(request, user=user)
		return view.as_view()(request)

	def advance(self, user, data=None):
		request = self.factory.post('/api/driver/queue/advance/', data or {}, format='json')
		force_authenticate(request, user=user)
		return DriverQueueAdvanceView.as_view()(request)

	def test_profile_requires_driver_record(self):
		response = self.get(DriverProfileView, self.owner)

		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['error'], 'driver_not_found')

	def test_inactive_driver_rejected(self):
		Driver.objects.filter(pk=self.driver_two.pk).update(is_active=False)

		response = self.get(DriverProfileView, self.driver_two.user)

		self.assertEqual(response.status_code, 403)

	def test_offers_lists_only_pending(self):
		pending = self.make_offer(self.make_order(status=Order.STATUS_AWAITING_DRIVER), self.driver_two)
		self.make_offer(self.make_order(status=Order.STATUS_AWAITING_DRIVER), self.driver_two, status=OrderOffer.STATUS_CANCELLED)

		response = self.get(DriverOffersView, self.driver_two.user)

		self.assertEqual([o['id'] for o in response.data], [pending.id])

	def test_queue_lists_next_first(self):
		first = assign_driver(self.owner, self.make_order(customer_name='Bruno'), self.driver_one.id).order
		assign_driver(self.owner, self.make_order(customer_name='Carla'), self.driver_one.id)

		response = self.get(DriverQueueView, self.driver_one.user)

		self.assertEqual(response.status_code, 200)
		self.assertEqual([o['queue_position'] for o in response.data['queue']], [1, 2])
		self.assertEqual(response.data['queue'][0]['id'], str(first.id))

	def test_complete_returns_queue_summary(self):
		queued = assign_driver(self.owner, self.make_order(), self.driver_one.id).order
		request = self.factory.post('/api/driver/orders/%s/complete/' % self.current.id)
		force_authenticate(request, user=self.driver_one.user)

		response = CompleteDeliveryView.as_view()(request, order_id=self.current.id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['queue']['nextOrder']['id'], str(queued.id))
		self.assertEqual(response.data['queue']['remainingInQueueCount'], 0)

	def test_queue_cannot_skip_delivery_in_progress(self):
		queued = assign_driver(self.owner, self.make_order(), self.driver_one.id).order

		response = self.advance(self.owner, {'driverId': self.driver_one.id})

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'invalid_status')
		queued.refresh_from_db()
		self.assertEqual(queued.status, Order.STATUS_QUEUED)
		self.assertEqual(queued.queue_position, 1)

	def test_driver_mid_delivery_stays_busy_on_advance(self):
		response = self.advance(self.driver_one.user)

		self.assertEqual(response.status_code, 409)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_IN_DELIVERY)
		self.assertFalse(self.driver_one.is_available)

	def test_owner_advances_queue_after_delivery(self):
		queued = assign_driver(self.owner, self.make_order(), self.driver_one.id).order
		self.finish_current()

		response = self.advance(self.owner, {'driverId': self.driver_one.id})

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['driverId'], self.driver_one.id)
		self.assertEqual(response.data['nextOrder']['id'], str(queued.id))

	def test_driver_advances_own_empty_queue(self):
		response = self.advance(self.driver_two.user)

		self.assertEqual(response.status_code, 200)
		self.assertIsNone(response.data['nextOrder'])

	def test_stranger_cannot_advance_queue(self):
		stranger = User.objects.create_user(username='stranger', password='x1234567', role='store_owner')

		response = self.advance(stranger, {'driverId': self.driver_one.id})

		self.assertEqual(response.status_code, 403)
		self.assertEqual(self.queue_positions(self.driver_one), [])

	def test_unknown_driver_not_found(self):
		response = self.advance(self.owner, {'driverId': 999999})

		self.assertEqual(response.status_code, 404)
