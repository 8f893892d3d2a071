from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import force_authenticate

from accounts.models import Company, User
from common.testing import DeliveryFixtureMixin
from drivers.models import Driver
from realtime.models import Notification
from services.matching import (
	InvalidStatusError,
	OfferConflictError,
	accept_offer,
	dispatch_offers,
)
from services.matching.offer_acceptance import _get_offer as real_get_offer

from .models import EscalationEvent, Order, OrderOffer
from .services import check_stale_offers
from .tasks import check_stale_offers_task
from .views import (
	accept_order_offer,
	cancel_store_order,
	decline_order_offer,
	dispatch_order,
	sweep_stale_offers,
	update_order_status,
)


class DispatchTests(DeliveryFixtureMixin, TestCase):
	def test_dispatch_offers_every_available_driver(self):
		Driver.objects.filter(pk=self.driver_two.pk).update(status=Driver.STATUS_IN_DELIVERY, is_available=False)
		self.make_driver('inactive_driver', is_active=False)
		other_company = Company.objects.create(name='Other store', owner=self.owner)
		self.make_driver('other_driver', company=other_company)
		order = self.make_order()

		request = self.factory.post('/api/orders/%s/dispatch/' % order.id, {}, format='json')
		force_authenticate(request, user=self.owner)
		response = dispatch_order(request, order_id=order.id)

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['dispatched'])
		order.refresh_from_db()
		self.assertEqual(order.status, Order.STATUS_AWAITING_DRIVER)
		self.assertIsNone(order.driver)
		self.assertEqual(
			list(order.offers.values_list('driver_id', 'status')),
			[(self.driver_one.id, OrderOffer.STATUS_PENDING)],
		)

	def test_redispatch_only_reaches_new_drivers(self):
		order = self.make_order()
		first = dispatch_offers(order)
		late_driver = self.make_driver('late_driver')

		order.refresh_from_db()
		second = dispatch_offers(order)

		self.assertEqual(len(first.offers), 2)
		self.assertEqual([o.driver_id for o in second.offers], [late_driver.id])
		self.assertEqual(order.offers.count(), 3)

	def test_no_candidates_leaves_order_and_tells_owner(self):
		Driver.objects.update(is_available=False)
		order = self.make_order()

		with self.captureOnCommitCallbacks(execute=True):
			result = dispatch_offers(order)

		self.assertFalse(result.dispatched)
		order.refresh_from_db()
		self.assertEqual(order.status, Order.STATUS_READY)
		self.assertFalse(OrderOffer.objects.exists())
		notification = Notification.objects.get(user=self.owner)
		self.assertEqual(notification.data['type'], 'no_drivers_available')

	def test_candidates_notified_after_commit(self):
		order = self.make_order()

		with self.captureOnCommitCallbacks(execute=True):
			dispatch_offers(order)

		for driver in (self.driver_one, self.driver_two):
			notification = Notification.objects.get(user=driver.user)
			self.assertEqual(notification.data['type'], 'order_offer')
			self.assertEqual(notification.data['order_id'], str(order.id))

	def test_cannot_dispatch_unconfirmed_order(self):
		order = self.make_order(status=Order.STATUS_PENDING)

		with self.assertRaises(InvalidStatusError):
			dispatch_offers(order)
		self.assertFalse(OrderOffer.objects.exists())

	def test_only_store_owner_can_dispatch(self):
		stranger = User.objects.create_user(username='stranger', password='x1234567', role='store_owner')
		order = self.make_order()

		request = self.factory.post('/api/orders/%s/dispatch/' % order.id, {}, format='json')
		force_authenticate(request, user=stranger)
		response = dispatch_order(request, order_id=order.id)

		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['error'], 'permission_denied')


class OfferAcceptanceTests(DeliveryFixtureMixin, TestCase):
	def setUp(self):
		super().setUp()
		self.order = self.make_order(status=Order.STATUS_AWAITING_DRIVER)
		self.offer_one = self.make_offer(self.order, self.driver_one)
		self.offer_two = self.make_offer(self.order, self.driver_two)

	def accept(self, driver, offer, body=None):
		request = self.factory.post('/api/orders/offers/%d/accept/' % offer.id, body or {}, format='json')
		force_authenticate(request, user=driver.user)
		return accept_order_offer(request, offer_id=offer.id)

	def assert_single_winner(self, winner):
		self.order.refresh_from_db()
		statuses = dict(self.order.offers.values_list('driver_id', 'status'))
		self.assertEqual(list(statuses.values()).count(OrderOffer.STATUS_ACCEPTED), 1)
		self.assertEqual(statuses[winner.id], OrderOffer.STATUS_ACCEPTED)
		for driver_id, offer_status in statuses.items():
			if driver_id != winner.id:
				self.assertEqual(offer_status, OrderOffer.STATUS_CANCELLED)
		self.assertEqual(self.order.driver_id, winner.id)
		self.assertEqual(self.order.status, Order.STATUS_OUT_FOR_DELIVERY)

	def test_accept_assigns_driver_and_cancels_siblings(self):
		response = self.accept(self.driver_one, self.offer_one, {'orderId': str(self.order.id)})

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['ok'])
		self.assert_single_winner(self.driver_one)

		self.offer_two.refresh_from_db()
		self.assertIsNotNone(self.offer_two.responded_at)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_IN_DELIVERY)
		self.assertFalse(self.driver_one.is_available)

	def test_late_acceptance_gets_order_already_taken(self):
		self.accept(self.driver_one, self.offer_one)

		response = self.accept(self.driver_two, self.offer_two)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'offer_conflict')
		self.assertTrue(response.data['conflict'])
		self.assertEqual(response.data['reason'], OfferConflictError.ORDER_ALREADY_TAKEN)
		self.assert_single_winner(self.driver_one)

	def test_acceptances_racing_at_the_conditional_write(self):
		raced = {}

		def stale_read(driver, offer_id):
			# driver_two reads the pending offer, then driver_one's whole acceptance lands
			offer = real_get_offer(driver, offer_id)
			if driver.pk == self.driver_two.pk and not raced:
				raced['winner'] = accept_offer(self.driver_one, self.offer_one.id)
			return offer

		with patch('services.matching.offer_acceptance._get_offer', side_effect=stale_read):
			with self.assertRaises(OfferConflictError) as ctx:
				accept_offer(self.driver_two, self.offer_two.id)

		self.assertEqual(ctx.exception.reason, OfferConflictError.ORDER_ALREADY_TAKEN)
		self.assertEqual(raced['winner'].order.driver_id, self.driver_one.id)
		self.assert_single_winner(self.driver_one)
		self.driver_two.refresh_from_db()
		self.assertEqual(self.driver_two.status, Driver.STATUS_AVAILABLE)

	def test_database_rejects_second_accepted_offer(self):
		# Winner has flipped its offer but not yet claimed the order
		OrderOffer.objects.filter(pk=self.offer_one.pk).update(status=OrderOffer.STATUS_ACCEPTED)

		with self.assertRaises(OfferConflictError) as ctx:
			accept_offer(self.driver_two, self.offer_two.id)

		self.assertEqual(ctx.exception.reason, OfferConflictError.ALREADY_ACCEPTED)
		self.offer_two.refresh_from_db()
		self.assertEqual(self.offer_two.status, OrderOffer.STATUS_CANCELLED)
		self.order.refresh_from_db()
		self.assertIsNone(self.order.driver)
		self.assertEqual(self.order.status, Order.STATUS_AWAITING_DRIVER)

	def test_repeated_acceptance_is_a_conflict(self):
		self.accept(self.driver_one, self.offer_one)

		response = self.accept(self.driver_one, self.offer_one)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['reason'], OfferConflictError.NO_LONGER_AVAILABLE)
		self.assertNotIn('another driver', response.data['message'])
		self.assert_single_winner(self.driver_one)

	def test_driver_mid_delivery_cannot_accept(self):
		Driver.objects.filter(pk=self.driver_one.pk).update(status=Driver.STATUS_IN_DELIVERY, is_available=False)
		self.make_order(status=Order.STATUS_OUT_FOR_DELIVERY, driver=self.driver_one)

		response = self.accept(self.driver_one, self.offer_one)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['reason'], OfferConflictError.NO_LONGER_AVAILABLE)
		self.order.refresh_from_db()
		self.assertIsNone(self.order.driver)
		self.assertEqual(self.order.status, Order.STATUS_AWAITING_DRIVER)
		self.offer_one.refresh_from_db()
		self.assertEqual(self.offer_one.status, OrderOffer.STATUS_PENDING)
		self.assertEqual(
			Order.objects.filter(driver=self.driver_one, status=Order.STATUS_OUT_FOR_DELIVERY).count(),
			1,
		)

		# the order is still open for the free driver
		response = self.accept(self.driver_two, self.offer_two)
		self.assertEqual(response.status_code, 200)

	def test_pre_assigned_driver_accepts_own_offer(self):
		Order.objects.filter(pk=self.order.pk).update(driver=self.driver_one)
		Driver.objects.filter(pk=self.driver_one.pk).update(status=Driver.STATUS_PENDING_ACCEPTANCE, is_available=False)

		response = self.accept(self.driver_one, self.offer_one)

		self.assertEqual(response.status_code, 200)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_IN_DELIVERY)

	def test_winner_drops_other_offers(self):
		other_order = self.make_order(status=Order.STATUS_AWAITING_DRIVER)
		other_offer = self.make_offer(other_order, self.driver_one)
		rival_offer = self.make_offer(other_order, self.driver_two)

		response = self.accept(self.driver_one, self.offer_one)

		self.assertEqual(response.status_code, 200)
		other_offer.refresh_from_db()
		self.assertEqual(other_offer.status, OrderOffer.STATUS_CANCELLED)
		rival_offer.refresh_from_db()
		self.assertEqual(rival_offer.status, OrderOffer.STATUS_PENDING)

	def test_order_taken_through_direct_assignment(self):
		Order.objects.filter(pk=self.order.pk).update(driver=self.driver_one)

		response = self.accept(self.driver_two, self.offer_two)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['reason'], OfferConflictError.ORDER_ALREADY_TAKEN)
		self.offer_two.refresh_from_db()
		self.assertEqual(self.offer_two.status, OrderOffer.STATUS_CANCELLED)

	def test_claim_failure_rolls_back_offer(self):
		Order.objects.filter(pk=self.order.pk).update(status=Order.STATUS_CANCELLED)

		response = self.accept(self.driver_one, self.offer_one)

		self.assertEqual(response.status_code, 409)
		self.offer_one.refresh_from_db()
		self.assertEqual(self.offer_one.status, OrderOffer.STATUS_CANCELLED)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_AVAILABLE)

	@patch('services.matching.offer_acceptance.cancel_sibling_offers', side_effect=RuntimeError('db hiccup'))
	def test_sibling_cancellation_failure_keeps_assignment(self, mock_cancel):
		response = self.accept(self.driver_one, self.offer_one)

		self.assertEqual(response.status_code, 200)
		mock_cancel.assert_called_once()
		self.order.refresh_from_db()
		self.assertEqual(self.order.driver_id, self.driver_one.id)

	def test_unknown_or_foreign_offer_is_not_found(self):
		response = self.accept(self.driver_two, self.offer_one)
		self.assertEqual(response.status_code, 404)
		self.assertEqual(response.data['error'], 'offer_not_found')

		other_order = self.make_order()
		response = self.accept(self.driver_one, self.offer_one, {'orderId': str(other_order.id)})
		self.assertEqual(response.status_code, 404)

	def test_caller_without_driver_record_rejected(self):
		request = self.factory.post('/api/orders/offers/%d/accept/' % self.offer_one.id, {}, format='json')
		force_authenticate(request, user=self.owner)
		response = accept_order_offer(request, offer_id=self.offer_one.id)

		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['error'], 'driver_not_found')

	def test_notifications_sent_after_commit(self):
		with self.captureOnCommitCallbacks(execute=True):
			accept_offer(self.driver_one, self.offer_one.id)

		self.assertEqual(Notification.objects.get(user=self.owner).data['type'], 'driver_accepted')
		self.assertEqual(Notification.objects.get(user=self.driver_two.user).data['type'], 'offer_cancelled')


class OfferDeclineTests(DeliveryFixtureMixin, TestCase):
	def setUp(self):
		super().setUp()
		self.order = self.make_order(status=Order.STATUS_AWAITING_DRIVER)
		self.offer_one = self.make_offer(self.order, self.driver_one)
		self.offer_two = self.make_offer(self.order, self.driver_two)

	def decline(self, driver, offer):
		request = self.factory.post('/api/orders/offers/%d/decline/' % offer.id)
		force_authenticate(request, user=driver.user)
		return decline_order_offer(request, offer_id=offer.id)

	def test_decline_cancels_offer(self):
		with self.captureOnCommitCallbacks(execute=True):
			response = self.decline(self.driver_one, self.offer_one)

		self.assertEqual(response.status_code, 200)
		self.offer_one.refresh_from_db()
		self.assertEqual(self.offer_one.status, OrderOffer.STATUS_CANCELLED)
		self.assertFalse(Notification.objects.filter(user=self.owner).exists())

	def test_last_decline_tells_owner(self):
		with self.captureOnCommitCallbacks(execute=True):
			self.decline(self.driver_one, self.offer_one)
			self.decline(self.driver_two, self.offer_two)

		self.order.refresh_from_db()
		self.assertEqual(self.order.status, Order.STATUS_AWAITING_DRIVER)
		notification = Notification.objects.get(user=self.owner)
		self.assertEqual(notification.data['type'], 'all_offers_declined')

	def test_cannot_decline_twice(self):
		self.decline(self.driver_one, self.offer_one)

		response = self.decline(self.driver_one, self.offer_one)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['reason'], OfferConflictError.NO_LONGER_AVAILABLE)


class OrderStatusTests(DeliveryFixtureMixin, TestCase):
	def post_status(self, order, new_status, user=None):
		request = self.factory.post('/api/orders/%s/status/' % order.id, {'status': new_status}, format='json')
		force_authenticate(request, user=user or self.owner)
		return update_order_status(request, order_id=order.id)

	def post_cancel(self, order, reason='customer called'):
		request = self.factory.post('/api/orders/%s/cancel/' % order.id, {'reason': reason}, format='json')
		force_authenticate(request, user=self.owner)
		return cancel_store_order(request, order_id=order.id)

	def test_forward_progression(self):
		order = self.make_order(status=Order.STATUS_PENDING)

		response = self.post_status(order, Order.STATUS_CONFIRMED)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['previousStatus'], Order.STATUS_PENDING)
		order.refresh_from_db()
		self.assertEqual(order.status, Order.STATUS_CONFIRMED)

	def test_backward_move_rejected(self):
		order = self.make_order(status=Order.STATUS_PREPARING)

		response = self.post_status(order, Order.STATUS_CONFIRMED)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'invalid_status')

	def test_ready_delivery_order_is_offered_to_drivers(self):
		order = self.make_order(status=Order.STATUS_PREPARING)

		response = self.post_status(order, Order.STATUS_READY)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['dispatch']['offers'], 2)
		order.refresh_from_db()
		self.assertEqual(order.status, Order.STATUS_AWAITING_DRIVER)

	@override_settings(AUTO_DISPATCH_ON_READY=False)
	def test_ready_without_auto_dispatch(self):
		order = self.make_order(status=Order.STATUS_PREPARING)

		response = self.post_status(order, Order.STATUS_READY)

		self.assertNotIn('dispatch', response.data)
		order.refresh_from_db()
		self.assertEqual(order.status, Order.STATUS_READY)

	def test_pickup_order_is_not_dispatched(self):
		order = self.make_order(status=Order.STATUS_PREPARING, order_type=Order.TYPE_PICKUP)

		self.post_status(order, Order.STATUS_READY)

		order.refresh_from_db()
		self.assertEqual(order.status, Order.STATUS_READY)
		self.assertFalse(order.offers.exists())

	def test_cancel_awaiting_order_cancels_offers(self):
		order = self.make_order(status=Order.STATUS_AWAITING_DRIVER)
		offer = self.make_offer(order, self.driver_one)

		response = self.post_cancel(order)

		self.assertEqual(response.status_code, 200)
		order.refresh_from_db()
		offer.refresh_from_db()
		self.assertEqual(order.status, Order.STATUS_CANCELLED)
		self.assertEqual(offer.status, OrderOffer.STATUS_CANCELLED)

	def test_cancel_current_delivery_moves_driver_queue(self):
		Driver.objects.filter(pk=self.driver_one.pk).update(status=Driver.STATUS_IN_DELIVERY, is_available=False)
		current = self.make_order(status=Order.STATUS_OUT_FOR_DELIVERY, driver=self.driver_one)
		queued = self.make_order(status=Order.STATUS_QUEUED, driver=self.driver_one, queue_position=1)

		self.post_cancel(current)

		current.refresh_from_db()
		queued.refresh_from_db()
		self.driver_one.refresh_from_db()
		self.assertIsNone(current.driver)
		self.assertEqual(queued.status, Order.STATUS_AWAITING_DRIVER)
		self.assertIsNone(queued.queue_position)
		self.assertEqual(self.driver_one.status, Driver.STATUS_PENDING_ACCEPTANCE)

	def test_cancel_queued_order_closes_gap(self):
		Driver.objects.filter(pk=self.driver_one.pk).update(status=Driver.STATUS_IN_DELIVERY, is_available=False)
		self.make_order(status=Order.STATUS_OUT_FOR_DELIVERY, driver=self.driver_one)
		first = self.make_order(status=Order.STATUS_QUEUED, driver=self.driver_one, queue_position=1)
		second = self.make_order(status=Order.STATUS_QUEUED, driver=self.driver_one, queue_position=2)
		third = self.make_order(status=Order.STATUS_QUEUED, driver=self.driver_one, queue_position=3)

		self.post_cancel(second)

		first.refresh_from_db()
		third.refresh_from_db()
		self.assertEqual(first.queue_position, 1)
		self.assertEqual(third.queue_position, 2)
		self.driver_one.refresh_from_db()
		self.assertEqual(self.driver_one.status, Driver.STATUS_IN_DELIVERY)

	def test_delivered_order_cannot_be_cancelled(self):
		order = self.make_order(status=Order.STATUS_DELIVERED, driver=self.driver_one)

		response = self.post_cancel(order)

		self.assertEqual(response.status_code, 409)


class StaleOfferMonitorTests(DeliveryFixtureMixin, TestCase):
	def make_stale(self, minutes=45, **fields):
		order = self.make_order(status=Order.STATUS_AWAITING_DRIVER, **fields)
		Order.objects.filter(pk=order.pk).update(updated_at=timezone.now() - timedelta(minutes=minutes))
		order.refresh_from_db()
		return order

	def test_sweep_twice_escalates_once(self):
		order = self.make_stale()

		with self.captureOnCommitCallbacks(execute=True):
			first = check_stale_offers()
			second = check_stale_offers()

		self.assertEqual(first.escalated, 1)
		self.assertEqual(second.escalated, 0)
		self.assertEqual(second.skipped, 1)
		self.assertEqual(EscalationEvent.objects.filter(order=order).count(), 1)
		self.assertEqual(Notification.objects.filter(user=self.owner).count(), 1)

	def test_pre_assigned_driver_also_alerted(self):
		order = self.make_stale(driver=self.driver_one)

		with self.captureOnCommitCallbacks(execute=True):
			check_stale_offers()

		notification = Notification.objects.get(user=self.driver_one.user)
		self.assertEqual(notification.data['order_id'], str(order.id))
		self.assertGreaterEqual(notification.data['minutes_waiting'], 45)

	def test_sweep_never_changes_order_state(self):
		order = self.make_stale(driver=self.driver_one)
		before = (order.status, order.driver_id, order.updated_at)

		check_stale_offers()

		order.refresh_from_db()
		self.assertEqual((order.status, order.driver_id, order.updated_at), before)

	def test_recent_and_other_orders_ignored(self):
		self.make_stale(minutes=5)
		self.make_order(status=Order.STATUS_OUT_FOR_DELIVERY, driver=self.driver_one)

		result = check_stale_offers()

		self.assertEqual(result.checked, 0)
		self.assertFalse(EscalationEvent.objects.exists())

	def test_escalates_again_after_window(self):
		order = self.make_stale()
		check_stale_offers()

		result = check_stale_offers(now=timezone.now() + timedelta(minutes=61))

		self.assertEqual(result.escalated, 1)
		self.assertEqual(EscalationEvent.objects.filter(order=order).count(), 2)

	def test_management_command_reports_count(self):
		self.make_stale()
		out = StringIO()

		call_command('check_stale_offers', stdout=out)

		self.assertIn('escalated 1', out.getvalue())

	def test_periodic_task_returns_escalation_count(self):
		self.make_stale()
		self.make_stale(minutes=90)

		self.assertEqual(check_stale_offers_task(), 2)

	def test_sweep_endpoint_is_staff_only(self):
		self.make_stale()
		request = self.factory.post('/api/orders/stale-offers/sweep/')
		force_authenticate(request, user=self.owner)
		self.assertEqual(sweep_stale_offers(request).status_code, 403)

		staff = User.objects.create_user(username='ops', password='ops12345', is_staff=True)
		request = self.factory.post('/api/orders/stale-offers/sweep/')
		force_authenticate(request, user=staff)
		response = sweep_stale_offers(request)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['escalated'], 1)
