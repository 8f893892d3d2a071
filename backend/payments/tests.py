import hashlib
import hmac
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIRequestFactory, force_authenticate

from accounts.models import Company, User
from common.datastore import compare_and_set as real_compare_and_set
from orders.models import Coupon, Customer, Order, OrderItem
from realtime.models import Notification
from services.payments import (
	GatewayUnavailableError,
	InvalidSignatureError,
	PendingPaymentNotFoundError,
	ReconciliationFailedError,
	check_pending_payment,
	reconcile_payment,
	verify_webhook_signature,
)
from services.payments.gateway import (
	GatewayError,
	GatewayPayment,
	PaymentGatewayClient,
	build_external_reference,
	map_payment_status,
)
from services.payments.materializer import materialize_order

from .models import PendingPayment
from .views import check_payment, create_checkout, payment_webhook


WEBHOOK_SECRET = 'test-webhook-secret'


def make_draft(**overrides):
	draft = {
		'customer_name': 'Ana Souza',
		'customer_phone': '11999990000',
		'customer_email': 'ana@example.com',
		'order_type': 'delivery',
		'delivery_address': 'Rua das Flores, 10',
		'payment_method': 'pix',
		'items': [
			{
				'product_id': 'p-1',
				'product_name': 'Pizza Margherita',
				'quantity': 2,
				'unit_price': '30.00',
				'total_price': '60.00',
				'options': [{'name': 'Extra cheese'}],
				'notes': 'well done',
			},
			{
				'product_id': 'p-2',
				'product_name': 'Soda',
				'quantity': 1,
				'unit_price': '8.00',
				'total_price': '8.00',
			},
		],
		'subtotal': '68.00',
		'delivery_fee': '7.00',
		'discount_amount': '0.00',
		'total': '75.00',
		'coupon_id': None,
		'notes': 'ring twice',
	}
	draft.update(overrides)
	return draft


def sign(data_id, request_id='req-1', ts='1700000000', secret=WEBHOOK_SECRET):
	manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
	digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
	return f"ts={ts},v1={digest}"


class PaymentTestMixin:
	def setUp(self):
		self.factory = APIRequestFactory()
		self.owner = User.objects.create_user(
			username='owner',
			password='owner1234',
			role='store_owner',
		)
		self.company = Company.objects.create(name='Pizzaria Centro', owner=self.owner)

	def make_pending(self, draft=None, status=PendingPayment.STATUS_PENDING, expires_in=timedelta(minutes=30)):
		return PendingPayment.objects.create(
			company=self.company,
			draft_order=draft or make_draft(),
			status=status,
			expires_at=timezone.now() + expires_in,
		)

	def payment_for(self, pending, status='approved', payment_id='mp-1001'):
		return GatewayPayment(
			id=payment_id,
			status=status,
			external_reference={
				'type': 'order_payment',
				'pending_id': str(pending.id),
				'company_id': self.company.id,
			},
			amount=Decimal('75.00'),
		)


class ReconciliationTests(PaymentTestMixin, TestCase):
	def test_approved_payment_materializes_order_and_items(self):
		pending = self.make_pending()

		result = reconcile_payment(pending.id, self.payment_for(pending))

		self.assertEqual(result.status, 'completed')
		self.assertTrue(result.approved)

		pending.refresh_from_db()
		order = Order.objects.get()
		self.assertEqual(pending.status, PendingPayment.STATUS_COMPLETED)
		self.assertEqual(pending.order_id, order.id)
		self.assertEqual(pending.gateway_reference_id, 'mp-1001')
		self.assertIsNotNone(pending.completed_at)
		self.assertEqual(result.order_id, order.id)

		self.assertEqual(order.status, Order.STATUS_PENDING)
		self.assertEqual(order.payment_status, Order.PAYMENT_PAID)
		self.assertEqual(order.gateway_payment_id, 'mp-1001')
		self.assertEqual(order.total, Decimal('75.00'))
		self.assertEqual(order.customer.email, 'ana@example.com')

		items = list(order.items.order_by('product_id'))
		self.assertEqual([i.product_name for i in items], ['Pizza Margherita', 'Soda'])
		self.assertEqual(items[0].quantity, 2)
		self.assertEqual(items[0].total_price, Decimal('60.00'))
		self.assertEqual(items[0].options, [{'name': 'Extra cheese'}])

	def test_replayed_notification_returns_existing_order(self):
		pending = self.make_pending()
		payment = self.payment_for(pending)

		first = reconcile_payment(pending.id, payment)
		second = reconcile_payment(pending.id, payment)
		third = reconcile_payment(pending.id, payment)

		self.assertEqual(first.order_id, second.order_id)
		self.assertEqual(first.order_id, third.order_id)
		self.assertEqual(Order.objects.count(), 1)
		self.assertEqual(OrderItem.objects.count(), 2)
		self.assertEqual(Customer.objects.count(), 1)

	def test_caller_losing_the_claim_reports_winners_order(self):
		pending = self.make_pending()
		payment = self.payment_for(pending)
		competing = {}

		def racing_compare_and_set(model, pk, field, expected, **kwargs):
			# Another caller claims and finishes between our read and our write
			if model is PendingPayment and expected == PendingPayment.STATUS_PENDING and not competing:
				competing['started'] = True
				competing['result'] = reconcile_payment(pending.id, payment)
			return real_compare_and_set(model, pk, field, expected, **kwargs)

		with patch('services.payments.ledger.compare_and_set', side_effect=racing_compare_and_set):
			result = reconcile_payment(pending.id, payment)

		self.assertEqual(competing['result'].status, 'completed')
		self.assertEqual(result.status, 'completed')
		self.assertEqual(result.order_id, competing['result'].order_id)
		self.assertEqual(Order.objects.count(), 1)
		self.assertEqual(OrderItem.objects.count(), 2)

	def test_caller_arriving_mid_materialization_never_materializes(self):
		pending = self.make_pending()
		payment = self.payment_for(pending)
		competing = {}

		def materialize_with_competitor(claimed, gateway_payment_id=None):
			competing['result'] = reconcile_payment(pending.id, payment)
			return materialize_order(claimed, gateway_payment_id=gateway_payment_id)

		with patch('services.payments.ledger.materialize_order', side_effect=materialize_with_competitor):
			winner = reconcile_payment(pending.id, payment)

		self.assertEqual(competing['result'].status, 'processing')
		self.assertIsNone(competing['result'].order_id)
		self.assertEqual(winner.status, 'completed')

		retry = reconcile_payment(pending.id, payment)
		self.assertEqual(retry.order_id, winner.order_id)
		self.assertEqual(Order.objects.count(), 1)

	@override_settings(RECONCILIATION_RECHECK_DELAY_SECONDS=0.5)
	@patch('services.payments.ledger.time.sleep')
	def test_loser_waits_then_reports_processing(self, mock_sleep):
		pending = self.make_pending(status=PendingPayment.STATUS_PROCESSING)

		result = reconcile_payment(pending.id, self.payment_for(pending))

		mock_sleep.assert_called_once_with(0.5)
		self.assertEqual(result.status, 'processing')
		self.assertIsNone(result.order_id)
		self.assertEqual(Order.objects.count(), 0)

	@override_settings(RECONCILIATION_RECHECK_DELAY_SECONDS=0.5)
	def test_loser_sees_winner_finish_during_wait(self):
		pending = self.make_pending(status=PendingPayment.STATUS_PROCESSING)
		order = Order.objects.create(company=self.company, customer_name='Ana', subtotal=1, total=1)

		def winner_finishes(_delay):
			PendingPayment.objects.filter(pk=pending.pk).update(
				status=PendingPayment.STATUS_COMPLETED, order=order, completed_at=timezone.now()
			)

		with patch('services.payments.ledger.time.sleep', side_effect=winner_finishes):
			result = reconcile_payment(pending.id, self.payment_for(pending))

		self.assertEqual(result.status, 'completed')
		self.assertEqual(result.order_id, order.id)

	def test_failure_after_claim_reverts_to_pending_and_retry_succeeds(self):
		pending = self.make_pending()
		payment = self.payment_for(pending)

		def partial_then_fail(claimed, gateway_payment_id=None):
			Order.objects.create(company=self.company, customer_name='Partial', subtotal=1, total=1)
			raise DatabaseError('order_items insert failed')

		with patch('services.payments.ledger.materialize_order', side_effect=partial_then_fail):
			with self.assertRaises(ReconciliationFailedError):
				reconcile_payment(pending.id, payment)

		pending.refresh_from_db()
		self.assertEqual(pending.status, PendingPayment.STATUS_PENDING)
		self.assertIsNone(pending.order_id)
		self.assertEqual(Order.objects.count(), 0)

		result = reconcile_payment(pending.id, payment)
		self.assertEqual(result.status, 'completed')
		self.assertEqual(Order.objects.count(), 1)
		self.assertEqual(OrderItem.objects.count(), 2)

	def test_expired_pending_payment_is_not_materialized(self):
		pending = self.make_pending(expires_in=timedelta(minutes=-1))

		result = reconcile_payment(pending.id, self.payment_for(pending))

		self.assertEqual(result.status, 'expired')
		self.assertEqual(Order.objects.count(), 0)
		pending.refresh_from_db()
		self.assertEqual(pending.status, PendingPayment.STATUS_PENDING)

	def test_rejected_payment_records_reference_without_order(self):
		pending = self.make_pending()

		result = reconcile_payment(pending.id, self.payment_for(pending, status='rejected', payment_id='mp-7'))

		self.assertEqual(result.status, 'failed')
		self.assertFalse(result.approved)
		self.assertEqual(result.to_dict()['paymentStatus'], 'failed')
		pending.refresh_from_db()
		self.assertEqual(pending.status, PendingPayment.STATUS_PENDING)
		self.assertEqual(pending.gateway_reference_id, 'mp-7')
		self.assertEqual(Order.objects.count(), 0)

	def test_unknown_pending_payment(self):
		with self.assertRaises(PendingPaymentNotFoundError):
			reconcile_payment(uuid.uuid4(), GatewayPayment(id='1', status='approved', external_reference={}))

	def test_existing_customer_reused_and_coupon_counted(self):
		customer = Customer.objects.create(name='Ana', phone='11999990000')
		coupon = Coupon.objects.create(company=self.company, code='WELCOME', current_uses=3)
		pending = self.make_pending(draft=make_draft(customer_email=None, coupon_id=coupon.id))

		reconcile_payment(pending.id, self.payment_for(pending))

		order = Order.objects.get()
		coupon.refresh_from_db()
		self.assertEqual(order.customer, customer)
		self.assertEqual(order.coupon, coupon)
		self.assertEqual(coupon.current_uses, 4)
		self.assertEqual(Customer.objects.count(), 1)

	def test_store_owner_notified_after_commit(self):
		pending = self.make_pending()

		with self.captureOnCommitCallbacks(execute=True):
			result = reconcile_payment(pending.id, self.payment_for(pending))

		notification = Notification.objects.get(user=self.owner)
		self.assertEqual(notification.data['type'], 'new_order')
		self.assertEqual(notification.data['order_id'], str(result.order_id))


class CheckPendingPaymentTests(PaymentTestMixin, TestCase):
	def test_completed_payment_answered_from_ledger(self):
		pending = self.make_pending()
		reconcile_payment(pending.id, self.payment_for(pending))
		client = MagicMock()

		result = check_pending_payment(pending.id, client=client)

		self.assertEqual(result.status, 'completed')
		client.get_payment.assert_not_called()
		client.find_latest_payment.assert_not_called()

	def test_looks_up_payment_by_reference_when_id_unknown(self):
		pending = self.make_pending()
		client = MagicMock()
		client.find_latest_payment.return_value = self.payment_for(pending)

		result = check_pending_payment(pending.id, client=client)

		client.find_latest_payment.assert_called_once_with(build_external_reference(pending))
		self.assertEqual(result.status, 'completed')
		self.assertEqual(Order.objects.count(), 1)

	def test_no_payment_yet(self):
		pending = self.make_pending()
		client = MagicMock()
		client.find_latest_payment.return_value = None

		result = check_pending_payment(pending.id, client=client)

		self.assertEqual(result.status, 'pending')
		self.assertIsNone(result.order_id)

	def test_payment_for_another_draft_is_ignored(self):
		pending = self.make_pending()
		other = self.make_pending()
		client = MagicMock()
		client.get_payment.return_value = self.payment_for(other)

		result = check_pending_payment(pending.id, payment_id='mp-1001', client=client)

		self.assertEqual(result.status, 'pending')
		self.assertEqual(Order.objects.count(), 0)


@override_settings(PAYMENT_WEBHOOK_SECRET=WEBHOOK_SECRET)
class WebhookViewTests(PaymentTestMixin, TestCase):
	def setUp(self):
		super().setUp()
		patcher = patch('services.payments.ledger.PaymentGatewayClient')
		self.client_class = patcher.start()
		self.addCleanup(patcher.stop)
		self.gateway = self.client_class.return_value

	def post_webhook(self, body, signature=None, request_id='req-1'):
		headers = {}
		if signature is not None:
			headers['HTTP_X_SIGNATURE'] = signature
		if request_id is not None:
			headers['HTTP_X_REQUEST_ID'] = request_id
		request = self.factory.post('/api/payments/webhook/', body, format='json', **headers)
		return payment_webhook(request)

	def test_signed_approved_notification_creates_order(self):
		pending = self.make_pending()
		self.gateway.get_payment.return_value = self.payment_for(pending)
		body = {'type': 'payment', 'action': 'payment.updated', 'data': {'id': 'mp-1001'}}

		response = self.post_webhook(body, signature=sign('mp-1001'))

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['processed'])
		self.assertEqual(response.data['status'], 'completed')
		order = Order.objects.get()
		self.assertEqual(response.data['orderId'], str(order.id))
		self.gateway.get_payment.assert_called_once_with('mp-1001')

	def test_bad_signature_rejected_before_processing(self):
		pending = self.make_pending()
		self.gateway.get_payment.return_value = self.payment_for(pending)
		body = {'type': 'payment', 'data': {'id': 'mp-1001'}}

		response = self.post_webhook(body, signature=sign('mp-1001', secret='wrong-secret'))

		self.assertEqual(response.status_code, 401)
		self.assertEqual(response.data['error'], 'invalid_signature')
		self.gateway.get_payment.assert_not_called()
		self.assertEqual(Order.objects.count(), 0)

	def test_signature_bound_to_request_id(self):
		body = {'type': 'payment', 'data': {'id': 'mp-1001'}}

		response = self.post_webhook(body, signature=sign('mp-1001', request_id='req-1'), request_id='req-2')

		self.assertEqual(response.status_code, 401)

	def test_missing_signature_rejected(self):
		response = self.post_webhook({'type': 'payment', 'data': {'id': 'mp-1001'}})

		self.assertEqual(response.status_code, 401)

	@override_settings(PAYMENT_WEBHOOK_SECRET='')
	def test_unconfigured_secret_rejects_everything(self):
		response = self.post_webhook({'type': 'payment', 'data': {'id': 'mp-1001'}}, signature=sign('mp-1001'))

		self.assertEqual(response.status_code, 401)

	def test_non_payment_topic_acknowledged(self):
		response = self.post_webhook({'type': 'merchant_order', 'data': {'id': '55'}}, signature=sign('55'))

		self.assertEqual(response.status_code, 200)
		self.assertFalse(response.data['processed'])
		self.gateway.get_payment.assert_not_called()

	def test_payment_from_other_integration_acknowledged(self):
		self.gateway.get_payment.return_value = GatewayPayment(
			id='mp-9', status='approved', external_reference={'type': 'subscription'}
		)

		response = self.post_webhook({'type': 'payment', 'data': {'id': 'mp-9'}}, signature=sign('mp-9'))

		self.assertEqual(response.status_code, 200)
		self.assertFalse(response.data['processed'])
		self.assertEqual(Order.objects.count(), 0)

	def test_gateway_outage_returns_retryable_error(self):
		pending = self.make_pending()
		self.gateway.get_payment.side_effect = GatewayUnavailableError('Payment gateway unreachable')

		response = self.post_webhook({'type': 'payment', 'data': {'id': 'mp-1001'}}, signature=sign('mp-1001'))

		self.assertEqual(response.status_code, 503)
		pending.refresh_from_db()
		self.assertEqual(pending.status, PendingPayment.STATUS_PENDING)
		self.assertIsNone(pending.gateway_reference_id)

	def test_webhook_and_poll_agree_on_one_order(self):
		pending = self.make_pending()
		self.gateway.get_payment.return_value = self.payment_for(pending)

		webhook_response = self.post_webhook(
			{'type': 'payment', 'data': {'id': 'mp-1001'}}, signature=sign('mp-1001')
		)
		poll_request = self.factory.post(
			f'/api/payments/pending/{pending.id}/check/', {'paymentId': 'mp-1001'}, format='json'
		)
		poll_response = check_payment(poll_request, pending_id=pending.id)

		self.assertEqual(poll_response.status_code, 200)
		self.assertEqual(poll_response.data['orderId'], webhook_response.data['orderId'])
		self.assertTrue(poll_response.data['approved'])
		self.assertEqual(Order.objects.count(), 1)
		self.assertEqual(OrderItem.objects.count(), 2)


class CheckoutViewTests(PaymentTestMixin, TestCase):
	@patch.object(PaymentGatewayClient, 'create_preference')
	def test_checkout_stores_draft_and_returns_gateway_url(self, mock_preference):
		mock_preference.return_value = {'id': 'pref-1', 'init_point': 'https://gateway.test/checkout/pref-1'}
		body = make_draft(company_id=self.company.id)

		request = self.factory.post('/api/payments/checkout/', body, format='json')
		response = create_checkout(request)

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['preferenceId'], 'pref-1')
		self.assertEqual(response.data['checkoutUrl'], 'https://gateway.test/checkout/pref-1')

		pending = PendingPayment.objects.get(id=response.data['pendingId'])
		self.assertEqual(pending.status, PendingPayment.STATUS_PENDING)
		self.assertEqual(pending.gateway_preference_id, 'pref-1')
		self.assertEqual(pending.draft_order['total'], '75.00')
		self.assertEqual(len(pending.draft_order['items']), 2)
		self.assertGreater(pending.expires_at, timezone.now() + timedelta(minutes=29))

	def test_checkout_rejects_inconsistent_total(self):
		body = make_draft(company_id=self.company.id, total='10.00')

		request = self.factory.post('/api/payments/checkout/', body, format='json')
		response = create_checkout(request)

		self.assertEqual(response.status_code, 400)
		self.assertIn('total', response.data)
		self.assertEqual(PendingPayment.objects.count(), 0)

	@patch.object(PaymentGatewayClient, 'create_preference', side_effect=GatewayError('Payment gateway returned 400'))
	def test_gateway_failure_keeps_draft_to_expire(self, mock_preference):
		body = make_draft(company_id=self.company.id)

		request = self.factory.post('/api/payments/checkout/', body, format='json')
		force_authenticate(request, user=self.owner)
		response = create_checkout(request)

		self.assertEqual(response.status_code, 502)
		self.assertEqual(PendingPayment.objects.count(), 1)


class GatewayClientTests(TestCase):
	def setUp(self):
		self.gateway_client = PaymentGatewayClient(access_token='token', base_url='https://gateway.test')

	def response(self, status_code, body=None):
		response = MagicMock()
		response.status_code = status_code
		response.ok = status_code < 400
		response.json.return_value = body or {}
		response.text = ''
		return response

	@patch.object(requests.Session, 'request')
	def test_get_payment_parses_external_reference(self, mock_request):
		mock_request.return_value = self.response(200, {
			'id': 1001,
			'status': 'approved',
			'transaction_amount': 75.0,
			'external_reference': '{"type": "order_payment", "pending_id": "abc", "company_id": 3}',
		})

		payment = self.gateway_client.get_payment('1001')

		self.assertEqual(payment.id, '1001')
		self.assertTrue(payment.approved)
		self.assertEqual(payment.external_reference['pending_id'], 'abc')
		self.assertEqual(payment.amount, Decimal('75.0'))
		args, kwargs = mock_request.call_args
		self.assertEqual(args, ('GET', 'https://gateway.test/v1/payments/1001'))
		self.assertEqual(kwargs['headers']['Authorization'], 'Bearer token')

	@patch.object(requests.Session, 'request')
	def test_server_errors_are_retryable(self, mock_request):
		mock_request.return_value = self.response(502)
		with self.assertRaises(GatewayUnavailableError):
			self.gateway_client.get_payment('1')

		mock_request.side_effect = requests.ConnectionError('refused')
		with self.assertRaises(GatewayUnavailableError):
			self.gateway_client.get_payment('1')

	@patch.object(requests.Session, 'request')
	def test_client_errors_are_not_retryable(self, mock_request):
		mock_request.return_value = self.response(404)
		with self.assertRaises(GatewayError) as ctx:
			self.gateway_client.get_payment('1')
		self.assertNotIsInstance(ctx.exception, GatewayUnavailableError)

	def test_status_mapping(self):
		self.assertEqual(map_payment_status('approved'), 'paid')
		self.assertEqual(map_payment_status('cancelled'), 'failed')
		self.assertEqual(map_payment_status('charged_back'), 'refunded')
		self.assertEqual(map_payment_status('in_process'), 'pending')

	def test_signature_verification(self):
		verify_webhook_signature(sign('42'), 'req-1', '42', secret=WEBHOOK_SECRET)

		with self.assertRaises(InvalidSignatureError):
			verify_webhook_signature(sign('43'), 'req-1', '42', secret=WEBHOOK_SECRET)
		with self.assertRaises(InvalidSignatureError):
			verify_webhook_signature('garbage', 'req-1', '42', secret=WEBHOOK_SECRET)
