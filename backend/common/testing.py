"""Fixture helpers shared by the app test suites."""

from decimal import Decimal

from rest_framework.test import APIRequestFactory

from accounts.models import Company, User
from drivers.models import Driver
from orders.models import Order, OrderOffer


class DeliveryFixtureMixin:
	"""A store with an owner and two signed-in drivers."""

	def setUp(self):
		self.factory = APIRequestFactory()
		self.owner = User.objects.create_user(
			username='owner',
			password='owner1234',
			role='store_owner',
		)
		self.company = Company.objects.create(name='Pizzaria Centro', owner=self.owner)
		self.driver_one = self.make_driver('driver_one')
		self.driver_two = self.make_driver('driver_two')

	def make_driver(self, username, company=None, **fields):
		user = User.objects.create_user(username=username, password='driver1234', role='driver')
		return Driver.objects.create(
			company=company or self.company,
			user=user,
			name=username.replace('_', ' ').title(),
			**fields
		)

	def make_order(self, status=Order.STATUS_READY, driver=None, queue_position=None, **fields):
		return Order.objects.create(
			company=self.company,
			customer_name=fields.pop('customer_name', 'Ana Souza'),
			delivery_address=fields.pop('delivery_address', 'Rua das Flores, 10'),
			subtotal=Decimal('68.00'),
			delivery_fee=Decimal('7.00'),
			total=Decimal('75.00'),
			status=status,
			driver=driver,
			queue_position=queue_position,
			**fields
		)

	def make_offer(self, order, driver, status=OrderOffer.STATUS_PENDING):
		return OrderOffer.objects.create(company=self.company, order=order, driver=driver, status=status)
