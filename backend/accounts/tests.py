from django.test import TestCase
from rest_framework.test import APIRequestFactory, force_authenticate

from accounts.models import Company, User
from drivers.models import Driver

from .views import LoginView, MeView, RefreshTokenView


class AuthViewTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.owner = User.objects.create_user(username='owner', password='owner1234', role='store_owner')
		self.company = Company.objects.create(name='Pizzaria Centro', owner=self.owner)

	def login(self, username, password):
		request = self.factory.post('/api/auth/login/', {'username': username, 'password': password}, format='json')
		return LoginView.as_view()(request)

	def test_login_returns_tokens_and_stores(self):
		response = self.login('owner', 'owner1234')

		self.assertEqual(response.status_code, 200)
		self.assertIn('access', response.data['tokens'])
		self.assertEqual(response.data['user']['company_ids'], [self.company.id])
		self.assertIsNone(response.data['user']['driver_id'])

	def test_wrong_password_rejected(self):
		response = self.login('owner', 'nope')

		self.assertEqual(response.status_code, 400)

	def test_refresh_issues_access_token(self):
		refresh = self.login('owner', 'owner1234').data['tokens']['refresh']

		request = self.factory.post('/api/auth/refresh/', {'refresh': refresh}, format='json')
		response = RefreshTokenView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.assertIn('access', response.data)

	def test_bad_refresh_token(self):
		request = self.factory.post('/api/auth/refresh/', {'refresh': 'garbage'}, format='json')
		response = RefreshTokenView.as_view()(request)

		self.assertEqual(response.status_code, 401)

	def test_me_shows_driver_record(self):
		user = User.objects.create_user(username='rider', password='driver1234', role='driver')
		driver = Driver.objects.create(company=self.company, user=user, name='Rider')

		request = self.factory.get('/api/auth/me/')
		force_authenticate(request, user=user)
		response = MeView.as_view()(request)

		self.assertEqual(response.data['driver_id'], driver.id)
		self.assertEqual(response.data['company_ids'], [])
