from unittest.mock import patch

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.test import TestCase

from accounts.models import User

from .models import Notification
from .notifications import notify_user, push_to_user


class NotifyUserTests(TestCase):
	def setUp(self):
		self.user = User.objects.create_user(username='owner', password='owner1234', role='store_owner')

	def test_no_user_is_a_noop(self):
		self.assertFalse(notify_user(None, 'Hi', 'there'))

	def test_delivery_waits_for_commit(self):
		with self.captureOnCommitCallbacks(execute=False) as callbacks:
			scheduled = notify_user(self.user.id, 'Order ready', 'Order #ab12 is ready', data={'type': 'order_ready'})

		self.assertTrue(scheduled)
		self.assertEqual(len(callbacks), 1)
		self.assertFalse(Notification.objects.exists())

	def test_committed_notification_is_stored(self):
		with self.captureOnCommitCallbacks(execute=True):
			notify_user(self.user.id, 'Order ready', 'Order #ab12 is ready', 'success', {'type': 'order_ready'})

		notification = Notification.objects.get(user=self.user)
		self.assertEqual(notification.type, 'success')
		self.assertEqual(notification.data, {'type': 'order_ready'})

	@patch('realtime.notifications.get_channel_layer', return_value=None)
	def test_missing_channel_layer_still_stores(self, mock_layer):
		with self.captureOnCommitCallbacks(execute=True):
			notify_user(self.user.id, 'Order ready', 'Order #ab12 is ready')

		self.assertTrue(Notification.objects.filter(user=self.user).exists())


class PushToUserTests(TestCase):
	def test_event_reaches_user_group(self):
		layer = get_channel_layer()
		channel = async_to_sync(layer.new_channel)()
		async_to_sync(layer.group_add)('user_7', channel)

		self.assertTrue(push_to_user(7, {'title': 'Hello', 'data': {'type': 'ping'}}))

		message = async_to_sync(layer.receive)(channel)
		self.assertEqual(message['type'], 'notification')
		self.assertEqual(message['title'], 'Hello')
