"""
Realtime app: the notification fan-out boundary.

This app provides:
- Persisted in-app notifications (Notification model)
- Channels push to each user's personal group (user_<id>)
- A WebSocket consumer that delivers those pushes to signed-in clients
- JWT/Cookie authentication middleware for WebSocket connections

Usage:
    from realtime.notifications import notify_user
"""
