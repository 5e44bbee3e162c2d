"""
WebSocket support for real-time student notifications.
"""

from feedback_hub.websockets.manager import ConnectionManager
from feedback_hub.websockets.notifier import LocalNotifier, NotificationRelay, Notifier, RedisNotifier

__all__ = ["ConnectionManager", "LocalNotifier", "NotificationRelay", "Notifier", "RedisNotifier"]
