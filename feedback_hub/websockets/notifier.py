"""
Notification fanout used by workers.

Workers in the API process deliver straight to the ConnectionManager.
Workers in other processes publish on Redis pub/sub; the API process runs a
NotificationRelay that forwards those messages to its local connections.

Channel pattern: {prefix}:{user_id}
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as redis_async
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from feedback_hub.api.metrics import notifications_published_total
from feedback_hub.websockets.manager import ConnectionManager

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Publishes real-time notifications to a user identity."""

    @abstractmethod
    async def publish(self, user_id: str, message: str) -> int:
        """
        Deliver a notification.

        Returns:
            Connections reached in this process (cross-process notifiers
            report subscribers reached instead). Zero is not an error.
        """

    async def close(self) -> None:
        """Release resources."""


class LocalNotifier(Notifier):
    """Delivers to the ConnectionManager in this process."""

    def __init__(self, manager: ConnectionManager):
        self._manager = manager

    async def publish(self, user_id: str, message: str) -> int:
        delivered = await self._manager.publish(user_id, message)
        notifications_published_total.labels(delivered="yes" if delivered else "no").inc()
        return delivered


def channel_for(prefix: str, user_id: str) -> str:
    return f"{prefix}:{user_id}"


class RedisNotifier(Notifier):
    """Publishes notifications on Redis pub/sub for a relay to forward."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 6379,
        password: Optional[str] = None,
        db: int = 0,
        prefix: str = "feedbackhub:notify",
        client: Optional[redis_async.Redis] = None,
    ):
        self._host = host
        self._port = port
        self._password = password or None
        self._db = db
        self._prefix = prefix
        self._redis = client

    async def _get_redis(self) -> redis_async.Redis:
        if self._redis is None:
            self._redis = redis_async.Redis(
                host=self._host,
                port=self._port,
                password=self._password,
                db=self._db,
                decode_responses=True,
                socket_connect_timeout=5.0,
            )
        return self._redis

    async def publish(self, user_id: str, message: str) -> int:
        client = await self._get_redis()
        body = json.dumps(
            {
                "user_id": str(user_id),
                "message": message,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        try:
            receivers = await client.publish(channel_for(self._prefix, user_id), body)
        except (RedisConnectionError, RedisTimeoutError) as e:
            # An unreachable broker drops the notification
            logger.warning(f"Notification for user {user_id} dropped, publish failed: {e}")
            notifications_published_total.labels(delivered="no").inc()
            return 0

        notifications_published_total.labels(delivered="yes" if receivers else "no").inc()
        return int(receivers)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class NotificationRelay:
    """
    Forwards Redis pub/sub notifications to the local ConnectionManager.

    Runs in the process that holds the WebSocket connections.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        host: str = "127.0.0.1",
        port: int = 6379,
        password: Optional[str] = None,
        db: int = 0,
        prefix: str = "feedbackhub:notify",
        client: Optional[redis_async.Redis] = None,
        reconnect_delay: float = 2.0,
    ):
        self._manager = manager
        self._host = host
        self._port = port
        self._password = password or None
        self._db = db
        self._prefix = prefix
        self._redis = client
        self._reconnect_delay = reconnect_delay
        self._task: Optional[asyncio.Task] = None

    async def _get_redis(self) -> redis_async.Redis:
        if self._redis is None:
            self._redis = redis_async.Redis(
                host=self._host,
                port=self._port,
                password=self._password,
                db=self._db,
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_keepalive=True,
            )
        return self._redis

    async def handle_message(self, data: str) -> int:
        """Forward one relayed notification. Malformed messages are dropped."""
        try:
            body = json.loads(data)
            user_id = str(body["user_id"])
            message = body["message"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping malformed relayed notification: {e}")
            return 0

        timestamp = None
        if body.get("timestamp"):
            try:
                timestamp = datetime.fromisoformat(body["timestamp"])
            except ValueError:
                timestamp = None
        return await self._manager.publish(user_id, message, timestamp)

    async def _listen(self) -> None:
        pattern = f"{self._prefix}:*"
        while True:
            pubsub = None
            try:
                client = await self._get_redis()
                pubsub = client.pubsub()
                await pubsub.psubscribe(pattern)
                logger.info(f"NotificationRelay subscribed to {pattern}")

                async for item in pubsub.listen():
                    if item.get("type") != "pmessage":
                        continue
                    await self.handle_message(item["data"])
            except asyncio.CancelledError:
                raise
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                logger.warning(
                    f"NotificationRelay lost connection: {e}; retrying in {self._reconnect_delay}s"
                )
                await asyncio.sleep(self._reconnect_delay)
            finally:
                if pubsub is not None:
                    await pubsub.aclose()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
