"""Redis helpers.

Redis is optional.  When ``REDIS_URL`` is unset or the server cannot be
reached, every helper degrades to a no-op and callers fall back to the
database, which is always the source of truth.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import redis

import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client if configured."""
    global _redis_client
    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(config.REDIS_URL, decode_responses=True)
            client.ping()
            _redis_client = client
        except redis.RedisError as e:
            logger.error(f"Redis connection failed: {e}")
            return None

    return _redis_client


def reset_redis_client() -> None:
    global _redis_client
    _redis_client = None


def board_key(unit_id: str) -> str:
    return f"queue:{unit_id}:board"


def events_channel(unit_id: str) -> str:
    return f"queue:{unit_id}:events"


def cache_board_data(unit_id: str, board_data: Dict[str, Any], ttl: Optional[int] = None) -> None:
    """Cache board data in Redis with a short TTL."""
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.setex(board_key(unit_id), ttl or config.BOARD_CACHE_TTL, json.dumps(board_data))
        except redis.RedisError as e:
            logger.error(f"Redis cache error: {e}")


def get_cached_board(unit_id: str) -> Optional[Dict[str, Any]]:
    """Get cached board data from Redis."""
    redis_client = get_redis()
    if redis_client:
        try:
            cached = redis_client.get(board_key(unit_id))
            if cached:
                return json.loads(cached)
        except redis.RedisError as e:
            logger.error(f"Redis get error: {e}")
    return None


def invalidate_board(unit_id: str) -> None:
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.delete(board_key(unit_id))
        except redis.RedisError as e:
            logger.error(f"Redis delete error: {e}")


def publish_event(unit_id: str, message: Dict[str, Any]) -> None:
    """Publish an event to the unit's Redis channel for other processes."""
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.publish(events_channel(unit_id), json.dumps(message))
        except redis.RedisError as e:
            logger.error(f"Redis publish error: {e}")


class RedisEventFeed:
    """Subscription to one unit's Redis event channel.

    Every worker mirrors its events to the channel, so a feed sees tickets
    issued and called on any worker.
    """

    def __init__(self, redis_client: redis.Redis, unit_id: str):
        self.unit_id = unit_id
        self._pubsub = redis_client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(events_channel(unit_id))

    def get_message(self, timeout: float = 0.0) -> Optional[Dict[str, Any]]:
        try:
            message = self._pubsub.get_message(timeout=timeout)
        except redis.RedisError as e:
            logger.error(f"Redis pubsub error: {e}")
            return None
        if message and message["type"] == "message":
            return json.loads(message["data"])
        return None

    def close(self) -> None:
        self._pubsub.close()


def open_event_feed(unit_id: str) -> Optional[RedisEventFeed]:
    """Redis feed for the unit, or None when Redis is not available."""
    redis_client = get_redis()
    if redis_client:
        try:
            return RedisEventFeed(redis_client, unit_id)
        except redis.RedisError as e:
            logger.error(f"Redis subscribe error: {e}")
    return None
