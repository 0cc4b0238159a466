import json
import logging
from typing import Any, Optional

import redis

from quizgen.core.config import Settings, settings

logger = logging.getLogger(__name__)


class RedisCache:
    """Best-effort JSON cache over Redis.

    Every backend error is logged and turned into a miss or a no-op, so an
    unavailable Redis only costs performance.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        self.redis = client

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "RedisCache":
        if not cfg.REDIS_URL:
            logger.info("Redis not configured - caching disabled")
            return cls(None)
        client = redis.Redis.from_url(
            cfg.REDIS_URL,
            decode_responses=True,
            socket_timeout=cfg.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=cfg.REDIS_SOCKET_TIMEOUT,
        )
        return cls(client)

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    def get(self, key: str, default: Any = None) -> Any:
        if not self.enabled:
            return default
        try:
            value = self.redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache get error for {key}: {e}")
            return default
        if value is None:
            logger.debug(f"Cache MISS: {key}")
            return default
        try:
            data = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Discarding undecodable cache entry {key}")
            return default
        logger.debug(f"Cache HIT: {key}")
        return data

    def set(self, key: str, value: Any, expire: int) -> bool:
        if not self.enabled:
            return False
        try:
            self.redis.set(key, json.dumps(value), ex=expire)
            logger.debug(f"Cache SET: {key} (TTL: {expire}s)")
            return True
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.warning(f"Cache set error for {key}: {e}")
            return False

    def delete(self, *keys: str) -> int:
        if not self.enabled or not keys:
            return 0
        try:
            return self.redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Cache delete error: {e}")
            return 0

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern (SCAN, never KEYS)."""
        if not self.enabled:
            return 0
        try:
            keys = list(self.redis.scan_iter(match=pattern, count=500))
            if not keys:
                return 0
            removed = self.redis.delete(*keys)
            logger.debug(f"Cache DEL pattern: {pattern} ({len(keys)} keys)")
            return removed
        except redis.RedisError as e:
            logger.warning(f"Cache delete pattern error for {pattern}: {e}")
            return 0

    def ping(self) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False


class CacheCoordinator:
    """Key naming, TTL policy and invalidation-on-write for quiz data."""

    def __init__(self, cache: RedisCache, cfg: Settings = settings):
        self.cache = cache
        self.ttl_quiz = cfg.CACHE_TTL_QUIZ
        self.ttl_history = cfg.CACHE_TTL_HISTORY
        self.ttl_leaderboard = cfg.CACHE_TTL_LEADERBOARD
        self.ttl_performance = cfg.CACHE_TTL_PERFORMANCE

    # Keys
    @staticmethod
    def quiz_key(quiz_id: int) -> str:
        return f"quiz:{quiz_id}"

    @staticmethod
    def performance_key(user_id: int, subject: str, grade_level: str) -> str:
        return f"perf:{user_id}:{subject}:{grade_level}"

    @staticmethod
    def history_key(user_id: int, filter_token: str) -> str:
        return f"history:{user_id}:{filter_token}"

    @staticmethod
    def leaderboard_key(subject: str, grade_level: str, period: str, limit: int) -> str:
        return f"leaderboard:{subject}:{grade_level}:{period}:{limit}"

    # Quiz detail
    def get_quiz(self, quiz_id: int) -> Optional[dict]:
        return self.cache.get(self.quiz_key(quiz_id))

    def put_quiz(self, quiz_id: int, data: dict) -> bool:
        return self.cache.set(self.quiz_key(quiz_id), data, self.ttl_quiz)

    # Performance
    def get_performance(self, user_id: int, subject: str, grade_level: str) -> Optional[dict]:
        return self.cache.get(self.performance_key(user_id, subject, grade_level))

    def put_performance(self, user_id: int, subject: str, grade_level: str, data: dict) -> bool:
        return self.cache.set(self.performance_key(user_id, subject, grade_level), data, self.ttl_performance)

    # History
    def get_history(self, user_id: int, filter_token: str) -> Optional[dict]:
        return self.cache.get(self.history_key(user_id, filter_token))

    def put_history(self, user_id: int, filter_token: str, data: dict) -> bool:
        return self.cache.set(self.history_key(user_id, filter_token), data, self.ttl_history)

    # Leaderboard
    def get_leaderboard(self, subject: str, grade_level: str, period: str, limit: int) -> Optional[dict]:
        return self.cache.get(self.leaderboard_key(subject, grade_level, period, limit))

    def put_leaderboard(self, subject: str, grade_level: str, period: str, limit: int, data: dict) -> bool:
        return self.cache.set(self.leaderboard_key(subject, grade_level, period, limit), data, self.ttl_leaderboard)

    def invalidate_history(self, user_id: int) -> None:
        self.cache.delete_pattern(f"history:{user_id}:*")

    def invalidate_user(self, user_id: int) -> None:
        """Drop everything a new submission by this user can make stale.

        Leaderboards are dropped globally since any submission can shift any ranking.
        """
        self.invalidate_history(user_id)
        self.cache.delete_pattern(f"perf:{user_id}:*")
        self.cache.delete_pattern("leaderboard:*")


cache = RedisCache.from_settings()
