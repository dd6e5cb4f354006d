"""Persistent storage for the signed-in session.

Supports deployment-neutral configuration:
- In-memory (default, lost on restart)
- Standalone Redis
- Redis Sentinel (HA)

If Redis is configured but unreachable, storage degrades to in-memory.
"""

import json
import logging
from typing import Any, Dict, Optional
from redis import Redis, Sentinel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class SessionStorage:
    """Key/value store holding one serialized session"""

    def __init__(self, settings=None, client: Optional[Redis] = None):
        """
        Initialize session storage.

        Args:
            settings: Portal settings (selects backend and Redis location)
            client: Pre-built Redis client (skips settings-based setup)
        """
        self.key = settings.session_storage_key if settings else "healping:auth:session"
        self.client: Optional[Redis] = client
        self._memory: Optional[str] = None

        if client is None and settings and settings.session_storage_backend == "redis":
            self._initialize_client(settings)

    def _initialize_client(self, settings) -> None:
        """Initialize Redis client based on configuration."""
        mode = settings.redis_mode

        try:
            if mode == "sentinel":
                self._init_sentinel(settings)
            else:
                self._init_standalone(settings)

            if self.client:
                self.client.ping()
                logger.info(f"Session storage using Redis ({mode} mode)")
        except RedisError as e:
            logger.warning(
                f"Redis connection failed ({mode} mode): {e}. "
                "Session will only be kept in memory."
            )
            self.client = None

    def _init_standalone(self, settings) -> None:
        self.client = Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            db=settings.redis_db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

    def _init_sentinel(self, settings) -> None:
        sentinel = Sentinel(
            settings.redis_sentinel_hosts_list,
            socket_timeout=5,
            password=settings.redis_password,
        )
        self.client = sentinel.master_for(
            settings.redis_master_set,
            db=settings.redis_db,
            decode_responses=True,
            socket_timeout=5,
        )

    def load(self) -> Optional[Dict[str, Any]]:
        """Return the persisted session payload, if any."""
        raw = self._memory
        if self.client:
            try:
                raw = self.client.get(self.key)
            except RedisError as e:
                logger.warning(f"Redis GET error for key {self.key}: {e}")

        if not raw:
            return None

        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt persisted session")
            self.clear()
            return None

    def save(self, payload: Dict[str, Any], ttl: Optional[int] = None) -> None:
        raw = json.dumps(payload)
        self._memory = raw

        if self.client:
            try:
                self.client.set(self.key, raw, ex=ttl)
            except RedisError as e:
                logger.warning(f"Redis SET error for key {self.key}: {e}")

    def clear(self) -> None:
        self._memory = None

        if self.client:
            try:
                self.client.delete(self.key)
            except RedisError as e:
                logger.warning(f"Redis DELETE error for key {self.key}: {e}")

    def is_available(self) -> bool:
        """True when backed by Redis rather than process memory."""
        return self.client is not None

    def ping(self) -> bool:
        if not self.client:
            return False
        try:
            return bool(self.client.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False
