# jobdispatch/broker.py
"""Connectivity to the durable queue backend."""
import logging
from typing import Any, Dict, Optional

import redis
from redis.backoff import ExponentialBackoff
from redis.retry import Retry

from jobdispatch.common.exceptions import BrokerUnavailableError
from jobdispatch.config import Settings, get_settings
from jobdispatch.storage.base import JobStorage
from jobdispatch.storage.memory_storage import MemoryStorage
from jobdispatch.storage.redis_storage import RedisStorage
from jobdispatch.storage.sql_storage import SqlStorage

logger = logging.getLogger(__name__)

# 200ms steps capped at 3s, give up after 10 tries.
REDIS_RETRY_ATTEMPTS = 10


class BrokerConnectionManager:
    """
    Owns the backend handle for one process.

    ``connect()`` builds the configured backend and probes it once. When the
    probe fails the manager stays unavailable; callers check
    ``is_available()`` and degrade to a disabled state instead of raising.
    """

    def __init__(
        self, settings: Optional[Settings] = None, storage: Optional[JobStorage] = None
    ):
        self.settings = settings or get_settings()
        self._storage = storage
        self._available = False
        self._connected = False

    def connection_options(self) -> Dict[str, Any]:
        if self.settings.backend == "redis":
            if self.settings.redis_url:
                return {"url": self.settings.redis_url}
            return {
                "host": self.settings.redis_host,
                "port": self.settings.redis_port,
                "db": self.settings.redis_db,
                "password": self.settings.redis_password,
                "socket_connect_timeout": self.settings.redis_connect_timeout,
            }
        if self.settings.backend == "sql":
            return {"url": self.settings.sql_url}
        return {}

    def _build_storage(self) -> JobStorage:
        backend = self.settings.backend
        timeout = self.settings.visibility_timeout
        if backend == "memory":
            return MemoryStorage(visibility_timeout=timeout)
        if backend == "sql":
            return SqlStorage(
                connection_url=self.settings.sql_url, visibility_timeout=timeout
            )

        options = self.connection_options()
        retry = Retry(ExponentialBackoff(cap=3, base=0.2), REDIS_RETRY_ATTEMPTS)
        if "url" in options:
            client = redis.Redis.from_url(
                options["url"], decode_responses=True, retry=retry
            )
        else:
            client = redis.Redis(**options, decode_responses=True, retry=retry)
        return RedisStorage(redis_client=client, visibility_timeout=timeout)

    def connect(self) -> bool:
        """Probe the backend once. Never raises."""
        if self._connected:
            return self._available
        self._connected = True
        try:
            if self._storage is None:
                self._storage = self._build_storage()
            self._available = self._storage.ping()
        except Exception as e:
            logger.warning(f"Broker initialisation failed: {e}")
            self._available = False

        if self._available:
            logger.info(f"Connected to {self.settings.backend} broker")
        else:
            logger.warning(
                f"{self.settings.backend} broker not available; job queues are disabled"
            )
        return self._available

    def refresh(self) -> bool:
        """Re-probe an already built backend."""
        if self._storage is None:
            return self.connect()
        self._available = self._storage.ping()
        return self._available

    def is_available(self) -> bool:
        return self._available

    @property
    def storage(self) -> JobStorage:
        if not self._available or self._storage is None:
            raise BrokerUnavailableError(
                f"{self.settings.backend} broker is not available"
            )
        return self._storage

    def close(self) -> None:
        if self._storage is not None:
            self._storage.close()
        self._storage = None
        self._available = False
        self._connected = False
