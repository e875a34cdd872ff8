"""Chooses the storage backend named by the configuration and builds it once."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path

from .boltdb import BoltStore
from .config import BOLTDB, REDIS, Config
from .redis_store import RedisStore
from .store import Store

log = logging.getLogger(__name__)


class SingletonFactory:
    """Builds a store on first request and returns that same store afterwards."""

    def __init__(self, creator: Callable[[], Store]) -> None:
        self._creator = creator
        self._store: Store | None = None
        self._lock = threading.Lock()

    def get_storage(self) -> Store:
        """Return the store, creating it on the first call."""
        with self._lock:
            if self._store is None:
                self._store = self._creator()
            return self._store


class StoreRegistry:
    """Maps driver names to store factories and hands out the configured store."""

    def __init__(
        self,
        conf: Config | None = None,
        factories: Mapping[str, SingletonFactory] | None = None,
        bolt_path: str | Path = "./dtm.bolt",
    ) -> None:
        self.conf = conf if conf is not None else Config()
        if factories is None:
            factories = {
                BOLTDB: SingletonFactory(
                    lambda: BoltStore(self.conf.store.data_expire, self.conf.retry_interval, bolt_path)
                ),
                REDIS: SingletonFactory(lambda: RedisStore(self.conf)),
            }
        self._factories = dict(factories)

    def get_store(self) -> Store:
        """Return the store for the configured driver."""
        driver = self.conf.store.driver
        factory = self._factories.get(driver)
        if factory is None:
            raise ValueError(f"unsupported store driver: {driver}")
        return factory.get_storage()

    def wait_store_up(self, interval: float = 3.0) -> None:
        """Block until the store answers a ping."""
        while True:
            try:
                self.get_store().ping()
            except Exception as exc:  # any failure means the store is not up yet
                log.info("wait store up: %s", exc)
                time.sleep(interval)
            else:
                return