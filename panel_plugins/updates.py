"""
Проверка обновлений плагинов.

update_url плагина отдает JSON вида:
    {"1.2.0": {"version": "2.0.0", "download_url": "https://..."}, "*": {...}}
Ключ - версия панели, "*" - запись по умолчанию.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from packaging.version import InvalidVersion, Version

from .constants import CANARY_VERSION, UPDATE_CACHE_TTL, UPDATE_CHECK_CONNECT_TIMEOUT, UPDATE_CHECK_TIMEOUT
from .models import Plugin

logger = logging.getLogger(__name__)


class UpdateChecker:
    """Получение данных об обновлениях с кэшированием на TTL"""

    def __init__(
        self,
        panel_version: str,
        http_client: Optional[httpx.Client] = None,
        ttl: int = UPDATE_CACHE_TTL,
        timeout: float = UPDATE_CHECK_TIMEOUT,
        connect_timeout: float = UPDATE_CHECK_CONNECT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.panel_version = panel_version
        self.ttl = ttl
        self._http_client = http_client
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._clock = clock
        self._cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}
        self._lock = threading.Lock()

    def _fetch(self, url: str) -> Any:
        if self._http_client is not None:
            response = self._http_client.get(url, timeout=self._timeout)
            response.raise_for_status()
            return response.json()
        with httpx.Client(follow_redirects=True) as client:
            response = client.get(url, timeout=self._timeout)
            response.raise_for_status()
            return response.json()

    def get_update_data(self, plugin: Plugin) -> Optional[Dict[str, Any]]:
        """Запись об обновлении для текущей версии панели (или None)"""
        if not plugin.update_url:
            return None

        with self._lock:
            cached = self._cache.get(plugin.id)
            if cached and self._clock() - cached[0] < self.ttl:
                return cached[1]

        data = None
        try:
            payload = self._fetch(plugin.update_url)
            if isinstance(payload, dict):
                entry = payload.get(self.panel_version) or payload.get("*")
                data = entry if isinstance(entry, dict) else None
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Update check failed for plugin {plugin.id}: {e}")

        with self._lock:
            self._cache[plugin.id] = (self._clock(), data)
        return data

    def is_update_available(self, plugin: Plugin) -> bool:
        if self.panel_version == CANARY_VERSION:
            return False
        data = self.get_update_data(plugin)
        if not data or "version" not in data:
            return False
        try:
            return Version(str(data["version"])) > Version(plugin.version)
        except InvalidVersion:
            logger.warning(f"⚠️ Invalid version in update data of plugin {plugin.id}: {data['version']}")
            return False

    def get_download_url(self, plugin: Plugin) -> Optional[str]:
        data = self.get_update_data(plugin)
        url = data.get("download_url") if data else None
        return url if isinstance(url, str) and url else None

    def forget(self, plugin_id: str) -> None:
        with self._lock:
            self._cache.pop(plugin_id, None)


__all__ = ["UpdateChecker"]
