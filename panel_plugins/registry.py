"""
Plugin Registry - реестр установленных плагинов.

plugin.json каждого плагина является источником истины для полей
status / status_message / load_order; таблица plugins - индекс над этими
файлами, который обновляется после каждой записи.
"""
import logging
import os
import shutil
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from .constants import PLUGIN_METADATA_FILE
from .db import session_scope
from .errors import InvalidBundleError, PluginNotFoundError
from .metadata_reader import PluginMetadataReader
from .models import Plugin, PluginStatus

logger = logging.getLogger(__name__)


class PluginRegistry:
    """
    Реестр плагинов.

    Отвечает за:
    - Обнаружение плагинов в директории плагинов
    - Хранение записей (одна на директорию, id == имя директории)
    - Атомарную запись статуса в plugin.json и БД
    - Блокировки на уровне отдельного плагина
    """

    def __init__(self, plugins_dir: Path, session_factory: sessionmaker):
        self.plugins_dir = Path(plugins_dir)
        self.session_factory = session_factory
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self.plugins_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"PluginRegistry initialized with plugins dir: {self.plugins_dir}")

    def plugin_path(self, plugin_id: str, *parts: str) -> Path:
        return self.plugins_dir.joinpath(plugin_id, *parts)

    @contextmanager
    def lock(self, plugin_id: str) -> Iterator[None]:
        """Эксклюзивный доступ к плагину (реентерабельный в пределах потока)"""
        with self._locks_guard:
            plugin_lock = self._locks.setdefault(plugin_id, threading.RLock())
        with plugin_lock:
            yield

    # ============= Discovery =============

    def sync(self) -> List[str]:
        """
        Просканировать директорию плагинов и обновить реестр.

        Плагины с поврежденным plugin.json пропускаются, остальные регистрируются.

        Returns:
            Список зарегистрированных id
        """
        registered = []
        for item in sorted(self.plugins_dir.iterdir()):
            if not item.is_dir() or item.name.startswith(".") or item.name == "__pycache__":
                continue
            if not (item / PLUGIN_METADATA_FILE).exists():
                logger.debug(f"⏭️ Skipping directory without {PLUGIN_METADATA_FILE}: {item}")
                continue
            try:
                self.register(item.name)
                registered.append(item.name)
            except InvalidBundleError as e:
                logger.error(f"❌ Could not register plugin from {item}: {e}")

        logger.info(f"🔍 Registry synced: {len(registered)} plugin(s)")
        return registered

    def register(self, plugin_id: str) -> Plugin:
        """
        Создать или обновить запись по plugin.json из директории плагина.

        Raises:
            InvalidBundleError: если метаданные некорректны или id не совпадает с именем директории
        """
        with self.lock(plugin_id):
            metadata = PluginMetadataReader.read_metadata(self.plugin_path(plugin_id, PLUGIN_METADATA_FILE))
            if metadata.id != plugin_id:
                raise InvalidBundleError(
                    f"Plugin id '{metadata.id}' does not match its directory name '{plugin_id}'"
                )

            with session_scope(self.session_factory) as db:
                plugin = db.get(Plugin, plugin_id)
                if plugin is None:
                    plugin = Plugin(id=plugin_id)
                    db.add(plugin)
                plugin.apply_metadata(metadata)

            logger.debug(f"💾 Registered plugin {plugin_id} v{metadata.version}")
            return plugin

    # ============= Queries =============

    def get(self, plugin_id: str) -> Optional[Plugin]:
        with session_scope(self.session_factory) as db:
            return db.get(Plugin, plugin_id)

    def get_or_fail(self, plugin_id: str) -> Plugin:
        plugin = self.get(plugin_id)
        if plugin is None:
            raise PluginNotFoundError(f"Plugin '{plugin_id}' is not registered")
        return plugin

    def all(self) -> List[Plugin]:
        """Все плагины в порядке загрузки (load_order, затем id)"""
        with session_scope(self.session_factory) as db:
            result = db.execute(select(Plugin).order_by(Plugin.load_order, Plugin.id))
            return list(result.scalars().all())

    # ============= Writes =============

    def set_meta(self, plugin_id: str, data: Dict[str, Any]) -> Optional[Plugin]:
        """
        Записать поля meta в plugin.json и обновить запись в БД.

        Если директории плагина нет, запись не изменяется.

        Returns:
            Обновленная запись или None
        """
        with self.lock(plugin_id):
            plugin_json = self.plugin_path(plugin_id, PLUGIN_METADATA_FILE)
            if not plugin_json.exists():
                logger.warning(f"⚠️ Cannot update metadata of plugin {plugin_id}: {plugin_json} not found")
                return None

            meta = PluginMetadataReader.merge_meta(plugin_json, data)

            with session_scope(self.session_factory) as db:
                plugin = db.get(Plugin, plugin_id)
                if plugin is None:
                    plugin = Plugin(id=plugin_id)
                    plugin.apply_metadata(PluginMetadataReader.read_metadata(plugin_json))
                    db.add(plugin)
                else:
                    plugin.apply_meta(meta)
            return plugin

    def set_status(self, plugin_id: str, status: PluginStatus, message: Optional[str] = None) -> Optional[Plugin]:
        """Записать статус вместе с сообщением (None очищает сообщение)"""
        plugin = self.set_meta(plugin_id, {"status": status, "status_message": message})
        if plugin is not None:
            logger.info(f"🔄 Plugin {plugin_id} status -> {status.value}")
        return plugin

    def update_load_order(self, order: List[str]) -> None:
        for index, plugin_id in enumerate(order):
            self.set_meta(plugin_id, {"load_order": index})

    def delete(self, plugin_id: str) -> None:
        """
        Удалить директорию и запись плагина.

        Директория сначала переименовывается в скрытую, поэтому после сбоя
        плагин либо присутствует целиком, либо отсутствует в директории плагинов.
        """
        with self.lock(plugin_id):
            plugin_dir = self.plugin_path(plugin_id)
            trash = None
            if plugin_dir.exists():
                trash = self.plugins_dir / f".deleting-{plugin_id}-{uuid.uuid4().hex[:8]}"
                os.replace(plugin_dir, trash)

            with session_scope(self.session_factory) as db:
                plugin = db.get(Plugin, plugin_id)
                if plugin is not None:
                    db.delete(plugin)

            if trash is not None:
                shutil.rmtree(trash, ignore_errors=True)
            logger.info(f"🗑️ Deleted plugin {plugin_id}")


__all__ = ["PluginRegistry"]
