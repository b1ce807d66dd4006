"""
Plugin Lifecycle Manager - управление жизненным циклом плагинов.

Операции install / update / uninstall / enable / disable выполняются
последовательно, с блокировкой на уровне плагина. Отката при частичном
сбое нет: плагин получает статус Errored с текстом ошибки, повтор - через
переустановку.
"""
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from .archive_handler import ArchiveHandler
from .collaborators import AssetBuilder, MigrationRunner, SeederRunner
from .constants import PLUGIN_DEFAULT_SEEDER, PLUGIN_METADATA_FILE, PLUGIN_MIGRATIONS_DIR
from .dependencies import DependencyReconciler
from .errors import FetchFailedError, InvalidBundleError, MigrationError, SeedError
from .fetcher import ArchiveFetcher, LocalArchive
from .isolation import PluginExceptionHandler
from .metadata_reader import PluginMetadataReader
from .models import Plugin, PluginStatus
from .registry import PluginRegistry
from .updates import UpdateChecker

logger = logging.getLogger(__name__)


class PluginLifecycleManager:
    """
    Оркестратор жизненного цикла плагинов.

    Все коллабораторы передаются явно:
    - fetcher / archive_handler: получение и распаковка архивов
    - registry: записи и статусы плагинов
    - reconciler: Python-пакеты плагинов
    - migrations / seeder / assets: внешние шаги установки
    """

    def __init__(
        self,
        registry: PluginRegistry,
        fetcher: ArchiveFetcher,
        archive_handler: ArchiveHandler,
        reconciler: DependencyReconciler,
        migrations: MigrationRunner,
        seeder: SeederRunner,
        assets: AssetBuilder,
        exception_handler: PluginExceptionHandler,
        panel_version: str,
        update_checker: Optional[UpdateChecker] = None,
    ):
        self.registry = registry
        self.fetcher = fetcher
        self.archive_handler = archive_handler
        self.reconciler = reconciler
        self.migrations = migrations
        self.seeder = seeder
        self.assets = assets
        self.exception_handler = exception_handler
        self.panel_version = panel_version
        self.update_checker = update_checker
        logger.info("PluginLifecycleManager initialized")

    # ============= Downloads =============

    def download_plugin_from_file(
        self,
        path: Union[str, Path],
        filename: Optional[str] = None,
        clean_download: bool = False,
    ) -> Plugin:
        """
        Распаковать загруженный архив и зарегистрировать плагин.

        Args:
            path: Путь к загруженному файлу
            filename: Исходное имя файла (определяет имя плагина)
            clean_download: Удалить старые файлы плагина перед распаковкой
        """
        with self.fetcher.fetch(Path(path), filename) as archive:
            return self._extract_and_register(archive, clean_download)

    def download_plugin_from_url(
        self,
        url: str,
        clean_download: bool = False,
        plugin_id: Optional[str] = None,
    ) -> Plugin:
        """Скачать архив (прямая ссылка или папка GitHub) и зарегистрировать плагин"""
        with self.fetcher.fetch(url) as archive:
            return self._extract_and_register(archive, clean_download, plugin_id)

    def _extract_and_register(
        self,
        archive: LocalArchive,
        clean_download: bool,
        plugin_id: Optional[str] = None,
    ) -> Plugin:
        plugin_id = plugin_id or self.archive_handler.plugin_name_from_filename(archive.filename)

        with self.registry.lock(plugin_id):
            previous = self.registry.get(plugin_id)
            plugin_dir = self.archive_handler.extract(archive, clean_download, plugin_name=plugin_id)

            # Статус и порядок загрузки принадлежат установке, а не архиву
            if previous is not None:
                meta = {
                    "status": previous.status,
                    "status_message": previous.status_message,
                    "load_order": previous.load_order,
                }
            else:
                meta = {"status": PluginStatus.NOT_INSTALLED, "status_message": None}
            PluginMetadataReader.merge_meta(plugin_dir / PLUGIN_METADATA_FILE, meta)

            plugin = self.registry.register(plugin_dir.name)
            logger.info(f"✅ Plugin {plugin.id} v{plugin.version} downloaded")
            return plugin

    # ============= Collaborator steps =============

    def _run_migrations(self, plugin: Plugin) -> None:
        migrations = self.registry.plugin_path(plugin.id, *PLUGIN_MIGRATIONS_DIR)
        if migrations.is_dir() and not self.migrations.run(plugin.id, migrations):
            raise MigrationError(f"Could not run migrations for plugin '{plugin.id}'")

    def _rollback_migrations(self, plugin: Plugin) -> None:
        migrations = self.registry.plugin_path(plugin.id, *PLUGIN_MIGRATIONS_DIR)
        if migrations.is_dir() and not self.migrations.rollback(plugin.id, migrations):
            raise MigrationError(f"Could not rollback migrations for plugin '{plugin.id}'")

    def _seeder_path(self, plugin: Plugin) -> Optional[Path]:
        plugin_dir = self.registry.plugin_path(plugin.id).resolve()
        if plugin.seeder:
            seeder = (plugin_dir / plugin.seeder).resolve()
            if not seeder.is_relative_to(plugin_dir) or not seeder.is_file():
                raise SeedError(f"Seeder '{plugin.seeder}' of plugin '{plugin.id}' not found")
            return seeder
        seeder = plugin_dir.joinpath(*PLUGIN_DEFAULT_SEEDER)
        return seeder if seeder.is_file() else None

    def _run_seeder(self, plugin: Plugin) -> None:
        seeder = self._seeder_path(plugin)
        if seeder is not None and not self.seeder.run(plugin.id, seeder):
            raise SeedError(f"Could not run seeder for plugin '{plugin.id}'")

    def _mark_incompatible(self, plugin: Plugin) -> None:
        self.registry.set_status(
            plugin.id, PluginStatus.INCOMPATIBLE, plugin.incompatibility_message(self.panel_version)
        )

    # ============= Lifecycle =============

    def install_plugin(self, plugin_id: str, enable: bool = True) -> bool:
        """
        Установить плагин: пакеты -> фронтенд -> миграции -> сидер -> статус.

        Args:
            plugin_id: ID плагина
            enable: Включить плагин (иначе он остается выключенным)

        Returns:
            True при успехе; ошибки шагов записываются в статус Errored
        """
        with self.registry.lock(plugin_id):
            plugin = self.registry.get_or_fail(plugin_id)
            if not plugin.is_compatible(self.panel_version):
                self._mark_incompatible(plugin)
                logger.warning(f"⚠️ Plugin {plugin_id} is not compatible with panel {self.panel_version}")
                return False

            try:
                logger.info(f"📦 Installing plugin {plugin_id}")
                self.reconciler.reconcile(new_packages=plugin.get_packages())
                self.assets.build()
                self._run_migrations(plugin)
                self._run_seeder(plugin)

                if enable or plugin.status == PluginStatus.ENABLED.value:
                    self.registry.set_status(plugin_id, PluginStatus.ENABLED)
                else:
                    self.registry.set_status(plugin_id, PluginStatus.DISABLED)
            except Exception as e:
                self.exception_handler.handle(plugin_id, e)
                return False

            logger.info(f"✅ Plugin {plugin_id} installed")
            return True

    def install_all(self, enable: bool = False) -> Dict[str, bool]:
        """
        Установить все еще не установленные плагины.

        Ошибка одного плагина не прерывает установку остальных
        (кроме режима разработчика).
        """
        results: Dict[str, bool] = {}
        for plugin in self.registry.all():
            if plugin.status != PluginStatus.NOT_INSTALLED.value:
                continue
            results[plugin.id] = self.install_plugin(plugin.id, enable=enable)
        return results

    def update_plugin(self, plugin_id: str) -> bool:
        """
        Обновить плагин из download_url его update_url.

        Если скачивание или проверка архива падают до изменения файлов,
        статус плагина не меняется.
        """
        with self.registry.lock(plugin_id):
            plugin = self.registry.get_or_fail(plugin_id)
            download_url = self.update_checker.get_download_url(plugin) if self.update_checker else None
            if not download_url:
                logger.info(f"ℹ️ No update available for plugin {plugin_id}")
                return False

            try:
                self.download_plugin_from_url(download_url, clean_download=True, plugin_id=plugin_id)
            except (FetchFailedError, InvalidBundleError) as e:
                self.exception_handler.report(e, f"Could not download update for plugin {plugin_id}")
                return False
            except Exception as e:
                self.exception_handler.handle(plugin_id, e)
                return False

            installed = self.install_plugin(plugin_id, enable=False)
            self.update_checker.forget(plugin_id)
            return installed

    def uninstall_plugin(self, plugin_id: str, delete_files: bool = False) -> bool:
        """
        Удалить плагин: откат миграций -> удаление/NotInstalled -> фронтенд -> пакеты.

        Args:
            plugin_id: ID плагина
            delete_files: Удалить директорию и запись плагина
        """
        with self.registry.lock(plugin_id):
            plugin = self.registry.get_or_fail(plugin_id)
            try:
                logger.info(f"🗑️ Uninstalling plugin {plugin_id}")
                packages = plugin.get_packages()
                self._rollback_migrations(plugin)

                if delete_files:
                    self.registry.delete(plugin_id)
                else:
                    self.registry.set_status(plugin_id, PluginStatus.NOT_INSTALLED)

                self.assets.build()
                self.reconciler.reconcile(old_packages=packages)
            except Exception as e:
                self.exception_handler.handle(plugin_id, e)
                return False

            logger.info(f"✅ Plugin {plugin_id} uninstalled")
            return True

    def enable_plugin(self, plugin_id: str, reconcile: bool = False) -> bool:
        """
        Включить плагин.

        Args:
            reconcile: Доустановить пакеты плагина
        """
        with self.registry.lock(plugin_id):
            plugin = self.registry.get_or_fail(plugin_id)
            if not plugin.is_compatible(self.panel_version):
                self._mark_incompatible(plugin)
                return False
            try:
                if reconcile:
                    self.reconciler.reconcile(new_packages=plugin.get_packages())
                self.registry.set_status(plugin_id, PluginStatus.ENABLED)
            except Exception as e:
                self.exception_handler.handle(plugin_id, e)
                return False
            return True

    def disable_plugin(self, plugin_id: str, reconcile: bool = False) -> bool:
        """
        Выключить плагин.

        Args:
            reconcile: Удалить пакеты плагина, которые не нужны другим плагинам
        """
        with self.registry.lock(plugin_id):
            plugin = self.registry.get_or_fail(plugin_id)
            try:
                packages = plugin.get_packages() if reconcile else {}
                self.registry.set_status(plugin_id, PluginStatus.DISABLED)
                if reconcile:
                    self.reconciler.reconcile(old_packages=packages)
            except Exception as e:
                self.exception_handler.handle(plugin_id, e)
                return False
            return True

    def delete_plugin(self, plugin_id: str) -> None:
        self.registry.delete(plugin_id)

    def update_load_order(self, order: List[str]) -> None:
        self.registry.update_load_order(order)

    def is_dev_mode_active(self) -> bool:
        return self.exception_handler.dev_mode


__all__ = ["PluginLifecycleManager"]
