"""
Сборка плагин-системы из настроек.

Все компоненты создаются здесь и передаются друг другу явно;
глобальный экземпляр нужен только приложению-хосту (init/get).
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .archive_handler import ArchiveHandler
from .collaborators import AlembicMigrationRunner, CommandAssetBuilder, ModuleSeederRunner
from .config import PluginSettings, load_settings
from .db import create_db_engine, create_session_factory
from .dependencies import DependencyReconciler
from .fetcher import ArchiveFetcher
from .installer import PipPackageManager
from .isolation import PluginExceptionHandler
from .lifecycle import PluginLifecycleManager
from .loader import HostApplication, LoadReport, PluginHost, RuntimeLoader
from .registry import PluginRegistry
from .updates import UpdateChecker

logger = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO) -> None:
    """Настроить логирование (только если оно еще не настроено)"""
    if not logging.root.handlers:
        logging.basicConfig(
            level=level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )


@dataclass
class PluginService:
    """Собранная плагин-система"""
    settings: PluginSettings
    registry: PluginRegistry
    lifecycle: PluginLifecycleManager
    loader: RuntimeLoader
    updates: UpdateChecker
    host: PluginHost

    def boot(self) -> LoadReport:
        """Синхронизировать реестр с директорией плагинов и подключить плагины"""
        self.registry.sync()
        return self.loader.load_plugins()


def create_plugin_service(
    settings: PluginSettings,
    http_client: Optional[httpx.Client] = None,
    host: Optional[PluginHost] = None,
) -> PluginService:
    """
    Создать все компоненты плагин-системы.

    Args:
        settings: Настройки
        http_client: Общий HTTP клиент (по умолчанию - свой на каждый запрос)
        host: Точки расширения приложения (по умолчанию HostApplication)
    """
    engine = create_db_engine(settings.database_url)
    session_factory = create_session_factory(engine)

    registry = PluginRegistry(settings.plugins_dir, session_factory)
    exception_handler = PluginExceptionHandler(registry, dev_mode=settings.dev_mode)
    updates = UpdateChecker(
        settings.panel_version,
        http_client=http_client,
        ttl=settings.update_cache_ttl,
        timeout=settings.update_check_timeout,
        connect_timeout=settings.update_check_connect_timeout,
    )
    reconciler = DependencyReconciler(
        registry,
        PipPackageManager(cwd=settings.base_path, timeout=settings.package_manager_timeout),
        strict=settings.strict_dependencies,
    )

    lifecycle = PluginLifecycleManager(
        registry=registry,
        fetcher=ArchiveFetcher(settings, http_client=http_client),
        archive_handler=ArchiveHandler(
            settings.plugins_dir, settings.max_import_size, settings.max_extract_size
        ),
        reconciler=reconciler,
        migrations=AlembicMigrationRunner(settings.database_url),
        seeder=ModuleSeederRunner(session_factory),
        assets=CommandAssetBuilder(
            settings.base_path,
            install_cmd=settings.asset_install_cmd,
            build_cmd=settings.asset_build_cmd,
            install_timeout=settings.asset_install_timeout,
            build_timeout=settings.asset_build_timeout,
        ),
        exception_handler=exception_handler,
        panel_version=settings.panel_version,
        update_checker=updates,
    )

    host = host if host is not None else HostApplication()
    loader = RuntimeLoader(registry, host, exception_handler, settings.panel_version)

    logger.info(f"✅ Plugin service ready (panel {settings.panel_version}, dev_mode={settings.dev_mode})")
    return PluginService(
        settings=settings,
        registry=registry,
        lifecycle=lifecycle,
        loader=loader,
        updates=updates,
        host=host,
    )


# Global instance
_plugin_service: Optional[PluginService] = None


def get_plugin_service() -> PluginService:
    """Получить глобальный экземпляр PluginService"""
    global _plugin_service
    if _plugin_service is None:
        raise RuntimeError("PluginService not initialized. Call init_plugin_service first.")
    return _plugin_service


def init_plugin_service(
    settings: Optional[PluginSettings] = None,
    http_client: Optional[httpx.Client] = None,
    host: Optional[PluginHost] = None,
) -> PluginService:
    """Инициализировать глобальный экземпляр PluginService"""
    global _plugin_service
    _plugin_service = create_plugin_service(settings or load_settings(), http_client, host)
    return _plugin_service


__all__ = [
    "PluginService",
    "configure_logging",
    "create_plugin_service",
    "get_plugin_service",
    "init_plugin_service",
]
