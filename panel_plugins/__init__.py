"""
Panel Plugins - установка и управление плагинами панели.

Структура:
- config.py - настройки (окружение, YAML/JSON)
- registry.py - реестр плагинов (plugin.json + БД)
- fetcher.py - скачивание архивов (URL, папка GitHub)
- archive_handler.py - проверка и распаковка архивов
- dependencies.py / installer.py - Python-пакеты плагинов (pip)
- collaborators.py - миграции, сидеры, сборка фронтенда
- lifecycle.py - install / update / uninstall / enable / disable
- loader.py - подключение плагинов при старте
- bootstrap.py - сборка компонентов
"""

from .bootstrap import (
    PluginService,
    configure_logging,
    create_plugin_service,
    get_plugin_service,
    init_plugin_service,
)
from .config import PluginSettings, load_settings
from .errors import (
    AssetBuildError,
    DependencyConflictError,
    FetchFailedError,
    InvalidBundleError,
    MigrationError,
    PackageManagerError,
    PluginError,
    PluginNotFoundError,
    SeedError,
)
from .lifecycle import PluginLifecycleManager
from .loader import HostApplication, LoadReport, PluginHost, RuntimeLoader
from .models import Plugin, PluginCategory, PluginStatus
from .registry import PluginRegistry

__all__ = [
    'PluginService',
    'configure_logging',
    'create_plugin_service',
    'get_plugin_service',
    'init_plugin_service',
    'PluginSettings',
    'load_settings',
    'PluginError',
    'PluginNotFoundError',
    'InvalidBundleError',
    'FetchFailedError',
    'DependencyConflictError',
    'PackageManagerError',
    'MigrationError',
    'SeedError',
    'AssetBuildError',
    'PluginLifecycleManager',
    'HostApplication',
    'LoadReport',
    'PluginHost',
    'RuntimeLoader',
    'Plugin',
    'PluginCategory',
    'PluginStatus',
    'PluginRegistry',
]
