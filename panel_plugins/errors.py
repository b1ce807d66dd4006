"""
Исключения плагин-системы.

Все сбои коллабораторов (загрузка, распаковка, pip, миграции, сборка)
приводятся к этой иерархии, чтобы оркестратор не зависел от их моделей ошибок.
"""


class PluginError(Exception):
    """Базовое исключение плагин-системы"""


class PluginNotFoundError(PluginError):
    """Плагин не зарегистрирован"""


class InvalidBundleError(PluginError):
    """Архив не открывается, не проходит проверку размера/путей или не содержит метаданных"""


class FetchFailedError(PluginError):
    """Сетевая ошибка, запрещенный хост, неверная ссылка или превышение размера"""


class DependencyConflictError(PluginError):
    """Несовместимые ограничения версий одного пакета (только в строгом режиме)"""


class PackageManagerError(PluginError):
    """Пакетный вызов pip завершился с ошибкой"""


class MigrationError(PluginError):
    """Не удалось выполнить или откатить миграции плагина"""


class SeedError(PluginError):
    """Не удалось выполнить сидер плагина"""


class AssetBuildError(PluginError):
    """Не удалось установить зависимости или собрать фронтенд"""


__all__ = [
    "PluginError",
    "PluginNotFoundError",
    "InvalidBundleError",
    "FetchFailedError",
    "DependencyConflictError",
    "PackageManagerError",
    "MigrationError",
    "SeedError",
    "AssetBuildError",
]
