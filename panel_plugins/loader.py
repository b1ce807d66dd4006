"""
Runtime Loader - подключение установленных плагинов при старте приложения.

Загрузчик только регистрирует плагины в точках расширения хоста
(PluginHost): пространство имен, конфигурация, переводы, провайдеры,
команды, миграции, шаблоны. Повторная загрузка не должна приводить к
ошибкам или дублированию регистраций.
"""
import importlib
import importlib.machinery
import importlib.util
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, List, Optional, Protocol

import yaml

from .constants import PLUGIN_CONFIG_DIR, PLUGIN_LANG_DIR, PLUGIN_MIGRATIONS_DIR, PLUGIN_SOURCE_DIR, PLUGIN_VIEWS_DIR
from .isolation import PluginExceptionHandler
from .models import Plugin, PluginStatus
from .registry import PluginRegistry

logger = logging.getLogger(__name__)

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")


class PluginHost(Protocol):
    """Точки расширения, которые приложение предоставляет плагинам"""

    def register_namespace(self, namespace: str, path: Path) -> ModuleType: ...

    def set_config(self, plugin_id: str, config: Dict[str, Any]) -> None: ...

    def add_translation_path(self, path: Path) -> None: ...

    def add_translation_namespace(self, namespace: str, path: Path) -> None: ...

    def register_provider(self, provider: Any) -> None: ...

    def register_command(self, command: Any) -> None: ...

    def add_migration_path(self, path: Path) -> None: ...

    def add_view_namespace(self, namespace: str, path: Path) -> None: ...

    def register_panel_plugin(self, panel_id: str, plugin_id: str, instance: Any) -> None: ...


def _ensure_parent_packages(namespace: str) -> None:
    """Создать пустые пакеты-родители для 'vendor.plugin'"""
    parts = namespace.split(".")
    for i in range(1, len(parts)):
        name = ".".join(parts[:i])
        if name in sys.modules:
            continue
        spec = importlib.machinery.ModuleSpec(name, None, is_package=True)
        spec.submodule_search_locations = []
        module = importlib.util.module_from_spec(spec)
        sys.modules[name] = module
        if i > 1:
            setattr(sys.modules[".".join(parts[:i - 1])], parts[i - 1], module)


class HostApplication:
    """
    Реализация PluginHost по умолчанию.

    Запоминает все регистрации; повторная регистрация того же объекта
    игнорируется.
    """

    def __init__(self):
        self.namespaces: Dict[str, Path] = {}
        self.configs: Dict[str, Dict[str, Any]] = {}
        self.translation_paths: List[Path] = []
        self.translation_namespaces: Dict[str, Path] = {}
        self.providers: List[Any] = []
        self.commands: List[Any] = []
        self.migration_paths: List[Path] = []
        self.view_namespaces: Dict[str, Path] = {}
        self.panel_plugins: Dict[str, Dict[str, Any]] = {}

    def register_namespace(self, namespace: str, path: Path) -> ModuleType:
        """
        Сделать директорию src/ плагина импортируемым пакетом `namespace`.

        Args:
            namespace: Имя пакета (может быть составным: 'vendor.plugin')
            path: Директория с исходниками плагина

        Returns:
            Модуль пакета
        """
        path = Path(path).resolve()
        existing = sys.modules.get(namespace)
        if existing is not None:
            if str(path) not in list(getattr(existing, "__path__", None) or []):
                raise ImportError(f"Namespace '{namespace}' is already used by another module")
            self.namespaces[namespace] = path
            return existing

        _ensure_parent_packages(namespace)
        init_file = path / "__init__.py"
        if init_file.is_file():
            spec = importlib.util.spec_from_file_location(
                namespace, init_file, submodule_search_locations=[str(path)]
            )
        else:
            spec = importlib.machinery.ModuleSpec(namespace, None, is_package=True)
            spec.submodule_search_locations = [str(path)]

        module = importlib.util.module_from_spec(spec)
        sys.modules[namespace] = module
        try:
            if spec.loader is not None:
                spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(namespace, None)
            raise

        if "." in namespace:
            parent, _, child = namespace.rpartition(".")
            setattr(sys.modules[parent], child, module)

        self.namespaces[namespace] = path
        logger.debug(f"🔌 Registered namespace {namespace} -> {path}")
        return module

    def set_config(self, plugin_id: str, config: Dict[str, Any]) -> None:
        self.configs[plugin_id] = config

    def add_translation_path(self, path: Path) -> None:
        if path not in self.translation_paths:
            self.translation_paths.append(path)

    def add_translation_namespace(self, namespace: str, path: Path) -> None:
        self.translation_namespaces[namespace] = path

    def register_provider(self, provider: Any) -> None:
        if provider not in self.providers:
            self.providers.append(provider)

    def register_command(self, command: Any) -> None:
        if command not in self.commands:
            self.commands.append(command)

    def add_migration_path(self, path: Path) -> None:
        if path not in self.migration_paths:
            self.migration_paths.append(path)

    def add_view_namespace(self, namespace: str, path: Path) -> None:
        self.view_namespaces[namespace] = path

    def register_panel_plugin(self, panel_id: str, plugin_id: str, instance: Any) -> None:
        self.panel_plugins.setdefault(panel_id, {})[plugin_id] = instance


@dataclass
class LoadReport:
    """Результат загрузки плагинов"""
    loaded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    incompatible: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    errored: List[str] = field(default_factory=list)


def resolve_reference(namespace: str, reference: str) -> Any:
    """
    Найти объект по ссылке 'module:attr' внутри пакета плагина.

    'providers:MyProvider' -> <namespace>.providers.MyProvider
    'MyPlugin'             -> <namespace>.MyPlugin
    """
    module_part, sep, attr = reference.partition(":")
    if not sep:
        module_part, attr = "", reference
    module_name = f"{namespace}.{module_part}" if module_part else namespace
    module = importlib.import_module(module_name)
    return getattr(module, attr) if attr else module


def read_plugin_config(config_dir: Path, plugin_id: str) -> Optional[Dict[str, Any]]:
    """Прочитать config/<id>.yaml|yml|json (None, если файла нет)"""
    for ext in CONFIG_EXTENSIONS:
        path = config_dir / f"{plugin_id}{ext}"
        if not path.is_file():
            continue
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f) if ext == ".json" else yaml.safe_load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        return data
    return None


class RuntimeLoader:
    """Подключение плагинов к хосту в порядке load_order"""

    def __init__(
        self,
        registry: PluginRegistry,
        host: PluginHost,
        exception_handler: PluginExceptionHandler,
        panel_version: str,
    ):
        self.registry = registry
        self.host = host
        self.exception_handler = exception_handler
        self.panel_version = panel_version

    def load_plugins(self) -> LoadReport:
        """
        Подключить все зарегистрированные плагины.

        Ошибка одного плагина записывается в его статус и не мешает остальным
        (в режиме разработчика - пробрасывается).
        """
        report = LoadReport()
        for plugin in self.registry.all():
            if not self.registry.plugin_path(plugin.id).is_dir():
                logger.warning(f"⚠️ Plugin {plugin.id} is registered but its directory is missing")
                report.missing.append(plugin.id)
                continue

            try:
                plugin = self._check_compatibility(plugin)
                if plugin.plugin_status == PluginStatus.INCOMPATIBLE:
                    report.incompatible.append(plugin.id)
                    continue

                self._register_namespace(plugin)
                if not plugin.should_load():
                    report.skipped.append(plugin.id)
                    continue

                self._wire(plugin)
                report.loaded.append(plugin.id)
            except Exception as e:
                self.exception_handler.handle(plugin.id, e)
                report.errored.append(plugin.id)

        logger.info(
            f"🔌 Plugins loaded: {len(report.loaded)}, skipped: {len(report.skipped)}, "
            f"incompatible: {len(report.incompatible)}, errored: {len(report.errored)}"
        )
        return report

    def _check_compatibility(self, plugin: Plugin) -> Plugin:
        """Записать смену статуса Incompatible <-> Disabled и вернуть актуальную запись"""
        if not plugin.is_compatible(self.panel_version):
            message = plugin.incompatibility_message(self.panel_version)
            if plugin.status != PluginStatus.INCOMPATIBLE.value or plugin.status_message != message:
                plugin = self.registry.set_status(plugin.id, PluginStatus.INCOMPATIBLE, message) or plugin
            return plugin

        if plugin.status == PluginStatus.INCOMPATIBLE.value:
            logger.info(f"ℹ️ Plugin {plugin.id} is compatible again, marking as disabled")
            plugin = self.registry.set_status(plugin.id, PluginStatus.DISABLED) or plugin
        return plugin

    def _register_namespace(self, plugin: Plugin) -> None:
        source = self.registry.plugin_path(plugin.id, PLUGIN_SOURCE_DIR)
        if source.is_dir():
            self.host.register_namespace(plugin.namespace, source)

        config = read_plugin_config(self.registry.plugin_path(plugin.id, PLUGIN_CONFIG_DIR), plugin.id)
        if config is not None:
            self.host.set_config(plugin.id, config)

    def _wire(self, plugin: Plugin) -> None:
        lang = self.registry.plugin_path(plugin.id, PLUGIN_LANG_DIR)
        if lang.is_dir():
            if plugin.is_language():
                self.host.add_translation_path(lang)
            else:
                self.host.add_translation_namespace(plugin.id, lang)

        for reference in plugin.get_providers():
            provider = self._resolve(plugin, reference)
            if provider is not None:
                self.host.register_provider(provider)

        for reference in plugin.get_commands():
            command = self._resolve(plugin, reference)
            if command is not None:
                self.host.register_command(command)

        migrations = self.registry.plugin_path(plugin.id, *PLUGIN_MIGRATIONS_DIR)
        if migrations.is_dir():
            self.host.add_migration_path(migrations)

        views = self.registry.plugin_path(plugin.id, *PLUGIN_VIEWS_DIR)
        if views.is_dir():
            self.host.add_view_namespace(plugin.id, views)

        logger.debug(f"🔌 Wired plugin {plugin.id}")

    @staticmethod
    def _resolve(plugin: Plugin, reference: str) -> Any:
        try:
            return resolve_reference(plugin.namespace, reference)
        except (ImportError, AttributeError) as e:
            logger.warning(f"⚠️ Plugin {plugin.id}: could not resolve {reference}: {e}")
            return None

    # ============= Panel plugins =============

    def load_panel_plugins(self, panel_id: str) -> List[str]:
        """
        Создать экземпляры классов плагинов и зарегистрировать их в панели.

        Плагин в статусе Errored, который успешно зарегистрировался,
        снова становится Enabled.

        Returns:
            Список зарегистрированных id
        """
        registered = []
        for plugin in self.registry.all():
            if not plugin.class_name or not plugin.should_load(panel_id):
                continue
            if not plugin.is_compatible(self.panel_version):
                continue
            try:
                self._register_namespace(plugin)
                plugin_class = resolve_reference(plugin.namespace, plugin.class_name)
                self.host.register_panel_plugin(panel_id, plugin.id, plugin_class())
                if plugin.status == PluginStatus.ERRORED.value:
                    self.registry.set_status(plugin.id, PluginStatus.ENABLED)
                registered.append(plugin.id)
            except Exception as e:
                self.exception_handler.handle(plugin.id, e)

        logger.info(f"🔌 Registered {len(registered)} plugin(s) in panel {panel_id}")
        return registered

    # ============= Queries =============

    def has_theme_plugin_enabled(self) -> bool:
        return any(p.is_theme() and p.status == PluginStatus.ENABLED.value for p in self.registry.all())

    def get_plugin_languages(self) -> List[str]:
        """Коды языков из lang/ включенных языковых плагинов"""
        languages = set()
        for plugin in self.registry.all():
            if not plugin.is_language() or plugin.status != PluginStatus.ENABLED.value:
                continue
            lang = self.registry.plugin_path(plugin.id, PLUGIN_LANG_DIR)
            if lang.is_dir():
                languages.update(p.name for p in lang.iterdir() if p.is_dir())
        return sorted(languages)


__all__ = [
    "PluginHost",
    "HostApplication",
    "LoadReport",
    "RuntimeLoader",
    "resolve_reference",
    "read_plugin_config",
]
