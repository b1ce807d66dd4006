"""
Dependency Reconciler - согласование Python-пакетов плагинов.

Собирает объединение манифестов всех загружаемых плагинов и приводит к нему
набор установленных пакетов: один вызов pip на удаление и один на установку.

Конфликты ограничений версий разрешаются по правилу "последний побеждает"
(в порядке загрузки); каждый такой конфликт логируется как предупреждение.
В строгом режиме конфликт приводит к DependencyConflictError.

Удаляются только пакеты, которые согласователь сам установил
(список хранится в .managed-packages.json директории плагинов): пакет,
который уже был у хоста, не удаляется вместе с плагином.
"""
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Set

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from .constants import MANAGED_PACKAGES_FILE
from .errors import DependencyConflictError, PackageManagerError
from .installer import PackageManagerResult
from .metadata_reader import PluginMetadataReader
from .registry import PluginRegistry

logger = logging.getLogger(__name__)

_OPERATOR_CHARS = "<>=!~"


class PackageManager(Protocol):
    def add(self, requirements: List[str]) -> PackageManagerResult: ...

    def remove(self, names: List[str]) -> PackageManagerResult: ...

    def installed(self) -> Dict[str, str]: ...


@dataclass
class ReconcileResult:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    conflicts: Dict[str, List[str]] = field(default_factory=dict)


def requirement_string(name: str, spec: str) -> str:
    """'requests' + '>=2.0' -> 'requests>=2.0'; голая версия означает '=='"""
    spec = (spec or "").strip()
    if not spec or spec == "*":
        return name
    if spec[0] in _OPERATOR_CHARS:
        return f"{name}{spec}"
    return f"{name}=={spec}"


def is_satisfied(spec: str, installed_version: Optional[str]) -> bool:
    """Установленная версия удовлетворяет ограничению"""
    if installed_version is None:
        return False
    spec = (spec or "").strip()
    if not spec or spec == "*":
        return True
    if spec[0] not in _OPERATOR_CHARS:
        spec = f"=={spec}"
    try:
        return SpecifierSet(spec).contains(Version(installed_version), prereleases=True)
    except (InvalidSpecifier, InvalidVersion):
        return False


class DependencyReconciler:
    """
    Согласование пакетов плагинов с менеджером пакетов.

    Загружаемый плагин - тот, что проходит Plugin.should_load().
    """

    def __init__(self, registry: PluginRegistry, package_manager: PackageManager, strict: bool = False):
        self.registry = registry
        self.package_manager = package_manager
        self.strict = strict
        self._lock = threading.Lock()

    @property
    def managed_packages_path(self) -> Path:
        return self.registry.plugins_dir / MANAGED_PACKAGES_FILE

    def managed_packages(self) -> Set[str]:
        """Канонические имена пакетов, установленных для плагинов"""
        path = self.managed_packages_path
        if not path.exists():
            return set()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"❌ Could not read {path}, no package will be removed: {e}")
            return set()
        packages = data.get("packages") if isinstance(data, dict) else None
        return {canonicalize_name(name) for name in packages or [] if isinstance(name, str)}

    def _save_managed_packages(self, names: Set[str]) -> None:
        PluginMetadataReader.write_raw(self.managed_packages_path, {"packages": sorted(names)})

    def desired_packages(
        self,
        initial: Optional[Dict[str, str]] = None,
        conflicts: Optional[Dict[str, List[str]]] = None,
    ) -> Dict[str, str]:
        """
        Объединение манифестов загружаемых плагинов (свежий снимок реестра).

        Args:
            initial: Пакеты, добавляемые перед манифестами плагинов
            conflicts: Сюда складываются конфликтующие ограничения {name: [spec, ...]}

        Returns:
            {name: specifier}
        """
        desired: Dict[str, str] = {}
        names: Dict[str, str] = {}
        conflicts = {} if conflicts is None else conflicts

        def merge(source: str, packages: Dict[str, str]) -> None:
            for name, spec in packages.items():
                key = canonicalize_name(name)
                if key in names and desired[names[key]] != spec:
                    previous = desired[names[key]]
                    conflicts.setdefault(key, [previous]).append(spec)
                    logger.warning(
                        f"⚠️ Conflicting constraints for package {name}: '{previous}' replaced by "
                        f"'{spec}' from {source} (last writer wins)"
                    )
                    if self.strict:
                        raise DependencyConflictError(
                            f"Package {name} is required as '{previous}' and '{spec}' ({source})"
                        )
                if key in names:
                    del desired[names[key]]
                names[key] = name
                desired[name] = spec

        merge("requested packages", dict(initial or {}))

        for plugin in self.registry.all():
            if not plugin.packages or not plugin.should_load():
                continue
            try:
                packages = plugin.get_packages()
            except ValueError as e:
                logger.error(f"❌ Skipping package manifest of plugin {plugin.id}: {e}")
                continue
            merge(f"plugin {plugin.id}", packages)

        return desired

    def reconcile(
        self,
        new_packages: Optional[Dict[str, str]] = None,
        old_packages: Optional[Dict[str, str]] = None,
    ) -> ReconcileResult:
        """
        Привести установленные пакеты к объединению манифестов.

        Args:
            new_packages: Пакеты устанавливаемого плагина (install/update)
            old_packages: Манифест уходящего плагина (uninstall/disable)

        Returns:
            ReconcileResult

        Raises:
            PackageManagerError: если пакетный вызов pip завершился с ошибкой
            DependencyConflictError: в строгом режиме
        """
        with self._lock:
            result = ReconcileResult()
            desired = self.desired_packages(new_packages, result.conflicts)
            desired_keys = {canonicalize_name(name) for name in desired}
            managed = self.managed_packages()

            removed = []
            for name in old_packages or {}:
                key = canonicalize_name(name)
                if key in desired_keys or name in removed:
                    continue
                if key not in managed:
                    logger.debug(f"⏭️ Keeping package {name}: it was not installed for a plugin")
                    continue
                removed.append(name)

            if removed:
                logger.info(f"📦 Removing packages no longer required: {', '.join(removed)}")
                outcome = self.package_manager.remove(removed)
                if not outcome.success:
                    raise PackageManagerError(f"Could not remove old packages: {outcome.error}")
                result.removed = removed
                managed -= {canonicalize_name(name) for name in removed}
                self._save_managed_packages(managed)

            if desired:
                installed = {canonicalize_name(n): v for n, v in self.package_manager.installed().items()}
                missing = [
                    name for name, spec in desired.items()
                    if not is_satisfied(spec, installed.get(canonicalize_name(name)))
                ]
                if missing:
                    added = [requirement_string(name, desired[name]) for name in missing]
                    logger.info(f"📦 Installing packages: {', '.join(added)}")
                    outcome = self.package_manager.add(added)
                    if not outcome.success:
                        raise PackageManagerError(f"Could not install new packages: {outcome.error}")
                    result.added = added
                    # Обновление версии пакета хоста не делает его пакетом плагина
                    managed |= {
                        canonicalize_name(name) for name in missing
                        if canonicalize_name(name) not in installed
                    }
                    self._save_managed_packages(managed)

            return result


__all__ = [
    "DependencyReconciler",
    "PackageManager",
    "ReconcileResult",
    "is_satisfied",
    "requirement_string",
]
