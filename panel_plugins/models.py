from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

from packaging.version import InvalidVersion, Version
from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from .constants import CANARY_VERSION
from .db import Base

if TYPE_CHECKING:
    from .metadata_reader import PluginMetadata


class PluginStatus(str, Enum):
    """Состояния жизненного цикла плагина"""
    NOT_INSTALLED = "not_installed"
    ENABLED = "enabled"
    DISABLED = "disabled"
    ERRORED = "errored"
    INCOMPATIBLE = "incompatible"


class PluginCategory(str, Enum):
    PLUGIN = "plugin"
    THEME = "theme"
    LANGUAGE = "language"


class Plugin(Base):
    """
    Запись реестра плагинов.

    Индекс над plugin.json: поля meta (status, status_message, load_order)
    перечитываются из файла после каждой записи.
    """
    __tablename__ = "plugins"
    id = Column(String(128), primary_key=True)
    name = Column(String(255), nullable=False)
    author = Column(String(255), nullable=True)
    version = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(32), nullable=False, default=PluginCategory.PLUGIN.value)
    url = Column(String(1024), nullable=True)
    update_url = Column(String(1024), nullable=True)
    # namespace - имя импортируемого пакета, который отображается на src/
    namespace = Column(String(255), nullable=False)
    class_name = Column(String(255), nullable=True)
    # panels - список панелей, в которых плагин регистрируется (None = во всех)
    panels = Column(JSON, nullable=True)
    # panel_version: "^1.2.0" - нижняя граница, "1.2.0" - точное совпадение
    panel_version = Column(String(64), nullable=True)
    # packages - манифест зависимостей {name: specifier}, реестр его не интерпретирует
    packages = Column(JSON, nullable=True)
    providers = Column(JSON, nullable=True)
    commands = Column(JSON, nullable=True)
    seeder = Column(String(512), nullable=True)
    status = Column(String(32), nullable=False, default=PluginStatus.NOT_INSTALLED.value)
    status_message = Column(Text, nullable=True)
    load_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Plugin {self.id} v{self.version} [{self.status}]>"

    def apply_metadata(self, metadata: "PluginMetadata") -> None:
        """Скопировать поля из plugin.json в запись"""
        self.name = metadata.name
        self.author = metadata.author
        self.version = metadata.version
        self.description = metadata.description
        self.category = metadata.category.value
        self.url = metadata.url
        self.update_url = metadata.update_url
        self.namespace = metadata.namespace
        self.class_name = metadata.class_name
        self.panels = metadata.panels
        self.panel_version = metadata.panel_version
        self.packages = dict(metadata.packages) if metadata.packages else None
        self.providers = list(metadata.providers)
        self.commands = list(metadata.commands)
        self.seeder = metadata.seeder
        self.apply_meta(metadata.meta.model_dump())

    def apply_meta(self, meta: Dict) -> None:
        self.status = PluginStatus(meta.get("status") or PluginStatus.NOT_INSTALLED).value
        self.status_message = meta.get("status_message")
        self.load_order = int(meta.get("load_order") or 0)

    @property
    def plugin_status(self) -> PluginStatus:
        return PluginStatus(self.status)

    def is_theme(self) -> bool:
        return self.category == PluginCategory.THEME.value

    def is_language(self) -> bool:
        return self.category == PluginCategory.LANGUAGE.value

    def is_installed(self) -> bool:
        return self.status != PluginStatus.NOT_INSTALLED.value

    def is_disabled(self) -> bool:
        return self.status in (PluginStatus.DISABLED.value, PluginStatus.INCOMPATIBLE.value)

    def is_panel_version_strict(self) -> bool:
        return not (self.panel_version or "").startswith("^")

    def is_compatible(self, current_version: str) -> bool:
        """Проверить совместимость с текущей версией панели"""
        if not self.panel_version or current_version == CANARY_VERSION:
            return True
        try:
            current = Version(current_version)
            required = Version(self.panel_version.lstrip("^"))
        except InvalidVersion:
            return False
        if self.is_panel_version_strict():
            return current == required
        return current >= required

    def incompatibility_message(self, current_version: str) -> str:
        bound = self.panel_version.lstrip("^") if self.panel_version else ""
        suffix = "" if self.is_panel_version_strict() else " or newer"
        return (
            f"This Plugin is only compatible with Panel version {bound}{suffix} "
            f"but you are using version {current_version}!"
        )

    def should_load(self, panel_id: Optional[str] = None) -> bool:
        """Установлен, не отключен и (если указана панель) разрешен для неё"""
        if panel_id and self.panels and panel_id not in self.panels:
            return False
        return self.is_installed() and not self.is_disabled()

    def get_packages(self) -> Dict[str, str]:
        """
        Манифест зависимостей плагина.

        Raises:
            ValueError: если манифест поврежден
        """
        packages = self.packages
        if not packages:
            return {}
        if isinstance(packages, str):
            packages = json.loads(packages)
        if not isinstance(packages, dict):
            raise ValueError(f"Invalid package manifest for plugin '{self.id}'")
        return {str(name): str(spec or "") for name, spec in packages.items()}

    def get_providers(self) -> List[str]:
        return list(self.providers or [])

    def get_commands(self) -> List[str]:
        return list(self.commands or [])
