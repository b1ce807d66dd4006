"""
Модуль для чтения и записи метаданных плагинов (plugin.json)
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidBundleError
from .models import PluginCategory, PluginStatus

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_NAMESPACE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class PluginMeta(BaseModel):
    """Изменяемая часть plugin.json (секция meta)"""
    model_config = ConfigDict(extra="allow")

    status: PluginStatus = PluginStatus.NOT_INSTALLED
    status_message: Optional[str] = None
    load_order: int = 0


class PluginMetadata(BaseModel):
    """Содержимое plugin.json"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    name: str
    version: str
    namespace: str
    author: Optional[str] = None
    description: Optional[str] = None
    category: PluginCategory = PluginCategory.PLUGIN
    url: Optional[str] = None
    update_url: Optional[str] = None
    class_name: Optional[str] = Field(default=None, alias="class")
    panels: Optional[List[str]] = None
    panel_version: Optional[str] = None
    packages: Dict[str, str] = Field(default_factory=dict)
    providers: List[str] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)
    seeder: Optional[str] = None
    meta: PluginMeta = Field(default_factory=PluginMeta)

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not _ID_PATTERN.match(value) or ".." in value:
            raise ValueError(f"Invalid plugin id: {value!r}")
        return value

    @field_validator("namespace")
    @classmethod
    def _check_namespace(cls, value: str) -> str:
        if not _NAMESPACE_PATTERN.match(value):
            raise ValueError(f"Namespace must be an importable package name, got {value!r}")
        return value

    @field_validator("panels", mode="before")
    @classmethod
    def _split_panels(cls, value: Any) -> Any:
        # В старых манифестах панели перечислены через запятую
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()] or None
        return value

    @field_validator("packages", mode="before")
    @classmethod
    def _decode_packages(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value


class PluginMetadataReader:
    """Читатель/писатель метаданных плагинов"""

    @staticmethod
    def read_raw(plugin_json_path: Path) -> Dict[str, Any]:
        """
        Прочитать plugin.json как словарь.

        Raises:
            InvalidBundleError: если файл отсутствует или не является JSON-объектом
        """
        try:
            with open(plugin_json_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise InvalidBundleError(f"Plugin metadata file not found: {plugin_json_path}") from e
        except json.JSONDecodeError as e:
            raise InvalidBundleError(f"Invalid JSON in {plugin_json_path}: {e}") from e

        if not isinstance(data, dict):
            raise InvalidBundleError(f"Plugin metadata in {plugin_json_path} must be an object")
        return data

    @staticmethod
    def read_metadata(plugin_json_path: Path) -> PluginMetadata:
        """
        Прочитать и провалидировать метаданные плагина.

        Args:
            plugin_json_path: Путь к файлу plugin.json

        Returns:
            PluginMetadata

        Raises:
            InvalidBundleError: если файла нет или обязательные поля некорректны
        """
        data = PluginMetadataReader.read_raw(plugin_json_path)
        try:
            metadata = PluginMetadata.model_validate(data)
        except ValidationError as e:
            raise InvalidBundleError(f"Invalid plugin metadata in {plugin_json_path}: {e}") from e

        logger.debug(f"✅ Read plugin metadata: {metadata.id}")
        return metadata

    @staticmethod
    def merge_meta(plugin_json_path: Path, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Слить поля в секцию meta и атомарно перезаписать plugin.json.

        Вызывающий код должен держать блокировку плагина на время вызова.

        Args:
            plugin_json_path: Путь к файлу plugin.json
            data: Новые значения полей meta

        Returns:
            Итоговая секция meta
        """
        plugin_data = PluginMetadataReader.read_raw(plugin_json_path)
        meta = dict(plugin_data.get("meta") or {})
        meta.update({k: (v.value if isinstance(v, PluginStatus) else v) for k, v in data.items()})
        plugin_data["meta"] = meta

        PluginMetadataReader.write_raw(plugin_json_path, plugin_data)
        return meta

    @staticmethod
    def write_raw(plugin_json_path: Path, plugin_data: Dict[str, Any]) -> None:
        """Записать plugin.json через временный файл и os.replace"""
        directory = plugin_json_path.parent
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".plugin.json.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(plugin_data, f, indent=4, ensure_ascii=False)
                f.write("\n")
            os.replace(tmp_path, plugin_json_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


__all__ = ["PluginMeta", "PluginMetadata", "PluginMetadataReader"]
