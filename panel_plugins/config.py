"""
Plugin Settings: конфигурация плагин-системы.

Источники (по возрастанию приоритета):
- значения по умолчанию из constants.py
- файл конфигурации (YAML или JSON), путь в PANEL_PLUGIN_CONFIG
- переменные окружения PANEL_*
"""
import json
import logging
import os
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from . import constants

logger = logging.getLogger(__name__)


@dataclass
class PluginSettings:
    """Настройки плагин-системы"""
    plugins_dir: Path = Path("plugins")
    database_url: Optional[str] = None
    panel_version: str = constants.DEFAULT_PANEL_VERSION
    base_path: Path = Path(".")
    dev_mode: bool = False
    strict_dependencies: bool = False
    max_import_size: int = constants.DEFAULT_MAX_IMPORT_SIZE
    max_extract_size: int = constants.DEFAULT_MAX_EXTRACT_SIZE
    max_folder_depth: int = constants.DEFAULT_MAX_FOLDER_DEPTH
    download_timeout: float = constants.DOWNLOAD_TIMEOUT
    download_connect_timeout: float = constants.DOWNLOAD_CONNECT_TIMEOUT
    folder_api_timeout: float = constants.FOLDER_API_TIMEOUT
    folder_api_connect_timeout: float = constants.FOLDER_API_CONNECT_TIMEOUT
    update_check_timeout: float = constants.UPDATE_CHECK_TIMEOUT
    update_check_connect_timeout: float = constants.UPDATE_CHECK_CONNECT_TIMEOUT
    update_cache_ttl: int = constants.UPDATE_CACHE_TTL
    package_manager_timeout: int = constants.PACKAGE_MANAGER_TIMEOUT
    asset_install_timeout: int = constants.ASSET_INSTALL_TIMEOUT
    asset_build_timeout: int = constants.ASSET_BUILD_TIMEOUT
    asset_install_cmd: List[str] = field(default_factory=lambda: ["yarn", "install"])
    asset_build_cmd: List[str] = field(default_factory=lambda: ["yarn", "build"])
    github_api_url: str = constants.GITHUB_API_URL
    github_raw_url_prefix: str = constants.GITHUB_RAW_URL_PREFIX

    def __post_init__(self):
        self.plugins_dir = Path(self.plugins_dir)
        self.base_path = Path(self.base_path)
        for name in ("max_import_size", "max_extract_size", "max_folder_depth"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if not self.database_url:
            db_path = self.plugins_dir.resolve().parent / "plugins.db"
            self.database_url = f"sqlite:///{db_path}"

    def plugin_path(self, plugin_id: str, *parts: str) -> Path:
        """Путь внутри директории плагина"""
        return self.plugins_dir.joinpath(plugin_id, *parts)


# Переменная окружения -> поле PluginSettings
ENV_MAPPING = {
    "PANEL_PLUGINS_DIR": "plugins_dir",
    "PANEL_PLUGINS_DB_URL": "database_url",
    "PANEL_VERSION": "panel_version",
    "PANEL_BASE_PATH": "base_path",
    "PANEL_PLUGIN_DEV_MODE": "dev_mode",
    "PANEL_PLUGIN_STRICT_DEPENDENCIES": "strict_dependencies",
    "PANEL_PLUGIN_MAX_IMPORT_SIZE": "max_import_size",
    "PANEL_PLUGIN_MAX_EXTRACT_SIZE": "max_extract_size",
    "PANEL_PLUGIN_MAX_FOLDER_DEPTH": "max_folder_depth",
    "PANEL_PLUGIN_PACKAGE_TIMEOUT": "package_manager_timeout",
    "PANEL_PLUGIN_UPDATE_CACHE_TTL": "update_cache_ttl",
    "PANEL_PLUGIN_ASSET_INSTALL_CMD": "asset_install_cmd",
    "PANEL_PLUGIN_ASSET_BUILD_CMD": "asset_build_cmd",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _to_command(value: Any) -> List[str]:
    if isinstance(value, str):
        return shlex.split(value)
    return [str(v) for v in value]


_CONVERTERS = {
    bool: _to_bool,
    int: int,
    float: float,
    Path: Path,
    str: str,
    Optional[str]: lambda v: None if v is None else str(v),
    List[str]: _to_command,
}


def _coerce(name: str, value: Any) -> Any:
    """Привести значение к типу поля PluginSettings"""
    field_type = next(f.type for f in fields(PluginSettings) if f.name == name)
    try:
        return _CONVERTERS[field_type](value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for plugin setting {name}: {value!r}") from e


def _read_config_file(path: Path) -> Dict[str, Any]:
    """Прочитать YAML/JSON файл конфигурации"""
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValueError(f"Could not read plugin config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Plugin config file {path} must contain a mapping")
    # Допускаем вложенность под ключом "plugins"
    nested = data.get("plugins")
    return nested if isinstance(nested, dict) else data


def load_settings(
    config_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> PluginSettings:
    """
    Собрать настройки из файла, окружения и явных переопределений.

    Args:
        config_file: Путь к YAML/JSON файлу (по умолчанию PANEL_PLUGIN_CONFIG)
        environ: Окружение (по умолчанию os.environ)
        **overrides: Явные значения полей

    Returns:
        PluginSettings
    """
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(PluginSettings)}
    values: Dict[str, Any] = {}

    config_file = config_file or environ.get("PANEL_PLUGIN_CONFIG")
    if config_file:
        for key, value in _read_config_file(Path(config_file)).items():
            if key not in known:
                logger.warning(f"⚠️ Unknown plugin setting '{key}' in {config_file}")
                continue
            values[key] = _coerce(key, value)

    for env_name, key in ENV_MAPPING.items():
        if env_name in environ:
            values[key] = _coerce(key, environ[env_name])

    for key, value in overrides.items():
        if key not in known:
            raise ValueError(f"Unknown plugin setting: {key}")
        values[key] = value

    settings = PluginSettings(**values)
    logger.debug(f"Plugin settings loaded: plugins_dir={settings.plugins_dir}, dev_mode={settings.dev_mode}")
    return settings


__all__ = ["PluginSettings", "load_settings", "ENV_MAPPING"]
