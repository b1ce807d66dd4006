"""
Модуль для проверки и распаковки архивов плагинов (ZIP)
"""

import logging
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import List, Optional

from .constants import PLUGIN_METADATA_FILE, STAGING_PREFIX
from .errors import InvalidBundleError
from .fetcher import LocalArchive
from .metadata_reader import PluginMetadataReader

logger = logging.getLogger(__name__)


class ArchiveHandler:
    """Проверка и распаковка архивов плагинов"""

    def __init__(self, plugins_dir: Path, max_import_size: int, max_extract_size: int):
        """
        Args:
            plugins_dir: Общая директория плагинов
            max_import_size: Максимальный размер архива (байты)
            max_extract_size: Максимальный суммарный размер файлов после распаковки (байты)
        """
        self.plugins_dir = Path(plugins_dir)
        self.max_import_size = max_import_size
        self.max_extract_size = max_extract_size

    @staticmethod
    def plugin_name_from_filename(filename: str) -> str:
        """Имя плагина - часть имени файла до '.zip'"""
        name = filename.split(".zip", 1)[0]
        if not name or name in (".", "..") or "/" in name or "\\" in name or ".." in name:
            raise InvalidBundleError(f"Invalid plugin archive name: {filename!r}")
        return name

    @staticmethod
    def is_unsafe_path(name: str) -> bool:
        """Запись содержит '..' или является абсолютным путем"""
        return ".." in name or name.startswith(("/", "\\")) or os.path.isabs(name) or (
            len(name) > 1 and name[1] == ":"
        )

    def validate(self, zf: zipfile.ZipFile) -> List[zipfile.ZipInfo]:
        """
        Проверить все записи архива до распаковки.

        Raises:
            InvalidBundleError: при обходе путей или превышении размера
        """
        infos = zf.infolist()
        for info in infos:
            if self.is_unsafe_path(info.filename):
                raise InvalidBundleError("Zip file contains invalid path traversal sequences.")

        uncompressed = sum(info.file_size for info in infos)
        if uncompressed > self.max_extract_size:
            max_mib = round(self.max_extract_size / (1024 * 1024), 2)
            raise InvalidBundleError(f"Zip file expands beyond the maximum of {max_mib} MiB.")
        return infos

    def extract(
        self,
        archive: LocalArchive,
        clean_download: bool = False,
        plugin_name: Optional[str] = None,
    ) -> Path:
        """
        Распаковать архив плагина в директорию плагинов.

        Если архив уже содержит '<plugin>/plugin.json', он распаковывается в корень
        директории плагинов, иначе - в директорию '<plugin>'. Распаковка идет во
        временную директорию и переносится на место только после успеха.

        Args:
            archive: Локальный архив
            clean_download: Удалить существующую директорию плагина перед переносом
            plugin_name: Имя плагина (по умолчанию берется из имени файла архива)

        Returns:
            Путь к директории плагина
        """
        size = archive.path.stat().st_size
        if size > self.max_import_size:
            max_mib = round(self.max_import_size / (1024 * 1024), 2)
            raise InvalidBundleError(f"Zip file too large. ({max_mib} MiB)")

        plugin_name = plugin_name or self.plugin_name_from_filename(archive.filename)
        destination = self.plugins_dir / plugin_name

        self.plugins_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=self.plugins_dir))
        try:
            try:
                zf = zipfile.ZipFile(archive.path, "r")
            except (zipfile.BadZipFile, OSError) as e:
                raise InvalidBundleError(f"Could not open zip file: {e}") from e

            with zf:
                infos = self.validate(zf)
                nested = f"{plugin_name}/{PLUGIN_METADATA_FILE}" in zf.namelist()
                try:
                    zf.extractall(staging, members=infos)
                except (zipfile.BadZipFile, OSError, RuntimeError) as e:
                    raise InvalidBundleError(f"Could not extract zip file: {e}") from e

            staged_plugin = staging / plugin_name if nested else staging
            if nested:
                extra = [p.name for p in staging.iterdir() if p.name != plugin_name]
                if extra:
                    logger.warning(f"⚠️ Ignoring top-level entries outside {plugin_name}/: {extra}")
            if not (staged_plugin / PLUGIN_METADATA_FILE).is_file():
                raise InvalidBundleError(f"Zip file does not contain {PLUGIN_METADATA_FILE}.")

            metadata = PluginMetadataReader.read_metadata(staged_plugin / PLUGIN_METADATA_FILE)
            if metadata.id != plugin_name:
                raise InvalidBundleError(
                    f"Plugin id '{metadata.id}' does not match the bundle name '{plugin_name}'"
                )

            if clean_download and destination.exists():
                logger.info(f"🧹 Removing previous files of plugin {plugin_name}")
                shutil.rmtree(destination)

            if destination.exists():
                shutil.copytree(staged_plugin, destination, dirs_exist_ok=True)
            else:
                os.replace(staged_plugin, destination)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"📦 Extracted plugin {plugin_name} to {destination}")
        return destination


__all__ = ["ArchiveHandler"]
