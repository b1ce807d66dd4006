"""
Внешние коллабораторы жизненного цикла: миграции, сидеры, сборка фронтенда.

Оркестратор зависит только от протоколов ниже; реализации по умолчанию
используют alembic, importlib и subprocess.
"""
import importlib.util
import logging
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Protocol

from alembic import command
from alembic.config import Config
from sqlalchemy.orm import sessionmaker

from .constants import ASSET_BUILD_TIMEOUT, ASSET_INSTALL_TIMEOUT
from .db import session_scope
from .errors import AssetBuildError

logger = logging.getLogger(__name__)


class MigrationRunner(Protocol):
    def run(self, plugin_id: str, path: Path) -> bool: ...

    def rollback(self, plugin_id: str, path: Path) -> bool: ...


class SeederRunner(Protocol):
    def run(self, plugin_id: str, seeder: Path) -> bool: ...


class AssetBuilder(Protocol):
    def build(self) -> None: ...


class AlembicMigrationRunner:
    """
    Миграции плагина - это каталог скриптов alembic (database/migrations).

    Каждый плагин ведет собственную таблицу версий alembic_version_<id>;
    env.py плагина читает её из опции version_table.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url

    def _config(self, plugin_id: str, path: Path) -> Config:
        cfg = Config()
        cfg.set_main_option("script_location", str(path))
        cfg.set_main_option("sqlalchemy.url", self.database_url.replace("%", "%%"))
        cfg.set_main_option("version_table", f"alembic_version_{plugin_id}".replace("-", "_"))
        return cfg

    def run(self, plugin_id: str, path: Path) -> bool:
        try:
            command.upgrade(self._config(plugin_id, path), "head")
        except Exception as e:
            logger.error(f"❌ Migrations failed for plugin {plugin_id}: {e}", exc_info=True)
            return False
        logger.info(f"✅ Migrations applied for plugin {plugin_id}")
        return True

    def rollback(self, plugin_id: str, path: Path) -> bool:
        try:
            command.downgrade(self._config(plugin_id, path), "base")
        except Exception as e:
            logger.error(f"❌ Migration rollback failed for plugin {plugin_id}: {e}", exc_info=True)
            return False
        logger.info(f"✅ Migrations rolled back for plugin {plugin_id}")
        return True


class ModuleSeederRunner:
    """Загружает файл сидера плагина и вызывает run(session)"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def run(self, plugin_id: str, seeder: Path) -> bool:
        module_name = f"panel_plugin_seeders.{plugin_id.replace('-', '_')}"
        try:
            spec = importlib.util.spec_from_file_location(module_name, seeder)
            if spec is None or spec.loader is None:
                logger.error(f"❌ Could not load seeder {seeder} for plugin {plugin_id}")
                return False
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)

            run = getattr(module, "run", None)
            if not callable(run):
                logger.error(f"❌ Seeder {seeder} of plugin {plugin_id} has no run(session) function")
                return False

            with session_scope(self.session_factory) as session:
                run(session)
        except Exception as e:
            logger.error(f"❌ Seeder failed for plugin {plugin_id}: {e}", exc_info=True)
            return False
        finally:
            sys.modules.pop(module_name, None)

        logger.info(f"✅ Seeder executed for plugin {plugin_id}")
        return True


class CommandAssetBuilder:
    """Установка зависимостей и сборка фронтенда двумя внешними командами"""

    def __init__(
        self,
        cwd: Path,
        install_cmd: Optional[List[str]] = None,
        build_cmd: Optional[List[str]] = None,
        install_timeout: int = ASSET_INSTALL_TIMEOUT,
        build_timeout: int = ASSET_BUILD_TIMEOUT,
    ):
        self.cwd = cwd
        self.install_cmd = install_cmd or ["yarn", "install"]
        self.build_cmd = build_cmd or ["yarn", "build"]
        self.install_timeout = install_timeout
        self.build_timeout = build_timeout

    def _run(self, cmd: List[str], timeout: int, failure: str) -> None:
        try:
            result = subprocess.run(cmd, cwd=self.cwd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise AssetBuildError(f"{failure}: timed out after {timeout} seconds") from e
        except OSError as e:
            raise AssetBuildError(f"{failure}: {e}") from e
        if result.returncode != 0:
            raise AssetBuildError(f"{failure}: {result.stderr}")

    def build(self) -> None:
        """
        Raises:
            AssetBuildError: если любая из команд завершилась с ошибкой
        """
        logger.info("🔨 Building front-end assets")
        self._run(self.install_cmd, self.install_timeout, "Could not install dependencies")
        self._run(self.build_cmd, self.build_timeout, "Could not build assets")
        logger.info("✅ Front-end assets built")


__all__ = [
    "MigrationRunner",
    "SeederRunner",
    "AssetBuilder",
    "AlembicMigrationRunner",
    "ModuleSeederRunner",
    "CommandAssetBuilder",
]
