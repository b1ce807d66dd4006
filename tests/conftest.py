import json
import sys
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from packaging.requirements import Requirement
from packaging.utils import canonicalize_name

from panel_plugins.archive_handler import ArchiveHandler
from panel_plugins.config import PluginSettings
from panel_plugins.db import create_db_engine, create_session_factory
from panel_plugins.dependencies import DependencyReconciler
from panel_plugins.errors import AssetBuildError
from panel_plugins.fetcher import ArchiveFetcher
from panel_plugins.installer import PackageManagerResult
from panel_plugins.isolation import PluginExceptionHandler
from panel_plugins.lifecycle import PluginLifecycleManager
from panel_plugins.registry import PluginRegistry


# ============= Fakes =============

class FakePackageManager:
    def __init__(self, events: List[str], installed: Optional[Dict[str, str]] = None):
        self.events = events
        self._installed = dict(installed or {})
        self.added: List[str] = []
        self.removed: List[str] = []
        self.fail_add = False
        self.fail_remove = False

    @staticmethod
    def _pick_version(requirement: Requirement) -> str:
        for spec in requirement.specifier:
            if spec.operator in ("==", "===", ">=", "~="):
                return spec.version
        return "99.0"

    def add(self, requirements: List[str]) -> PackageManagerResult:
        self.events.append("add:" + ",".join(requirements))
        if self.fail_add:
            return PackageManagerResult(success=False, error="resolution failed")
        for line in requirements:
            requirement = Requirement(line)
            self._installed[canonicalize_name(requirement.name)] = self._pick_version(requirement)
        self.added.extend(requirements)
        return PackageManagerResult(success=True)

    def remove(self, names: List[str]) -> PackageManagerResult:
        self.events.append("remove:" + ",".join(names))
        if self.fail_remove:
            return PackageManagerResult(success=False, error="uninstall failed")
        for name in names:
            self._installed.pop(canonicalize_name(name), None)
        self.removed.extend(names)
        return PackageManagerResult(success=True)

    def installed(self) -> Dict[str, str]:
        return dict(self._installed)


class FakeMigrationRunner:
    def __init__(self, events: List[str]):
        self.events = events
        self.result = True
        self.error: Optional[Exception] = None

    def run(self, plugin_id: str, path: Path) -> bool:
        self.events.append(f"migrate:{plugin_id}")
        if self.error:
            raise self.error
        return self.result

    def rollback(self, plugin_id: str, path: Path) -> bool:
        self.events.append(f"rollback:{plugin_id}")
        return self.result


class FakeSeeder:
    def __init__(self, events: List[str]):
        self.events = events
        self.result = True

    def run(self, plugin_id: str, seeder: Path) -> bool:
        self.events.append(f"seed:{plugin_id}")
        return self.result


class FakeAssetBuilder:
    def __init__(self, events: List[str]):
        self.events = events
        self.fail = False

    def build(self) -> None:
        self.events.append("build")
        if self.fail:
            raise AssetBuildError("Could not build assets: yarn exited with 1")


# ============= Helpers =============

def plugin_manifest(plugin_id: str, **fields) -> Dict:
    data = {
        "id": plugin_id,
        "name": plugin_id.title(),
        "author": "Tester",
        "version": "1.0.0",
        "namespace": plugin_id.replace("-", "_"),
    }
    meta = fields.pop("meta", None)
    data.update(fields)
    if meta is not None:
        data["meta"] = meta
    return data


def make_plugin(plugins_dir: Path, plugin_id: str, **fields) -> Path:
    """Создать директорию плагина с plugin.json"""
    plugin_dir = plugins_dir / plugin_id
    plugin_dir.mkdir(parents=True, exist_ok=True)
    (plugin_dir / "plugin.json").write_text(json.dumps(plugin_manifest(plugin_id, **fields)))
    return plugin_dir


def read_meta(plugins_dir: Path, plugin_id: str) -> Dict:
    return json.loads((plugins_dir / plugin_id / "plugin.json").read_text()).get("meta", {})


def make_zip(path: Path, entries: Dict[str, object]) -> Path:
    """Собрать zip-архив; dict-значения записываются как JSON"""
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in entries.items():
            if isinstance(content, dict):
                content = json.dumps(content)
            zf.writestr(name, content)
    return path


def zip_bytes(tmp_path: Path, entries: Dict[str, object]) -> bytes:
    return make_zip(tmp_path / "payload.zip", entries).read_bytes()


# ============= Fixtures =============

@pytest.fixture
def settings(tmp_path):
    return PluginSettings(plugins_dir=tmp_path / "plugins", panel_version="1.0.0")


@pytest.fixture
def plugins_dir(settings):
    settings.plugins_dir.mkdir(parents=True, exist_ok=True)
    return settings.plugins_dir


@pytest.fixture
def registry(settings):
    engine = create_db_engine(settings.database_url)
    yield PluginRegistry(settings.plugins_dir, create_session_factory(engine))
    engine.dispose()


@pytest.fixture
def events():
    return []


@pytest.fixture
def package_manager(events):
    return FakePackageManager(events)


@pytest.fixture
def migrations(events):
    return FakeMigrationRunner(events)


@pytest.fixture
def seeder(events):
    return FakeSeeder(events)


@pytest.fixture
def assets(events):
    return FakeAssetBuilder(events)


@pytest.fixture
def make_lifecycle(settings, registry, package_manager, migrations, seeder, assets):
    def factory(dev_mode=False, http_client=None, update_checker=None):
        return PluginLifecycleManager(
            registry=registry,
            fetcher=ArchiveFetcher(settings, http_client=http_client),
            archive_handler=ArchiveHandler(
                settings.plugins_dir, settings.max_import_size, settings.max_extract_size
            ),
            reconciler=DependencyReconciler(registry, package_manager),
            migrations=migrations,
            seeder=seeder,
            assets=assets,
            exception_handler=PluginExceptionHandler(registry, dev_mode=dev_mode),
            panel_version=settings.panel_version,
            update_checker=update_checker,
        )
    return factory


@pytest.fixture
def clean_modules():
    """Удалить модули пакетов плагинов, зарегистрированные в тесте"""
    names: List[str] = []
    yield names
    for name in list(sys.modules):
        if any(name == n or name.startswith(n + ".") for n in names):
            del sys.modules[name]
