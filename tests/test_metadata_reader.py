import json

import pytest

from conftest import plugin_manifest
from panel_plugins.errors import InvalidBundleError
from panel_plugins.metadata_reader import PluginMetadataReader
from panel_plugins.models import PluginCategory, PluginStatus


def _write(tmp_path, data):
    path = tmp_path / "plugin.json"
    path.write_text(json.dumps(data) if isinstance(data, dict) else data)
    return path


def test_read_metadata(tmp_path):
    path = _write(tmp_path, plugin_manifest(
        "demo",
        category="theme",
        panels="admin, app",
        packages='{"foo": ">=1.0"}',
        meta={"status": "enabled", "load_order": 2},
        **{"class": "plugin:Demo"},
    ))

    metadata = PluginMetadataReader.read_metadata(path)

    assert metadata.category == PluginCategory.THEME
    assert metadata.class_name == "plugin:Demo"
    assert metadata.panels == ["admin", "app"]
    assert metadata.packages == {"foo": ">=1.0"}
    assert metadata.meta.status == PluginStatus.ENABLED
    assert metadata.meta.load_order == 2


@pytest.mark.parametrize("content", [
    "{broken",
    "[1, 2]",
    json.dumps({"id": "demo", "name": "Demo"}),
    json.dumps(plugin_manifest("../escape")),
    json.dumps(plugin_manifest("demo", namespace="not-importable")),
])
def test_invalid_metadata(tmp_path, content):
    with pytest.raises(InvalidBundleError):
        PluginMetadataReader.read_metadata(_write(tmp_path, content))


def test_missing_file(tmp_path):
    with pytest.raises(InvalidBundleError, match="not found"):
        PluginMetadataReader.read_metadata(tmp_path / "plugin.json")


def test_merge_meta_is_atomic_rewrite(tmp_path):
    path = _write(tmp_path, plugin_manifest("demo", extra_field={"kept": True}))

    meta = PluginMetadataReader.merge_meta(path, {"status": PluginStatus.ERRORED, "status_message": "boom"})

    assert meta == {"status": "errored", "status_message": "boom"}
    data = json.loads(path.read_text())
    assert data["extra_field"] == {"kept": True}
    assert data["meta"] == meta
    assert [p.name for p in tmp_path.iterdir()] == ["plugin.json"]
