import httpx
import pytest

from conftest import make_plugin
from panel_plugins import bootstrap
from panel_plugins.bootstrap import create_plugin_service, get_plugin_service, init_plugin_service
from panel_plugins.config import PluginSettings
from panel_plugins.models import PluginStatus


def test_boot_syncs_and_loads(tmp_path):
    settings = PluginSettings(plugins_dir=tmp_path / "plugins", panel_version="1.0.0")
    make_plugin(settings.plugins_dir, "demo", meta={"status": "enabled"})
    make_plugin(settings.plugins_dir, "old", panel_version="0.9.0", meta={"status": "enabled"})

    service = create_plugin_service(settings, http_client=httpx.Client(transport=httpx.MockTransport(
        lambda request: httpx.Response(404)
    )))
    report = service.boot()

    assert report.loaded == ["demo"]
    assert report.incompatible == ["old"]
    assert service.registry.get("old").status == PluginStatus.INCOMPATIBLE.value
    assert service.lifecycle.is_dev_mode_active() is False


def test_global_service(tmp_path, monkeypatch):
    monkeypatch.setattr(bootstrap, "_plugin_service", None)

    with pytest.raises(RuntimeError):
        get_plugin_service()

    service = init_plugin_service(PluginSettings(plugins_dir=tmp_path / "plugins", dev_mode=True))

    assert get_plugin_service() is service
    assert service.lifecycle.is_dev_mode_active() is True
