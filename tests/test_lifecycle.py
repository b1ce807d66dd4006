import httpx
import pytest

from conftest import make_plugin, make_zip, plugin_manifest, read_meta, zip_bytes
from panel_plugins.errors import MigrationError, PluginNotFoundError
from panel_plugins.models import PluginStatus
from panel_plugins.updates import UpdateChecker


def _with_migrations(plugin_dir):
    (plugin_dir / "database" / "migrations").mkdir(parents=True)
    return plugin_dir


def test_install_runs_steps_in_order(make_lifecycle, registry, plugins_dir, events):
    plugin_dir = make_plugin(plugins_dir, "demo", packages={"foo": ">=1.0"})
    _with_migrations(plugin_dir)
    seeder = plugin_dir / "database" / "seeders" / "seeder.py"
    seeder.parent.mkdir(parents=True)
    seeder.write_text("def run(session):\n    pass\n")
    registry.sync()

    assert make_lifecycle().install_plugin("demo")

    assert events == ["add:foo>=1.0", "build", "migrate:demo", "seed:demo"]
    assert registry.get("demo").status == PluginStatus.ENABLED.value
    assert read_meta(plugins_dir, "demo")["status"] == "enabled"


def test_install_without_enable_leaves_plugin_disabled(make_lifecycle, registry, plugins_dir):
    make_plugin(plugins_dir, "demo")
    registry.sync()

    assert make_lifecycle().install_plugin("demo", enable=False)

    assert registry.get("demo").status == PluginStatus.DISABLED.value


def test_install_unknown_plugin(make_lifecycle):
    with pytest.raises(PluginNotFoundError):
        make_lifecycle().install_plugin("ghost")


def test_install_failure_is_recorded(make_lifecycle, registry, plugins_dir, migrations, events):
    _with_migrations(make_plugin(plugins_dir, "demo"))
    registry.sync()
    migrations.result = False

    assert make_lifecycle().install_plugin("demo") is False

    plugin = registry.get("demo")
    assert plugin.status == PluginStatus.ERRORED.value
    assert plugin.status_message == "Could not run migrations for plugin 'demo'"
    assert "seed:demo" not in events


def test_install_failure_propagates_in_dev_mode(make_lifecycle, registry, plugins_dir, migrations):
    _with_migrations(make_plugin(plugins_dir, "demo"))
    registry.sync()
    migrations.result = False

    with pytest.raises(MigrationError):
        make_lifecycle(dev_mode=True).install_plugin("demo")


def test_asset_build_failure_stops_install(make_lifecycle, registry, plugins_dir, assets, events):
    _with_migrations(make_plugin(plugins_dir, "demo"))
    registry.sync()
    assets.fail = True

    assert make_lifecycle().install_plugin("demo") is False

    assert "migrate:demo" not in events
    assert "Could not build assets" in registry.get("demo").status_message


def test_declared_seeder_must_exist(make_lifecycle, registry, plugins_dir):
    make_plugin(plugins_dir, "demo", seeder="database/seeders/missing.py")
    registry.sync()

    assert make_lifecycle().install_plugin("demo") is False
    assert "missing.py" in registry.get("demo").status_message


def test_incompatible_plugin_is_not_installed(make_lifecycle, registry, plugins_dir, events):
    make_plugin(plugins_dir, "demo", panel_version="^9.9.9")
    registry.sync()

    assert make_lifecycle().install_plugin("demo") is False

    plugin = registry.get("demo")
    assert plugin.status == PluginStatus.INCOMPATIBLE.value
    assert plugin.status_message == (
        "This Plugin is only compatible with Panel version 9.9.9 or newer but you are using version 1.0.0!"
    )
    assert events == []


def test_install_all_isolates_failures(make_lifecycle, registry, plugins_dir, migrations):
    _with_migrations(make_plugin(plugins_dir, "broken", meta={"load_order": 0}))
    make_plugin(plugins_dir, "fine", meta={"load_order": 1})
    make_plugin(plugins_dir, "done", meta={"status": "disabled"})
    registry.sync()
    migrations.result = False

    results = make_lifecycle().install_all()

    assert results == {"broken": False, "fine": True}
    assert registry.get("fine").status == PluginStatus.DISABLED.value
    assert registry.get("broken").status == PluginStatus.ERRORED.value


def test_uninstall_rolls_back_and_resets_status(make_lifecycle, registry, plugins_dir, events):
    _with_migrations(make_plugin(plugins_dir, "demo", meta={"status": "enabled"}))
    registry.sync()

    assert make_lifecycle().uninstall_plugin("demo")

    assert events == ["rollback:demo", "build"]
    assert registry.get("demo").status == PluginStatus.NOT_INSTALLED.value


def test_uninstall_with_delete(make_lifecycle, registry, plugins_dir):
    make_plugin(plugins_dir, "demo", meta={"status": "enabled"})
    registry.sync()

    assert make_lifecycle().uninstall_plugin("demo", delete_files=True)

    assert registry.get("demo") is None
    assert not (plugins_dir / "demo").exists()


def test_enable_and_disable(make_lifecycle, registry, plugins_dir):
    make_plugin(plugins_dir, "demo", meta={"status": "disabled"})
    registry.sync()
    lifecycle = make_lifecycle()

    assert lifecycle.enable_plugin("demo")
    assert registry.get("demo").status == PluginStatus.ENABLED.value

    assert lifecycle.disable_plugin("demo")
    assert registry.get("demo").status == PluginStatus.DISABLED.value


def test_download_from_file_registers_new_plugin(make_lifecycle, registry, tmp_path):
    upload = make_zip(tmp_path / "upload.tmp", {
        "plugin.json": plugin_manifest("demo", meta={"status": "enabled", "status_message": "stale"}),
    })

    plugin = make_lifecycle().download_plugin_from_file(upload, "demo.zip")

    assert plugin.id == "demo"
    assert plugin.status == PluginStatus.NOT_INSTALLED.value
    assert plugin.status_message is None
    assert registry.get("demo") is not None


def _update_transport(tmp_path, download):
    def handler(request):
        if request.url.path == "/updates.json":
            return httpx.Response(200, json={"*": {"version": "2.0.0", "download_url": "https://example.com/demo.zip"}})
        return download(request)
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_update_keeps_status_when_download_fails(make_lifecycle, registry, plugins_dir, tmp_path, events):
    make_plugin(plugins_dir, "demo", update_url="https://example.com/updates.json", meta={"status": "enabled"})
    registry.sync()
    client = _update_transport(tmp_path, lambda request: httpx.Response(500))
    lifecycle = make_lifecycle(http_client=client, update_checker=UpdateChecker("1.0.0", http_client=client))

    assert lifecycle.update_plugin("demo") is False

    plugin = registry.get("demo")
    assert plugin.status == PluginStatus.ENABLED.value
    assert plugin.version == "1.0.0"
    assert events == []


def test_update_replaces_files_and_keeps_status(make_lifecycle, registry, plugins_dir, tmp_path):
    stale = make_plugin(
        plugins_dir, "demo", update_url="https://example.com/updates.json",
        meta={"status": "enabled", "load_order": 7},
    ) / "stale.py"
    stale.write_text("old")
    registry.sync()
    payload = zip_bytes(tmp_path, {
        "demo/plugin.json": plugin_manifest("demo", version="2.0.0", update_url="https://example.com/updates.json"),
    })
    client = _update_transport(tmp_path, lambda request: httpx.Response(200, content=payload))
    checker = UpdateChecker("1.0.0", http_client=client)
    lifecycle = make_lifecycle(http_client=client, update_checker=checker)

    assert checker.is_update_available(registry.get("demo"))
    assert lifecycle.update_plugin("demo")

    plugin = registry.get("demo")
    assert plugin.version == "2.0.0"
    assert plugin.status == PluginStatus.ENABLED.value
    assert plugin.load_order == 7
    assert not stale.exists()
