import itertools
import zipfile
from types import SimpleNamespace

import httpx
import pytest

from panel_plugins.config import PluginSettings
from panel_plugins.constants import DOWNLOAD_CHUNK_SIZE
from panel_plugins.errors import FetchFailedError
from panel_plugins import fetcher as fetcher_module
from panel_plugins.fetcher import ArchiveFetcher

API = "https://api.github.com/repos/acme/plugins/contents"
RAW = "https://raw.githubusercontent.com/acme/plugins/main"


def _fetcher(tmp_path, handler, **settings):
    settings = PluginSettings(plugins_dir=tmp_path / "plugins", **settings)
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ArchiveFetcher(settings, http_client=client)


def _file(path, size=None):
    name = path.rsplit("/", 1)[-1]
    return {"name": name, "path": path, "type": "file", "download_url": f"{RAW}/{path}", "size": size}


def _dir(path):
    return {"name": path.rsplit("/", 1)[-1], "path": path, "type": "dir", "download_url": None}


@pytest.mark.parametrize("url,expected", [
    ("https://github.com/acme/plugins/tree/main/demo", True),
    ("http://github.com/acme/plugins/tree/dev/nested/demo", True),
    ("https://github.com/acme/plugins", False),
    ("https://github.com/acme/plugins/blob/main/demo.zip", False),
    ("https://example.com/acme/plugins/tree/main/demo", False),
])
def test_github_tree_url_detection(url, expected):
    assert ArchiveFetcher.is_github_tree_url(url) is expected


def test_local_file(tmp_path):
    upload = tmp_path / "upload.tmp"
    upload.write_bytes(b"zip")
    fetcher = _fetcher(tmp_path, lambda request: httpx.Response(404))

    with fetcher.fetch(upload, "demo.zip") as archive:
        assert archive.path == upload
        assert archive.filename == "demo.zip"


def test_missing_local_file(tmp_path):
    fetcher = _fetcher(tmp_path, lambda request: httpx.Response(404))

    with pytest.raises(FetchFailedError):
        with fetcher.fetch(tmp_path / "missing.zip"):
            pass


def test_direct_download(tmp_path):
    fetcher = _fetcher(tmp_path, lambda request: httpx.Response(200, content=b"PK-data"))

    with fetcher.fetch("https://example.com/files/demo.zip") as archive:
        assert archive.filename == "demo.zip"
        assert archive.path.read_bytes() == b"PK-data"
        path = archive.path

    assert not path.exists()


def test_direct_download_over_declared_size(tmp_path):
    fetcher = _fetcher(tmp_path, lambda request: httpx.Response(200, content=b"x" * 2048), max_import_size=1024)

    with pytest.raises(FetchFailedError, match="exceeds maximum"):
        with fetcher.fetch("https://example.com/demo.zip"):
            pass


def test_streamed_download_aborts_at_budget(tmp_path):
    produced = []

    def body():
        for _ in range(10):
            produced.append(1)
            yield b"x" * DOWNLOAD_CHUNK_SIZE

    fetcher = _fetcher(
        tmp_path,
        lambda request: httpx.Response(200, content=body()),
        max_import_size=DOWNLOAD_CHUNK_SIZE + 100,
    )

    with pytest.raises(FetchFailedError, match="exceeds maximum"):
        with fetcher.fetch("https://example.com/demo.zip"):
            pass
    assert len(produced) < 10


def test_http_error_is_fetch_failure(tmp_path):
    fetcher = _fetcher(tmp_path, lambda request: httpx.Response(500))

    with pytest.raises(FetchFailedError, match="Could not download"):
        with fetcher.fetch("https://example.com/demo.zip"):
            pass


def test_unsupported_scheme(tmp_path):
    fetcher = _fetcher(tmp_path, lambda request: httpx.Response(200))

    with pytest.raises(FetchFailedError, match="Unsupported"):
        with fetcher.fetch_url("ftp://example.com/demo.zip"):
            pass


def test_github_folder_is_repacked_as_zip(tmp_path):
    def handler(request):
        url = str(request.url)
        if url.startswith(f"{API}/demo/src"):
            return httpx.Response(200, json=[_file("demo/src/__init__.py")])
        if url.startswith(f"{API}/demo"):
            assert request.url.params["ref"] == "main"
            return httpx.Response(200, json=[_file("demo/plugin.json"), _dir("demo/src")])
        if url == f"{RAW}/demo/plugin.json":
            return httpx.Response(200, content=b'{"id": "demo"}')
        if url == f"{RAW}/demo/src/__init__.py":
            return httpx.Response(200, content=b"VALUE = 1\n")
        return httpx.Response(404)

    fetcher = _fetcher(tmp_path, handler)

    with fetcher.fetch("https://github.com/acme/plugins/tree/main/demo") as archive:
        assert archive.filename == "demo.zip"
        with zipfile.ZipFile(archive.path) as zf:
            assert sorted(zf.namelist()) == ["demo/plugin.json", "demo/src/__init__.py"]
            assert zf.read("demo/src/__init__.py") == b"VALUE = 1\n"


def test_github_folder_stops_before_next_file_when_budget_exceeded(tmp_path):
    requested = []

    def handler(request):
        url = str(request.url)
        if url.startswith(API):
            return httpx.Response(200, json=[_file("demo/a.bin"), _file("demo/b.bin"), _file("demo/c.bin")])
        requested.append(url.rsplit("/", 1)[-1])
        return httpx.Response(200, content=b"x" * 6)

    fetcher = _fetcher(tmp_path, handler, max_import_size=10)

    with pytest.raises(FetchFailedError, match="exceeds maximum"):
        with fetcher.fetch("https://github.com/acme/plugins/tree/main/demo"):
            pass

    assert requested == ["a.bin", "b.bin"]


def test_github_download_url_must_be_on_raw_host(tmp_path):
    def handler(request):
        return httpx.Response(200, json=[{
            "name": "plugin.json",
            "path": "demo/plugin.json",
            "type": "file",
            "download_url": "https://evil.example.com/plugin.json",
        }])

    fetcher = _fetcher(tmp_path, handler)

    with pytest.raises(FetchFailedError, match="Invalid file download URL"):
        with fetcher.fetch("https://github.com/acme/plugins/tree/main/demo"):
            pass


def test_github_traversal_names_rejected(tmp_path):
    def handler(request):
        return httpx.Response(200, json=[{"name": "..", "path": "x", "type": "dir"}])

    fetcher = _fetcher(tmp_path, handler)

    with pytest.raises(FetchFailedError, match="path traversal"):
        with fetcher.fetch("https://github.com/acme/plugins/tree/main/demo"):
            pass


def test_github_folder_depth_limit(tmp_path):
    def handler(request):
        path = request.url.path.split("/contents/", 1)[1]
        return httpx.Response(200, json=[_dir(f"{path}/deeper")])

    fetcher = _fetcher(tmp_path, handler, max_folder_depth=3)

    with pytest.raises(FetchFailedError, match="deeper than 3"):
        with fetcher.fetch("https://github.com/acme/plugins/tree/main/demo"):
            pass


def test_github_api_error(tmp_path):
    fetcher = _fetcher(tmp_path, lambda request: httpx.Response(403, json={"message": "rate limited"}))

    with pytest.raises(FetchFailedError, match="GitHub"):
        with fetcher.fetch("https://github.com/acme/plugins/tree/main/demo"):
            pass


@pytest.mark.parametrize("path", ["/x/..%2Fescaped.zip", "/x/..%2F..%2Fescaped.zip", "/x/..%5Cescaped.zip"])
def test_url_filename_cannot_leave_temp_dir(tmp_path, path):
    fetcher = _fetcher(tmp_path, lambda request: httpx.Response(200, content=b"PK-data"))

    with fetcher.fetch(f"https://example.com{path}") as archive:
        assert archive.filename == "escaped.zip"
        assert archive.path.name == "download.zip"
        tmp_dir = archive.path.parent
        assert [p.name for p in tmp_dir.iterdir()] == ["download.zip"]
        assert not (tmp_dir.parent / "escaped.zip").exists()
        assert not (tmp_dir.parent.parent / "escaped.zip").exists()

    assert not tmp_dir.exists()


@pytest.mark.parametrize("path,expected", [
    ("/files/demo.zip", "demo.zip"),
    ("/files/my%20plugin.zip", "my plugin.zip"),
    ("/", "plugin.zip"),
    ("/files/..", "plugin.zip"),
])
def test_filename_from_url(path, expected):
    assert ArchiveFetcher.filename_from_url(path) == expected


def test_slow_download_hits_total_deadline(tmp_path, monkeypatch):
    clock = itertools.count(0, 25)
    monkeypatch.setattr(fetcher_module, "time", SimpleNamespace(monotonic=lambda: next(clock)))
    produced = []

    def body():
        for _ in range(10):
            produced.append(1)
            yield b"x" * DOWNLOAD_CHUNK_SIZE

    fetcher = _fetcher(tmp_path, lambda request: httpx.Response(200, content=body()), download_timeout=60)

    with pytest.raises(FetchFailedError, match="timed out"):
        with fetcher.fetch("https://example.com/demo.zip"):
            pass
    assert len(produced) < 10


def test_github_folder_walk_hits_total_deadline(tmp_path, monkeypatch):
    clock = itertools.count(0, 40)
    monkeypatch.setattr(fetcher_module, "time", SimpleNamespace(monotonic=lambda: next(clock)))
    requested = []

    def handler(request):
        path = request.url.path.split("/contents/", 1)[1]
        requested.append(path)
        return httpx.Response(200, json=[_dir(f"{path}/deeper")])

    fetcher = _fetcher(tmp_path, handler, download_timeout=60)

    with pytest.raises(FetchFailedError, match="timed out"):
        with fetcher.fetch("https://github.com/acme/plugins/tree/main/demo"):
            pass
    assert requested == ["demo"]
