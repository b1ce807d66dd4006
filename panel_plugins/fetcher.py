"""
Модуль для получения архивов плагинов.

Источники:
- локальный (загруженный) файл
- прямая HTTP(S) ссылка на zip-архив
- ссылка на папку GitHub (https://github.com/<owner>/<repo>/tree/<branch>/<path>)

Все источники приводятся к одному локальному zip-архиву.
"""

import logging
import tempfile
import time
import zipfile
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional, Union
from urllib.parse import quote, unquote, urlparse

import httpx

from .config import PluginSettings
from .constants import DOWNLOAD_ARCHIVE_NAME, DOWNLOAD_CHUNK_SIZE, GITHUB_TREE_URL_PATTERN
from .errors import FetchFailedError

logger = logging.getLogger(__name__)


@dataclass
class LocalArchive:
    """Локальный архив плагина и его исходное имя файла"""
    path: Path
    filename: str


class _ByteBudget:
    """Общий счетчик скачанных байт с жестким лимитом"""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self.total = 0

    def check(self, size: int) -> None:
        if self.total + size > self.max_bytes:
            max_mib = round(self.max_bytes / (1024 * 1024), 2)
            raise FetchFailedError(f"Total download size exceeds maximum allowed size of {max_mib} MiB")

    def consume(self, size: int) -> None:
        self.check(size)
        self.total += size


class _Deadline:
    """Общий лимит времени на загрузку (таймауты httpx действуют на одну операцию чтения)"""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def check(self) -> None:
        if time.monotonic() > self.expires_at:
            raise FetchFailedError(f"Download timed out after {self.seconds} seconds")


class ArchiveFetcher:
    """Получатель архивов плагинов"""

    def __init__(self, settings: PluginSettings, http_client: Optional[httpx.Client] = None):
        """
        Args:
            settings: Настройки (лимиты, таймауты, адреса GitHub)
            http_client: Готовый httpx.Client (если None, создается на каждую загрузку)
        """
        self.settings = settings
        self._http_client = http_client

    @staticmethod
    def is_github_tree_url(url: str) -> bool:
        return bool(GITHUB_TREE_URL_PATTERN.match(url))

    @contextmanager
    def fetch(self, source: Union[str, Path], filename: Optional[str] = None) -> Iterator[LocalArchive]:
        """
        Получить архив из любого поддерживаемого источника.

        Временные файлы удаляются при выходе из контекста.

        Args:
            source: Путь к файлу или URL
            filename: Исходное имя загруженного файла (для локальных файлов)

        Yields:
            LocalArchive
        """
        if isinstance(source, Path) or "://" not in source:
            yield self._local(Path(source), filename)
        elif self.is_github_tree_url(source):
            with self.fetch_github_folder(source) as archive:
                yield archive
        else:
            with self.fetch_url(source) as archive:
                yield archive

    def _local(self, path: Path, filename: Optional[str]) -> LocalArchive:
        if not path.is_file():
            raise FetchFailedError(f"Uploaded file not found: {path}")
        return LocalArchive(path=path, filename=filename or path.name)

    @contextmanager
    def _client(self) -> Iterator[httpx.Client]:
        if self._http_client is not None:
            yield self._http_client
            return
        with httpx.Client(follow_redirects=True) as client:
            yield client

    def _stream_to_file(
        self,
        client: httpx.Client,
        url: str,
        target: Path,
        budget: _ByteBudget,
        deadline: _Deadline,
        timeout: httpx.Timeout,
    ) -> None:
        """Скачать url в target, прерываясь как только превышен бюджет или истек срок"""
        deadline.check()
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit():
                budget.check(int(declared))

            with open(target, "wb") as fh:
                for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                    deadline.check()
                    budget.consume(len(chunk))
                    fh.write(chunk)

    @staticmethod
    def filename_from_url(path: str) -> str:
        """Базовое имя файла из пути URL (без каталогов и '..')"""
        name = unquote(path).replace("\\", "/").rsplit("/", 1)[-1]
        if name in ("", ".", ".."):
            return "plugin.zip"
        return name

    @contextmanager
    def fetch_url(self, url: str) -> Iterator[LocalArchive]:
        """
        Скачать архив по прямой ссылке.

        Архив сохраняется под фиксированным именем во временной директории,
        имя из URL используется только как LocalArchive.filename.
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise FetchFailedError(f"Unsupported plugin URL: {url}")

        filename = self.filename_from_url(parsed.path)
        timeout = httpx.Timeout(self.settings.download_timeout, connect=self.settings.download_connect_timeout)

        with tempfile.TemporaryDirectory(prefix="plugin_fetch_") as tmp_dir:
            target = Path(tmp_dir) / DOWNLOAD_ARCHIVE_NAME
            logger.info(f"📦 Downloading plugin archive from {url}")
            try:
                with self._client() as client:
                    self._stream_to_file(
                        client,
                        url,
                        target,
                        _ByteBudget(self.settings.max_import_size),
                        _Deadline(self.settings.download_timeout),
                        timeout,
                    )
            except httpx.HTTPError as e:
                raise FetchFailedError(f"Could not download plugin from {url}: {e}") from e

            yield LocalArchive(path=target, filename=filename)

    @contextmanager
    def fetch_github_folder(self, url: str) -> Iterator[LocalArchive]:
        """Скачать папку GitHub по файлам и собрать из нее zip-архив"""
        match = GITHUB_TREE_URL_PATTERN.match(url)
        if not match:
            raise FetchFailedError("Invalid GitHub URL format.")

        owner, repo, branch, path = match.groups()
        path = path.strip("/")
        plugin_name = PurePosixPath(path).name
        if not plugin_name or plugin_name in (".", ".."):
            raise FetchFailedError("Invalid GitHub URL format.")

        with tempfile.TemporaryDirectory(prefix="plugin_fetch_") as tmp_dir:
            plugin_dir = Path(tmp_dir) / plugin_name
            plugin_dir.mkdir()

            logger.info(f"📦 Downloading plugin folder {owner}/{repo}@{branch}:{path}")
            try:
                with self._client() as client:
                    self._download_folder(client, owner, repo, branch, path, plugin_dir)
            except httpx.HTTPError as e:
                raise FetchFailedError(f"Could not download plugin from GitHub: {e}") from e

            zip_path = Path(tmp_dir) / f"{plugin_name}.zip"
            with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for file in sorted(plugin_dir.rglob("*")):
                    if file.is_file():
                        zf.write(file, f"{plugin_name}/{file.relative_to(plugin_dir).as_posix()}")

            yield LocalArchive(path=zip_path, filename=f"{plugin_name}.zip")

    def _download_folder(
        self,
        client: httpx.Client,
        owner: str,
        repo: str,
        branch: str,
        path: str,
        local_dir: Path,
    ) -> None:
        """
        Обойти папку через contents API.

        Обход итеративный, с ограничением глубины, общим бюджетом байт
        и общим сроком на все файлы и подпапки.
        """
        budget = _ByteBudget(self.settings.max_import_size)
        deadline = _Deadline(self.settings.download_timeout)
        timeout = httpx.Timeout(self.settings.folder_api_timeout, connect=self.settings.folder_api_connect_timeout)
        api_base = self.settings.github_api_url.rstrip("/")
        raw_prefix = self.settings.github_raw_url_prefix

        queue = deque([(path, local_dir, 0)])
        while queue:
            api_path, target_dir, depth = queue.popleft()
            deadline.check()
            if depth > self.settings.max_folder_depth:
                raise FetchFailedError(
                    f"GitHub folder is nested deeper than {self.settings.max_folder_depth} levels"
                )

            response = client.get(
                f"{api_base}/repos/{owner}/{repo}/contents/{quote(api_path, safe='/')}",
                params={"ref": branch},
                headers={"Accept": "application/vnd.github.v3+json"},
                timeout=timeout,
            )
            response.raise_for_status()
            try:
                contents = response.json()
            except ValueError as e:
                raise FetchFailedError("Invalid response from GitHub API.") from e

            if not isinstance(contents, list):
                raise FetchFailedError("Invalid response from GitHub API.")

            for item in contents:
                name = item.get("name") if isinstance(item, dict) else None
                if not isinstance(name, str) or not name or ".." in name or "/" in name or "\\" in name:
                    raise FetchFailedError("GitHub response contains invalid path traversal sequences.")

                item_path = target_dir / name
                item_type = item.get("type")

                if item_type == "file":
                    download_url = item.get("download_url")
                    if not isinstance(download_url, str) or not download_url.startswith(raw_prefix):
                        raise FetchFailedError("Invalid file download URL from GitHub API.")
                    self._stream_to_file(client, download_url, item_path, budget, deadline, timeout)
                elif item_type == "dir":
                    if not item.get("path"):
                        raise FetchFailedError("Invalid directory path in GitHub API response.")
                    item_path.mkdir(exist_ok=True)
                    queue.append((item["path"], item_path, depth + 1))
                else:
                    logger.debug(f"⏭️ Skipping GitHub entry {name} of type {item_type}")

        logger.debug(f"📦 Downloaded {budget.total} bytes from GitHub")


__all__ = ["ArchiveFetcher", "LocalArchive"]
