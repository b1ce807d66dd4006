"""
Константы плагин-системы панели.
Централизованное хранение лимитов, таймаутов и шаблонов.
"""

import re

# ============= Files & Directories =============
PLUGIN_METADATA_FILE = "plugin.json"
PLUGIN_SOURCE_DIR = "src"
PLUGIN_LANG_DIR = "lang"
PLUGIN_CONFIG_DIR = "config"
PLUGIN_MIGRATIONS_DIR = ("database", "migrations")
PLUGIN_VIEWS_DIR = ("resources", "views")
PLUGIN_DEFAULT_SEEDER = ("database", "seeders", "seeder.py")
STAGING_PREFIX = ".staging-"
MANAGED_PACKAGES_FILE = ".managed-packages.json"  # Пакеты, установленные для плагинов (а не хостом)

DOWNLOAD_ARCHIVE_NAME = "download.zip"  # Имя скачанного архива во временной директории

# ============= Import Limits =============
DEFAULT_MAX_IMPORT_SIZE = 100 * 1024 * 1024  # Максимальный размер архива (байты)
DEFAULT_MAX_EXTRACT_SIZE = 500 * 1024 * 1024  # Максимальный размер после распаковки (байты)
DEFAULT_MAX_FOLDER_DEPTH = 32  # Максимальная глубина обхода папки на GitHub
DOWNLOAD_CHUNK_SIZE = 64 * 1024

# ============= HTTP Timeouts =============
DOWNLOAD_TIMEOUT = 60.0  # Общий таймаут скачивания архива или обхода папки (секунды)
DOWNLOAD_CONNECT_TIMEOUT = 5.0
FOLDER_API_TIMEOUT = 30.0  # Таймаут запросов к contents API (секунды)
FOLDER_API_CONNECT_TIMEOUT = 5.0
UPDATE_CHECK_TIMEOUT = 5.0  # Таймаут проверки обновлений (секунды)
UPDATE_CHECK_CONNECT_TIMEOUT = 1.0

# ============= Subprocess Timeouts =============
PACKAGE_MANAGER_TIMEOUT = 600  # pip install / uninstall (секунды)
ASSET_INSTALL_TIMEOUT = 300  # yarn install (секунды)
ASSET_BUILD_TIMEOUT = 600  # yarn build (секунды)

# ============= Cache =============
UPDATE_CACHE_TTL = 600  # TTL кэша обновлений (секунды)

# ============= Source Hosting =============
GITHUB_TREE_URL_PATTERN = re.compile(r"^https?://github\.com/([^/]+)/([^/]+)/tree/([^/]+)/(.+)$")
GITHUB_API_URL = "https://api.github.com"
GITHUB_RAW_URL_PREFIX = "https://raw.githubusercontent.com/"

# ============= Panel =============
DEFAULT_PANEL_VERSION = "canary"
CANARY_VERSION = "canary"
