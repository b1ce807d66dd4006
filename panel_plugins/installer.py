"""
Модуль для установки и удаления Python-пакетов плагинов через pip
"""

import json
import logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .constants import PACKAGE_MANAGER_TIMEOUT

logger = logging.getLogger(__name__)


@dataclass
class PackageManagerResult:
    """Результат пакетного вызова менеджера пакетов"""
    success: bool
    output: str = ""
    error: str = ""


class PipPackageManager:
    """Пакетные вызовы pip: один процесс на всю операцию"""

    def __init__(
        self,
        python: str = sys.executable,
        cwd: Optional[Path] = None,
        timeout: int = PACKAGE_MANAGER_TIMEOUT,
    ):
        self.python = python
        self.cwd = cwd
        self.timeout = timeout

    def _run(self, args: List[str]) -> PackageManagerResult:
        cmd = [self.python, "-m", "pip", *args]
        logger.debug(f"📦 Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"❌ pip timed out after {self.timeout}s: {' '.join(args)}")
            return PackageManagerResult(success=False, error=f"pip timed out after {self.timeout} seconds")
        except OSError as e:
            logger.error(f"❌ Could not start pip: {e}")
            return PackageManagerResult(success=False, error=str(e))

        if result.returncode != 0:
            if result.stdout:
                logger.debug(f"📦 Pip stdout: {result.stdout[:500]}")
            return PackageManagerResult(success=False, output=result.stdout, error=result.stderr)
        return PackageManagerResult(success=True, output=result.stdout)

    def add(self, requirements: List[str]) -> PackageManagerResult:
        """
        Установить пакеты одним вызовом.

        Args:
            requirements: Строки требований ('name>=1.0', 'name')
        """
        return self._run(["install", "--no-warn-script-location", "--no-input", *requirements])

    def remove(self, names: List[str]) -> PackageManagerResult:
        """Удалить пакеты одним вызовом"""
        return self._run(["uninstall", "--yes", *names])

    def installed(self) -> Dict[str, str]:
        """
        Установленные пакеты {name: version}.

        Пустой словарь, если pip не смог отдать список.
        """
        result = self._run(["list", "--format=json", "--disable-pip-version-check"])
        if not result.success:
            logger.warning(f"⚠️ Could not list installed packages: {result.error}")
            return {}
        try:
            return {item["name"]: item["version"] for item in json.loads(result.output or "[]")}
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"⚠️ Could not parse pip list output: {e}")
            return {}


__all__ = ["PackageManagerResult", "PipPackageManager"]
