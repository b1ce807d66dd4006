"""
Изоляция ошибок плагинов.

В обычном режиме ошибка плагина логируется и записывается в его статус,
чтобы один сломанный плагин не останавливал обработку остальных.
В режиме разработчика исключение пробрасывается вызывающему коду.
"""
import logging

from .models import PluginStatus
from .registry import PluginRegistry

logger = logging.getLogger(__name__)


class PluginExceptionHandler:
    """Общая политика обработки ошибок для всех операций над плагинами"""

    def __init__(self, registry: PluginRegistry, dev_mode: bool = False):
        self.registry = registry
        self.dev_mode = dev_mode

    def report(self, exception: Exception, context: str = "") -> None:
        """Залогировать ошибку (или пробросить в режиме разработчика)"""
        if self.dev_mode:
            raise exception
        prefix = f"{context}: " if context else ""
        logger.error(f"❌ {prefix}{exception}", exc_info=exception)

    def handle(self, plugin_id: str, exception: Exception) -> None:
        """
        Обработать ошибку операции над плагином.

        Должен вызываться из блока except.
        """
        self.report(exception, f"Plugin {plugin_id} failed")
        self.registry.set_status(plugin_id, PluginStatus.ERRORED, str(exception) or type(exception).__name__)


__all__ = ["PluginExceptionHandler"]
