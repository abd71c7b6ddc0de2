"""
Модуль конфигурации репозитория сертификатов.
"""

from .settings import get_settings, Settings, configure_logging

__version__ = "1.0.0"

__all__ = ['get_settings', 'Settings', 'configure_logging']
