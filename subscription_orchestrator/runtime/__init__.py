from .bootstrap import bootstrap_dependencies, close_all, describe_settings, wait_with_stop
from .logging import setup_logger
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "bootstrap_dependencies",
    "close_all",
    "describe_settings",
    "setup_logger",
    "wait_with_stop",
]
