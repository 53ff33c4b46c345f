from .logging import JsonFormatter, setup_logger
from .settings import AppSettings, to_bool, to_float, to_int

__all__ = [
    "AppSettings",
    "JsonFormatter",
    "setup_logger",
    "to_bool",
    "to_float",
    "to_int",
]
