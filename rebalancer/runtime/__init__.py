from .cycle import run_cycle
from .logging import setup_logger
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "run_cycle",
    "setup_logger",
]
