from .logging import setup_logger
from .service import FillBotService, bootstrap_dependencies
from .settings import AppSettings, load_factory, parse_keypair

__all__ = [
    "AppSettings",
    "FillBotService",
    "bootstrap_dependencies",
    "load_factory",
    "parse_keypair",
    "setup_logger",
]
