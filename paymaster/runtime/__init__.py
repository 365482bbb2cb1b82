from .logging import setup_logger
from .server import build_app
from .service import RelayService, bootstrap_dependencies, build_service, serve
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "RelayService",
    "bootstrap_dependencies",
    "build_app",
    "build_service",
    "serve",
    "setup_logger",
]
