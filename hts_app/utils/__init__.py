from .importer import is_importer_enabled, is_worker_enabled
from .logging_config import setup_logging

__all__ = ["is_importer_enabled", "is_worker_enabled", "setup_logging"]
