import logging

from .constants import APP_NAME, SCHEMA_VERSION
from .errors import ImageVaultError, IndexingWarning, MigrationFailure, StorageError
from .vault import ImageVault

VERSION = "1.0.0"

logger = logging.getLogger("ImageVault")

_banner = f" {APP_NAME} Initialization "
logger.info("=" * 20 + _banner + "=" * 20)
logger.info(f"Package version: {VERSION}")
logger.info(f"Schema version: {SCHEMA_VERSION}")

__all__ = [
    "ImageVault",
    "ImageVaultError",
    "IndexingWarning",
    "MigrationFailure",
    "StorageError",
    "VERSION",
]
