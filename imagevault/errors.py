class ImageVaultError(Exception):
    pass


class StorageError(ImageVaultError):
    """I/O failure or constraint violation in the underlying database."""


class MigrationFailure(StorageError):
    def __init__(self, version, cause=None):
        self.version = version
        self.cause = cause
        msg = f"schema migration v{version} failed"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)


class IndexingWarning(UserWarning):
    """Prompt could not be parsed as structured data; attributes were skipped."""
