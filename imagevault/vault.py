import logging

from .attributes import AttributeIndexer
from .database import SqliteDatabase
from .images import ImageStore
from .integrity import IntegrityReconciler
from .paths import get_db_path, get_images_dir
from .schema import SchemaManager
from .search import SearchEngine

logger = logging.getLogger("ImageVault")


class ImageVault:
    """The image metadata store, built once at startup and handed to its users.

    ``open()`` runs the schema migrations before any component is usable; a
    ``MigrationFailure`` there leaves the vault closed.
    """

    def __init__(self, db_path=None, images_dir=None, db=None):
        self.db_path = db_path or get_db_path()
        self.images_dir = images_dir or get_images_dir()
        self.db = db or SqliteDatabase(self.db_path)
        self.schema = SchemaManager(self.db)
        self.attributes = AttributeIndexer(self.db)
        self.images = ImageStore(self.db, self.attributes)
        self.search_engine = SearchEngine(self.db)
        self.integrity = IntegrityReconciler(self.images, self.schema, self.images_dir)
        self._opened = False

    async def open(self):
        if self._opened:
            return self
        await self.db.open()
        try:
            await self.schema.ensure_schema()
        except Exception:
            await self.db.close()
            raise
        self._opened = True
        return self

    async def close(self):
        await self.db.close()
        self._opened = False

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def startup(self):
        """Legacy import followed by a filesystem reconciliation sweep."""
        try:
            legacy = await self.integrity.import_legacy()
            integrity = await self.integrity.check_integrity()
        except Exception:
            logger.exception("Startup checks failed")
            raise
        return {"legacy_import": legacy, "integrity": integrity}

    # Collaborator-facing surface.

    async def create(self, payload):
        return await self.images.create(payload)

    async def get(self, image_id):
        return await self.images.get(image_id)

    async def list(self, include_deleted=False, pagination=None):
        return await self.images.list(include_deleted, pagination)

    async def search(self, query, include_deleted=False, pagination=None):
        return await self.search_engine.search(query, include_deleted, pagination)

    async def soft_delete(self, image_id):
        return await self.images.soft_delete(image_id)

    async def restore(self, image_id):
        return await self.images.restore(image_id)

    async def hard_delete(self, image_id):
        return await self.images.hard_delete(image_id)

    async def bulk_soft_delete(self, ids):
        return await self.images.bulk_soft_delete(ids)

    async def toggle_favorite(self, image_id):
        return await self.images.toggle_favorite(image_id)

    async def reconcile(self, fs_ids):
        return await self.integrity.reconcile(fs_ids)
