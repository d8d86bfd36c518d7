import logging

from .constants import SCHEMA_VERSION
from .errors import MigrationFailure
from .utils import now_iso

logger = logging.getLogger("ImageVault")

META_SQL = """
CREATE TABLE IF NOT EXISTS _meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
)
"""

FTS_INSERT_TRIGGER = """
CREATE TRIGGER IF NOT EXISTS images_ai AFTER INSERT ON images BEGIN
  INSERT INTO images_fts(id, prompt) VALUES (new.id, new.prompt);
END
"""

FTS_DELETE_TRIGGER = """
CREATE TRIGGER IF NOT EXISTS images_ad AFTER DELETE ON images BEGIN
  DELETE FROM images_fts WHERE id = old.id;
END
"""


async def _migrate_v1(db):
    """Images, attributes, text index with its sync triggers, migration markers."""
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS images (
          id TEXT PRIMARY KEY,
          filename TEXT NOT NULL UNIQUE,
          prompt TEXT NOT NULL DEFAULT '',
          workflow_id TEXT,
          seed INTEGER,
          width INTEGER,
          height INTEGER,
          file_size INTEGER,
          created_at TEXT NOT NULL,
          deleted_at TEXT,
          favorite INTEGER NOT NULL DEFAULT 0,
          rating INTEGER,
          notes TEXT
        )
        """
    )
    await db.execute("CREATE INDEX IF NOT EXISTS idx_images_created ON images(created_at DESC)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_images_deleted ON images(deleted_at)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_images_favorite ON images(favorite) WHERE favorite = 1")

    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS image_attributes (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          image_id TEXT NOT NULL REFERENCES images(id) ON DELETE CASCADE,
          key TEXT NOT NULL,
          value TEXT NOT NULL,
          UNIQUE(image_id, key)
        )
        """
    )
    await db.execute("CREATE INDEX IF NOT EXISTS idx_attr_image ON image_attributes(image_id)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_attr_key ON image_attributes(key)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_attr_value ON image_attributes(value)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_attr_key_value ON image_attributes(key, value)")

    await db.execute(
        """
        CREATE VIRTUAL TABLE IF NOT EXISTS images_fts USING fts5(
          id UNINDEXED,
          prompt,
          tokenize = 'unicode61'
        )
        """
    )
    await db.execute(FTS_INSERT_TRIGGER)
    await db.execute(FTS_DELETE_TRIGGER)
    await db.execute(
        """
        CREATE TRIGGER IF NOT EXISTS images_au AFTER UPDATE ON images BEGIN
          DELETE FROM images_fts WHERE id = old.id;
          INSERT INTO images_fts(id, prompt) VALUES (new.id, new.prompt);
        END
        """
    )

    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS _migrations (
          id TEXT PRIMARY KEY,
          completed_at TEXT NOT NULL
        )
        """
    )


async def _migrate_v2(db):
    """Generation metadata columns."""
    cols = await table_columns(db, "images")
    if "negative_prompt" not in cols:
        await db.execute("ALTER TABLE images ADD COLUMN negative_prompt TEXT")
    if "parameters" not in cols:
        await db.execute("ALTER TABLE images ADD COLUMN parameters TEXT")


async def _migrate_v3(db):
    """Only re-index on prompt changes; resync the text index from the table."""
    await db.execute("DROP TRIGGER IF EXISTS images_au")
    await db.execute(
        """
        CREATE TRIGGER images_au AFTER UPDATE OF id, prompt ON images BEGIN
          DELETE FROM images_fts WHERE id = old.id;
          INSERT INTO images_fts(id, prompt) VALUES (new.id, new.prompt);
        END
        """
    )
    await db.execute("DELETE FROM images_fts")
    await db.execute("INSERT INTO images_fts(id, prompt) SELECT id, prompt FROM images")


# MIGRATIONS[n - 1] brings the schema from version n - 1 to version n.
MIGRATIONS = [
    _migrate_v1,
    _migrate_v2,
    _migrate_v3,
]


async def table_columns(db, table):
    rows = await db.select(f"PRAGMA table_info({table})")
    return {row["name"] for row in rows}


class SchemaManager:
    def __init__(self, db, target_version=SCHEMA_VERSION, migrations=None):
        self.db = db
        self.target_version = target_version
        self.migrations = list(MIGRATIONS if migrations is None else migrations)
        if self.target_version > len(self.migrations):
            raise ValueError(f"no migration registered for schema v{self.target_version}")

    async def current_version(self):
        await self.db.execute(META_SQL)
        row = await self.db.select_one("SELECT value FROM _meta WHERE key = ?", ("schema_version",))
        if not row:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    async def ensure_schema(self):
        """Apply every pending migration in order; returns the number of steps run.

        Each step runs in its own transaction together with the version bump, so a
        crash leaves the store at the last fully applied version. Any failing step
        raises ``MigrationFailure`` and nothing after it is attempted.
        """
        current = await self.current_version()
        logger.info("DB schema version: %d (target %d)", current, self.target_version)
        if current >= self.target_version:
            return 0

        logger.info("Migrating database from v%d to v%d...", current, self.target_version)
        applied = 0
        for version in range(current + 1, self.target_version + 1):
            step = self.migrations[version - 1]
            logger.info("Applying migration v%d...", version)
            try:
                async with self.db.transaction():
                    await step(self.db)
                    await self.db.execute(
                        "INSERT OR REPLACE INTO _meta(key, value) VALUES('schema_version', ?)",
                        (str(version),),
                    )
            except Exception as exc:
                logger.error("FAILED to apply migration v%d: %s", version, exc)
                raise MigrationFailure(version, exc) from exc
            applied += 1
            logger.info("Migration v%d applied successfully.", version)
        return applied

    async def is_migration_completed(self, migration_id):
        row = await self.db.select_one("SELECT id FROM _migrations WHERE id = ?", (migration_id,))
        return row is not None

    async def mark_migration_completed(self, migration_id):
        await self.db.execute(
            "INSERT OR IGNORE INTO _migrations(id, completed_at) VALUES(?, ?)",
            (migration_id, now_iso()),
        )

    async def completed_migrations(self):
        rows = await self.db.select("SELECT id, completed_at FROM _migrations ORDER BY completed_at ASC, id ASC")
        return rows
