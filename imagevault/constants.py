APP_NAME = "ImageVault"

# Bump together with a new entry in schema.MIGRATIONS.
SCHEMA_VERSION = 3

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")

# One-time import of the <stem>.json sidecar files written before the database existed.
LEGACY_IMPORT_ID = "json-to-sqlite-v1"

# Keys starting with this prefix drive template inheritance (_base, _extends, ...).
SENTINEL_PREFIX = "_"
