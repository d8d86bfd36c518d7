import json
import logging
import os
from pathlib import Path

from .constants import IMAGE_EXTENSIONS, LEGACY_IMPORT_ID
from .errors import StorageError
from .image_metadata import read_image_info
from .utils import parse_iso, timestamp_iso, to_int_or_none, to_iso

logger = logging.getLogger("ImageVault")


def image_id_for(filename):
    """Stem of an image filename, or ``None`` for non-image files."""
    stem, ext = os.path.splitext(filename)
    if ext.lower() not in IMAGE_EXTENSIONS or not stem:
        return None
    return stem


def scan_image_files(images_dir):
    """Map image id -> filename for every image file directly inside ``images_dir``."""
    images_dir = Path(images_dir)
    images_dir.mkdir(parents=True, exist_ok=True)
    found = {}
    for entry in sorted(images_dir.iterdir()):
        if not entry.is_file():
            continue
        image_id = image_id_for(entry.name)
        if image_id is not None:
            found[image_id] = entry.name
    return found


def scan_image_ids(images_dir):
    return set(scan_image_files(images_dir))


def read_sidecar(image_path):
    """Load ``<stem>.json`` next to an image; empty dict when absent or unreadable."""
    meta_path = Path(image_path).with_suffix(".json")
    if not meta_path.is_file():
        return {}
    try:
        with meta_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        logger.warning("Unreadable sidecar %s, using defaults: %s", meta_path.name, exc)
        return {}
    return data if isinstance(data, dict) else {}


def legacy_payload(image_id, image_path):
    """Build a create() payload from a sidecar file, the image itself and its stat."""
    image_path = Path(image_path)
    meta = read_sidecar(image_path)
    stat = image_path.stat()

    created = parse_iso(meta.get("createdAt"))
    payload = {
        "id": image_id,
        "filename": image_path.name,
        "prompt": meta.get("prompt") if isinstance(meta.get("prompt"), str) else "",
        "negative_prompt": meta.get("negativePrompt") or None,
        "parameters": meta.get("parameters") if isinstance(meta.get("parameters"), dict) else None,
        "workflow_id": meta.get("workflowId") or None,
        "seed": to_int_or_none(meta.get("seed")),
        "width": to_int_or_none(meta.get("width")),
        "height": to_int_or_none(meta.get("height")),
        "file_size": stat.st_size,
        "created_at": to_iso(created) if created else timestamp_iso(stat.st_mtime),
    }

    needs_image = not payload["prompt"] or payload["width"] is None or payload["height"] is None
    if needs_image:
        info = read_image_info(image_path)
        if info:
            payload["width"] = payload["width"] or info["width"]
            payload["height"] = payload["height"] or info["height"]
            if not payload["prompt"] and info["prompt"]:
                payload["prompt"] = info["prompt"]
                payload["negative_prompt"] = payload["negative_prompt"] or info["negative_prompt"]
            if payload["seed"] is None:
                payload["seed"] = info["seed"]
            if payload["parameters"] is None:
                payload["parameters"] = info["parameters"]
    return payload


class IntegrityReconciler:
    def __init__(self, images, schema, images_dir=None):
        self.images = images
        self.schema = schema
        self.images_dir = images_dir

    async def import_legacy(self, images_dir=None):
        """One-time import of images that predate the database.

        Returns ``{migrated, skipped, failed}``. Once marked complete it never
        runs again, even if the sidecar files are still there.
        """
        result = {"migrated": 0, "skipped": 0, "failed": 0}
        if await self.schema.is_migration_completed(LEGACY_IMPORT_ID):
            logger.info("Legacy import already completed")
            return result

        images_dir = Path(images_dir or self.images_dir)
        logger.info("Starting legacy import from %s...", images_dir)
        files = scan_image_files(images_dir)

        for image_id, filename in files.items():
            if await self.images.exists(image_id) or await self.images.get_by_filename(filename):
                result["skipped"] += 1
                continue
            try:
                payload = legacy_payload(image_id, images_dir / filename)
                await self.images.create(payload)
            except (OSError, StorageError) as exc:
                logger.error("Failed to import %s: %s", filename, exc)
                result["failed"] += 1
                continue
            result["migrated"] += 1

        await self.schema.mark_migration_completed(LEGACY_IMPORT_ID)
        logger.info(
            "Legacy import completed: %d migrated, %d skipped, %d failed",
            result["migrated"],
            result["skipped"],
            result["failed"],
        )
        return result

    async def reconcile(self, fs_ids):
        """Soft-delete records whose file is gone; count files with no record.

        Orphan files are only reported, never imported.
        """
        fs_ids = set(fs_ids)
        db_ids = set(await self.images.all_ids())

        missing = sorted(db_ids - fs_ids)
        missing_count = await self.images.mark_missing_as_deleted(missing)
        orphan_count = len(fs_ids - db_ids)

        if missing_count or orphan_count:
            logger.info(
                "Integrity: %d missing files marked as deleted, %d orphan files found",
                missing_count,
                orphan_count,
            )
        return {"missing_count": missing_count, "orphan_count": orphan_count}

    async def check_integrity(self, images_dir=None):
        return await self.reconcile(scan_image_ids(images_dir or self.images_dir))
