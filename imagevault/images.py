import logging

from .attributes import AttributeIndexer, attributes_from_prompt
from .pagination import normalize_pagination, order_clause, paginated
from .utils import json_dumps, json_loads_or_none, now_iso, to_int_or_none

logger = logging.getLogger("ImageVault")

INFO_FIELDS = "id, filename, prompt, created_at, deleted_at, favorite"

UPDATABLE_FIELDS = ("prompt", "negative_prompt", "parameters", "favorite", "rating", "notes")

_SOFT_DELETE_SQL = "UPDATE images SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL"


def row_to_info(row):
    return {
        "id": row["id"],
        "filename": row["filename"],
        "created_at": row["created_at"],
        "prompt": row["prompt"],
        "deleted": row["deleted_at"] is not None,
        "favorite": bool(row["favorite"]),
    }


def row_to_record(row):
    record = dict(row)
    record["favorite"] = bool(record.get("favorite"))
    record["parameters"] = json_loads_or_none(record.get("parameters"))
    return record


def _encode_parameters(params):
    if params is None:
        return None
    if isinstance(params, str):
        return params or None
    return json_dumps(params)


def _validate_rating(rating):
    if rating is None:
        return None
    rating = to_int_or_none(rating)
    if rating is None or not 0 <= rating <= 5:
        raise ValueError("rating must be an integer between 0 and 5")
    return rating


class ImageStore:
    def __init__(self, db, attributes=None):
        self.db = db
        self.attributes = attributes or AttributeIndexer(db)

    async def create(self, payload):
        """Insert a new image record and index its prompt attributes.

        ``payload`` needs ``id`` and ``filename``; everything else is optional.
        A duplicate id or filename raises ``StorageError``. An optional
        ``prompt_tree`` skips YAML parsing of ``prompt``.
        """
        image_id = payload["id"]
        prompt = payload.get("prompt") or ""
        attrs = attributes_from_prompt(prompt, tree=payload.get("prompt_tree"), image_id=image_id)
        seed = to_int_or_none(payload.get("seed"))
        if seed is None and payload.get("seed") is not None:
            logger.warning("Seed of %s is not a 64-bit integer, stored as NULL: %r", image_id, payload["seed"])

        async with self.db.transaction():
            await self.db.execute(
                """
                INSERT INTO images(
                  id, filename, prompt, negative_prompt, parameters, workflow_id,
                  seed, width, height, file_size, created_at
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    image_id,
                    payload["filename"],
                    prompt,
                    payload.get("negative_prompt") or None,
                    _encode_parameters(payload.get("parameters")),
                    payload.get("workflow_id") or None,
                    seed,
                    to_int_or_none(payload.get("width")),
                    to_int_or_none(payload.get("height")),
                    to_int_or_none(payload.get("file_size")),
                    payload.get("created_at") or now_iso(),
                ),
            )
            if attrs:
                await self.attributes.save(image_id, attrs)

        logger.debug("Image created: %s (%d attributes)", image_id, len(attrs))
        return await self.get(image_id)

    async def get(self, image_id):
        row = await self.db.select_one("SELECT * FROM images WHERE id = ?", (image_id,))
        return row_to_record(row) if row else None

    async def get_by_filename(self, filename):
        row = await self.db.select_one("SELECT * FROM images WHERE filename = ?", (filename,))
        return row_to_record(row) if row else None

    async def list(self, include_deleted=False, pagination=None):
        limit, offset, sort_order = normalize_pagination(pagination)
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        logger.debug(
            "list images: include_deleted=%r limit=%d offset=%d sort=%s", include_deleted, limit, offset, sort_order
        )

        count = await self.db.select_one(f"SELECT COUNT(*) AS total FROM images {where}")
        total = int(count["total"]) if count else 0
        rows = await self.db.select(
            f"SELECT {INFO_FIELDS} FROM images {where} {order_clause(sort_order)} LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return paginated([row_to_info(r) for r in rows], total, offset)

    async def list_by_attribute(self, key, value, include_deleted=False, pagination=None):
        limit, offset, sort_order = normalize_pagination(pagination)
        where = [
            "id IN (SELECT image_id FROM image_attributes WHERE key LIKE ? AND value LIKE ?)",
        ]
        params = [f"%{key}%", f"%{value}%"]
        if not include_deleted:
            where.append("deleted_at IS NULL")
        where_sql = " AND ".join(where)

        count = await self.db.select_one(f"SELECT COUNT(*) AS total FROM images WHERE {where_sql}", params)
        total = int(count["total"]) if count else 0
        rows = await self.db.select(
            f"SELECT {INFO_FIELDS} FROM images WHERE {where_sql} {order_clause(sort_order)} LIMIT ? OFFSET ?",
            params + [limit, offset],
        )
        return paginated([row_to_info(r) for r in rows], total, offset)

    async def update(self, image_id, fields):
        """Change annotations or prompt data; returns the updated record or ``None``.

        Identity, filename and lifecycle columns are never touched here.
        """
        changes = {k: fields[k] for k in UPDATABLE_FIELDS if k in fields}
        if not changes:
            return await self.get(image_id)

        sets = []
        params = []
        for key, value in changes.items():
            if key == "prompt":
                value = value or ""
            elif key == "parameters":
                value = _encode_parameters(value)
            elif key == "favorite":
                value = 1 if value else 0
            elif key == "rating":
                value = _validate_rating(value)
            sets.append(f"{key} = ?")
            params.append(value)

        async with self.db.transaction():
            result = await self.db.execute(
                f"UPDATE images SET {', '.join(sets)} WHERE id = ?",
                params + [image_id],
            )
            if result.rows_affected == 0:
                return None
            if "prompt" in changes:
                attrs = attributes_from_prompt(changes["prompt"] or "", image_id=image_id)
                await self.attributes.save(image_id, attrs)
        return await self.get(image_id)

    async def set_rating(self, image_id, rating):
        return await self.update(image_id, {"rating": rating})

    async def set_notes(self, image_id, notes):
        return await self.update(image_id, {"notes": notes})

    async def soft_delete(self, image_id):
        result = await self.db.execute(_SOFT_DELETE_SQL, (now_iso(), image_id))
        return result.rows_affected > 0

    async def restore(self, image_id):
        result = await self.db.execute(
            "UPDATE images SET deleted_at = NULL WHERE id = ? AND deleted_at IS NOT NULL",
            (image_id,),
        )
        return result.rows_affected > 0

    async def hard_delete(self, image_id):
        # image_attributes rows go with it through ON DELETE CASCADE.
        result = await self.db.execute("DELETE FROM images WHERE id = ?", (image_id,))
        return result.rows_affected > 0

    async def bulk_soft_delete(self, ids):
        """Soft-delete every id in one transaction; returns how many rows changed."""
        ids = list(dict.fromkeys(ids or []))
        if not ids:
            return 0
        now = now_iso()
        count = 0
        async with self.db.transaction():
            for image_id in ids:
                result = await self.db.execute(_SOFT_DELETE_SQL, (now, image_id))
                count += result.rows_affected
        return count

    async def mark_missing_as_deleted(self, missing_ids):
        count = await self.bulk_soft_delete(missing_ids)
        if count:
            logger.info("%d images with missing files marked as deleted", count)
        return count

    async def purge_deleted(self):
        """Hard-delete every soft-deleted record."""
        result = await self.db.execute("DELETE FROM images WHERE deleted_at IS NOT NULL")
        return result.rows_affected

    async def toggle_favorite(self, image_id):
        result = await self.db.execute(
            "UPDATE images SET favorite = CASE WHEN favorite = 1 THEN 0 ELSE 1 END WHERE id = ?",
            (image_id,),
        )
        return result.rows_affected > 0

    async def exists(self, image_id):
        row = await self.db.select_one("SELECT 1 AS found FROM images WHERE id = ?", (image_id,))
        return row is not None

    async def all_ids(self):
        rows = await self.db.select("SELECT id FROM images")
        return [r["id"] for r in rows]

    async def count(self, include_deleted=False):
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        row = await self.db.select_one(f"SELECT COUNT(*) AS total FROM images {where}")
        return int(row["total"]) if row else 0
